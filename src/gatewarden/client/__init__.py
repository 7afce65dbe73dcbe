"""Client."""

from .orchestrator import ConnectionOrchestrator, ConnectionStatus
from .progress import ProgressLog, ProgressRecord, ProgressSink
from .state import (
    RETRY_RESUME,
    ConnectionEvent,
    ConnectionState,
    ConnectionStateMachine,
    ErrorInfo,
    StateSnapshot,
    resume_state_for,
)

__all__ = [
    # Orchestration
    "ConnectionOrchestrator",
    "ConnectionStatus",
    # Progress
    "ProgressLog",
    "ProgressRecord",
    "ProgressSink",
    # State machine
    "ConnectionEvent",
    "ConnectionState",
    "ConnectionStateMachine",
    "ErrorInfo",
    "StateSnapshot",
    "RETRY_RESUME",
    "resume_state_for",
]
