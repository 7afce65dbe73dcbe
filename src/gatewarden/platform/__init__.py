"""Platform capabilities: privileged process launch and preflight gate."""

from .launcher import (
    DirectLauncher,
    ProcessLauncher,
    SudoLauncher,
    WindowsElevatedLauncher,
    default_launcher,
    is_privileged,
)
from .preflight import PassthroughPreflightGate, PreflightGate

__all__ = [
    "ProcessLauncher",
    "DirectLauncher",
    "SudoLauncher",
    "WindowsElevatedLauncher",
    "default_launcher",
    "is_privileged",
    "PreflightGate",
    "PassthroughPreflightGate",
]
