"""Connection state machine.

The machine is the single source of truth for connection progress. It has
one mutating entry point, ``handle_event``, which applies an event if the
(state, event) pair is in the transition table and otherwise raises
``InvalidTransitionError`` without touching anything.

The lock is only held for the synchronous mutation. Callers do their waiting
(process I/O, sockets) first and then hand the outcome over as an event.

Example:
    fsm = ConnectionStateMachine()
    fsm.handle_event(Login())
    fsm.handle_event(PreflightPassed())
    assert fsm.state is ConnectionState.AUTHENTICATED
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from gatewarden.core.exceptions import (
    ErrorCause,
    GatewardenError,
    InvalidTransitionError,
)
from gatewarden.core.profile import AuthTokens, ConnectionProfile

logger = structlog.get_logger()


class ConnectionState(Enum):
    """Connection progress."""

    IDLE = "idle"
    PREFLIGHT = "preflight"
    AUTHENTICATED = "authenticated"
    BOOTSTRAP_MANUAL = "bootstrap_manual"
    BOOTSTRAP_FETCH = "bootstrap_fetch"
    SPA_SENT = "spa_sent"
    PORT_OPEN = "port_open"
    VPN_CONNECTING = "vpn_connecting"
    CONNECTED = "connected"
    ERROR = "error"


RETRY_RESUME: dict[ErrorCause, ConnectionState] = {
    ErrorCause.OFFLINE: ConnectionState.PREFLIGHT,
    ErrorCause.WRONG_TIMEZONE: ConnectionState.PREFLIGHT,
    ErrorCause.TUNNEL_ACTIVE: ConnectionState.PREFLIGHT,
    ErrorCause.SPA_DENIED: ConnectionState.SPA_SENT,
    ErrorCause.SPA_TIMEOUT: ConnectionState.SPA_SENT,
    ErrorCause.PORT_PROBE_TIMEOUT: ConnectionState.SPA_SENT,
    ErrorCause.VPN_AUTH_FAILED: ConnectionState.VPN_CONNECTING,
    ErrorCause.VPN_HANDSHAKE_FAILED: ConnectionState.VPN_CONNECTING,
}


def resume_state_for(cause: ErrorCause) -> ConnectionState:
    """State re-entered on Retry. Unclassified causes restart the bootstrap."""
    return RETRY_RESUME.get(cause, ConnectionState.AUTHENTICATED)


_NOT_BUSY_STATES = frozenset(
    {
        ConnectionState.IDLE,
        ConnectionState.AUTHENTICATED,
        ConnectionState.CONNECTED,
        ConnectionState.ERROR,
    }
)


@dataclass(frozen=True)
class ErrorInfo:
    """What went wrong, with the retry decision fixed at classification time."""

    cause: ErrorCause
    message: str
    can_retry: bool
    resume_state: ConnectionState

    @classmethod
    def from_error(cls, error: BaseException) -> ErrorInfo:
        if isinstance(error, GatewardenError):
            cause, message = error.cause, error.message
        else:
            cause, message = ErrorCause.INTERNAL, str(error) or type(error).__name__
        return cls(
            cause=cause,
            message=message,
            can_retry=cause.can_retry,
            resume_state=resume_state_for(cause),
        )


# Events


@dataclass(frozen=True)
class ConnectionEvent:
    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class Login(ConnectionEvent):
    pass


@dataclass(frozen=True)
class Logout(ConnectionEvent):
    pass


@dataclass(frozen=True)
class FetchBootstrap(ConnectionEvent):
    pass


@dataclass(frozen=True)
class ManualConfig(ConnectionEvent):
    profile: ConnectionProfile


@dataclass(frozen=True)
class PreflightPassed(ConnectionEvent):
    pass


@dataclass(frozen=True)
class PreflightFailed(ConnectionEvent):
    error: GatewardenError


@dataclass(frozen=True)
class SpaSent(ConnectionEvent):
    skipped: bool = False


@dataclass(frozen=True)
class SpaFailed(ConnectionEvent):
    error: GatewardenError


@dataclass(frozen=True)
class PortProbeSuccess(ConnectionEvent):
    pass


@dataclass(frozen=True)
class PortProbeFailed(ConnectionEvent):
    error: GatewardenError


@dataclass(frozen=True)
class VpnStarted(ConnectionEvent):
    pass


@dataclass(frozen=True)
class VpnConnected(ConnectionEvent):
    pass


@dataclass(frozen=True)
class VpnFailed(ConnectionEvent):
    error: GatewardenError


@dataclass(frozen=True)
class Disconnect(ConnectionEvent):
    pass


@dataclass(frozen=True)
class Retry(ConnectionEvent):
    pass


@dataclass(frozen=True)
class StateSnapshot:
    """Immutable view of the machine for the control surface."""

    state: ConnectionState
    error: ErrorInfo | None
    is_busy: bool
    can_retry: bool
    spa_skipped: bool
    spa_remaining: float | None
    vpn_remaining: float | None
    has_tokens: bool
    host: str | None


StateHook = Callable[[ConnectionState], None]


class ConnectionStateMachine:
    """Finite state machine for the three-stage tunnel bring-up."""

    def __init__(
        self,
        spa_budget: float = 30.0,
        vpn_budget: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._spa_budget = spa_budget
        self._vpn_budget = vpn_budget

        self._state = ConnectionState.IDLE
        self._error: ErrorInfo | None = None
        self._last_error: GatewardenError | None = None
        self._auth_tokens: AuthTokens | None = None
        self._profile: ConnectionProfile | None = None
        self._spa_sent_at: float | None = None
        self._vpn_started_at: float | None = None
        self._spa_skipped = False
        self._error_count = 0

        self._state_hooks: list[StateHook] = []

        S = ConnectionState
        self._transitions: dict[
            tuple[ConnectionState, type[ConnectionEvent]],
            Callable[[Any], None],
        ] = {
            (S.IDLE, Login): self._on_login,
            (S.PREFLIGHT, PreflightPassed): self._on_preflight_passed,
            (S.PREFLIGHT, PreflightFailed): self._on_failure,
            (S.AUTHENTICATED, FetchBootstrap): self._on_fetch_bootstrap,
            (S.AUTHENTICATED, ManualConfig): self._on_manual_config,
            (S.AUTHENTICATED, Logout): self._on_logout,
            (S.BOOTSTRAP_FETCH, ManualConfig): self._on_fetched_config,
            (S.BOOTSTRAP_MANUAL, SpaSent): self._on_spa_sent,
            (S.SPA_SENT, SpaFailed): self._on_failure,
            (S.SPA_SENT, PortProbeSuccess): self._on_port_open,
            (S.SPA_SENT, PortProbeFailed): self._on_failure,
            (S.PORT_OPEN, VpnStarted): self._on_vpn_started,
            (S.VPN_CONNECTING, VpnConnected): self._on_vpn_connected,
            (S.VPN_CONNECTING, VpnFailed): self._on_failure,
            (S.CONNECTED, Disconnect): self._on_disconnect,
            (S.CONNECTED, Logout): self._on_logout,
            (S.ERROR, Retry): self._on_retry,
            (S.ERROR, Logout): self._on_logout,
        }

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        with self._lock:
            return self._state

    @property
    def error(self) -> ErrorInfo | None:
        """Stored error while in ERROR, else None."""
        with self._lock:
            return self._error

    @property
    def last_error(self) -> GatewardenError | None:
        with self._lock:
            return self._last_error

    @property
    def profile(self) -> ConnectionProfile | None:
        with self._lock:
            return self._profile

    @property
    def auth_tokens(self) -> AuthTokens | None:
        with self._lock:
            return self._auth_tokens

    @property
    def spa_skipped(self) -> bool:
        with self._lock:
            return self._spa_skipped

    @property
    def stats(self) -> dict[str, Any]:
        """Get machine statistics."""
        with self._lock:
            return {
                "state": self._state.value,
                "error_cause": self._error.cause.value if self._error else None,
                "error_count": self._error_count,
                "has_tokens": self._auth_tokens is not None,
                "spa_skipped": self._spa_skipped,
            }

    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def is_busy(self) -> bool:
        return self.state not in _NOT_BUSY_STATES

    def can_disconnect(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def can_retry(self) -> bool:
        with self._lock:
            return self._state is ConnectionState.ERROR and bool(
                self._error and self._error.can_retry
            )

    def get_spa_timeout(self) -> float | None:
        """Remaining SPA budget in seconds, or None outside SPA_SENT."""
        with self._lock:
            return self._remaining(self._spa_sent_at, self._spa_budget)

    def get_vpn_timeout(self) -> float | None:
        """Remaining VPN budget in seconds, or None outside VPN_CONNECTING."""
        with self._lock:
            return self._remaining(self._vpn_started_at, self._vpn_budget)

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                state=self._state,
                error=self._error,
                is_busy=self._state not in _NOT_BUSY_STATES,
                can_retry=bool(self._error and self._error.can_retry),
                spa_skipped=self._spa_skipped,
                spa_remaining=self._remaining(self._spa_sent_at, self._spa_budget),
                vpn_remaining=self._remaining(self._vpn_started_at, self._vpn_budget),
                has_tokens=self._auth_tokens is not None,
                host=self._profile.host if self._profile else None,
            )

    def set_auth_tokens(self, tokens: AuthTokens) -> None:
        with self._lock:
            self._auth_tokens = tokens

    def clear_auth_tokens(self) -> None:
        with self._lock:
            self._auth_tokens = None

    def add_state_hook(self, hook: StateHook) -> None:
        """Add a hook to be called on state changes."""
        self._state_hooks.append(hook)

    def remove_state_hook(self, hook: StateHook) -> None:
        """Remove a state change hook."""
        if hook in self._state_hooks:
            self._state_hooks.remove(hook)

    def handle_event(self, event: ConnectionEvent) -> None:
        """Apply ``event`` to the current state.

        Raises:
            InvalidTransitionError: If the event is not valid in the current
                state. The machine is left exactly as it was.
        """
        with self._lock:
            old_state = self._state
            handler = self._transitions.get((old_state, type(event)))
            if handler is None:
                logger.warning("Invalid event", state=old_state.value, fsm_event=event.name)
                raise InvalidTransitionError(old_state.value, event.name)
            handler(event)
            new_state = self._state

        logger.debug(
            "FSM event",
            fsm_event=event.name,
            old=old_state.value,
            new=new_state.value,
        )
        if new_state is not old_state:
            self._notify(new_state)

    def _remaining(self, started: float | None, budget: float) -> float | None:
        if started is None:
            return None
        return max(0.0, budget - (self._clock() - started))

    def _notify(self, state: ConnectionState) -> None:
        for hook in list(self._state_hooks):
            try:
                hook(state)
            except Exception as e:
                logger.warning("State hook error", error=str(e))

    def _enter(self, state: ConnectionState) -> None:
        """Switch state and keep the stage timers consistent with it."""
        self._state = state
        if state is not ConnectionState.ERROR:
            self._error = None
        self._spa_sent_at = self._clock() if state is ConnectionState.SPA_SENT else None
        self._vpn_started_at = (
            self._clock() if state is ConnectionState.VPN_CONNECTING else None
        )

    # Transition handlers. Each runs under the lock and must validate
    # before mutating.

    def _on_login(self, event: Login) -> None:
        self._enter(ConnectionState.PREFLIGHT)
        logger.info("Starting preflight checks")

    def _on_preflight_passed(self, event: PreflightPassed) -> None:
        self._enter(ConnectionState.AUTHENTICATED)
        logger.info("Preflight passed, ready for connection")

    def _on_fetch_bootstrap(self, event: FetchBootstrap) -> None:
        self._enter(ConnectionState.BOOTSTRAP_FETCH)
        logger.info("Fetching bootstrap data")

    def _on_manual_config(self, event: ManualConfig) -> None:
        self._profile = event.profile
        self._enter(ConnectionState.BOOTSTRAP_MANUAL)
        logger.info("Manual configuration set", host=event.profile.host)

    def _on_fetched_config(self, event: ManualConfig) -> None:
        self._profile = event.profile
        self._spa_skipped = event.profile.skip_authorization
        self._enter(ConnectionState.SPA_SENT)
        logger.info("Bootstrap configuration received, SPA sent", host=event.profile.host)

    def _on_spa_sent(self, event: SpaSent) -> None:
        self._spa_skipped = event.skipped
        self._enter(ConnectionState.SPA_SENT)
        logger.info("SPA skipped" if event.skipped else "SPA sent")

    def _on_port_open(self, event: PortProbeSuccess) -> None:
        self._enter(ConnectionState.PORT_OPEN)
        logger.info("Gateway port is open")

    def _on_vpn_started(self, event: VpnStarted) -> None:
        self._enter(ConnectionState.VPN_CONNECTING)
        logger.info("VPN started")

    def _on_vpn_connected(self, event: VpnConnected) -> None:
        self._enter(ConnectionState.CONNECTED)
        logger.info("VPN connected successfully")

    def _on_failure(self, event: PreflightFailed | SpaFailed | PortProbeFailed | VpnFailed) -> None:
        info = ErrorInfo.from_error(event.error)
        self._last_error = event.error
        self._error_count += 1
        self._enter(ConnectionState.ERROR)
        self._error = info
        logger.warning(
            "Stage failed",
            fsm_event=event.name,
            cause=info.cause.value,
            error=info.message,
            can_retry=info.can_retry,
        )

    def _on_retry(self, event: Retry) -> None:
        info = self._error
        if info is None or not info.can_retry:
            raise InvalidTransitionError(ConnectionState.ERROR.value, event.name)
        self._enter(info.resume_state)
        logger.info("Retrying", cause=info.cause.value, resume=info.resume_state.value)

    def _on_disconnect(self, event: Disconnect) -> None:
        self._reset_to_authenticated()
        logger.info("VPN disconnected")

    def _on_logout(self, event: Logout) -> None:
        self._reset_to_idle()
        logger.info("Logged out")

    def _reset_to_authenticated(self) -> None:
        self._profile = None
        self._last_error = None
        self._error_count = 0
        self._spa_skipped = False
        self._enter(ConnectionState.AUTHENTICATED)

    def _reset_to_idle(self) -> None:
        self._auth_tokens = None
        self._reset_to_authenticated()
        self._enter(ConnectionState.IDLE)
