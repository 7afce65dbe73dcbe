"""Error taxonomy for the tunnel bring-up.

Every failure carries an ``ErrorCause``. The cause decides the error kind and
whether the state machine offers a retry, so retry decisions are made once,
when the error is classified, and never recomputed at call sites.

Example:
    try:
        await authorizer.verify(profile)
    except GatewardenError as e:
        print(e.code, e.cause.kind, e.cause.can_retry)
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Broad failure category."""

    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    DENIED = "denied"
    PROCESS_FAILURE = "process_failure"
    CONFLICT = "conflict"
    INVALID = "invalid"
    INTERNAL = "internal"


class ErrorCause(Enum):
    """Classified cause of a failed stage."""

    # Preflight
    OFFLINE = "offline"
    WRONG_TIMEZONE = "wrong_timezone"
    TUNNEL_ACTIVE = "tunnel_active"
    SIGNATURE_INVALID = "signature_invalid"

    # Authorization
    SPA_BINARY_NOT_FOUND = "spa_binary_not_found"
    SPA_DENIED = "spa_denied"
    SPA_TIMEOUT = "spa_timeout"
    PORT_PROBE_TIMEOUT = "port_probe_timeout"

    # Relay
    RELAY_BINARY_NOT_FOUND = "relay_binary_not_found"
    RELAY_FAILURE = "relay_failure"

    # Tunnel client
    VPN_BINARY_NOT_FOUND = "vpn_binary_not_found"
    VPN_AUTH_FAILED = "vpn_auth_failed"
    VPN_HANDSHAKE_FAILED = "vpn_handshake_failed"
    VPN_UNEXPECTED_EXIT = "vpn_unexpected_exit"
    VPN_FAILURE = "vpn_failure"

    # Everything else
    INVALID_PROFILE = "invalid_profile"
    CANCELLED = "cancelled"
    INTERNAL = "internal"

    @property
    def kind(self) -> ErrorKind:
        return _CAUSE_KINDS[self]

    @property
    def can_retry(self) -> bool:
        """All kinds are retryable except INTERNAL, which needs a fresh login."""
        return self.kind is not ErrorKind.INTERNAL


_CAUSE_KINDS: dict[ErrorCause, ErrorKind] = {
    ErrorCause.OFFLINE: ErrorKind.CONFLICT,
    ErrorCause.WRONG_TIMEZONE: ErrorKind.CONFLICT,
    ErrorCause.TUNNEL_ACTIVE: ErrorKind.CONFLICT,
    ErrorCause.SIGNATURE_INVALID: ErrorKind.CONFLICT,
    ErrorCause.SPA_BINARY_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCause.SPA_DENIED: ErrorKind.DENIED,
    ErrorCause.SPA_TIMEOUT: ErrorKind.TIMEOUT,
    ErrorCause.PORT_PROBE_TIMEOUT: ErrorKind.TIMEOUT,
    ErrorCause.RELAY_BINARY_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCause.RELAY_FAILURE: ErrorKind.PROCESS_FAILURE,
    ErrorCause.VPN_BINARY_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCause.VPN_AUTH_FAILED: ErrorKind.DENIED,
    ErrorCause.VPN_HANDSHAKE_FAILED: ErrorKind.PROCESS_FAILURE,
    ErrorCause.VPN_UNEXPECTED_EXIT: ErrorKind.PROCESS_FAILURE,
    ErrorCause.VPN_FAILURE: ErrorKind.PROCESS_FAILURE,
    ErrorCause.INVALID_PROFILE: ErrorKind.INVALID,
    ErrorCause.CANCELLED: ErrorKind.PROCESS_FAILURE,
    ErrorCause.INTERNAL: ErrorKind.INTERNAL,
}


class GatewardenError(Exception):
    """Base exception for all connection errors."""

    default_cause: ErrorCause = ErrorCause.INTERNAL

    def __init__(self, message: str, cause: ErrorCause | None = None) -> None:
        self.message = message
        self.cause = cause or self.default_cause
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.cause.value.upper()

    @property
    def kind(self) -> ErrorKind:
        return self.cause.kind

    @property
    def can_retry(self) -> bool:
        return self.cause.can_retry


class BinaryNotFoundError(GatewardenError):
    """A required external binary is missing."""

    def __init__(self, binary: str, searched: list[str], cause: ErrorCause) -> None:
        self.binary = binary
        self.searched = searched
        super().__init__(f"{binary} not found in any expected location", cause)


class StageTimeoutError(GatewardenError):
    """A bounded wait expired."""

    default_cause = ErrorCause.SPA_TIMEOUT


class AuthorizationDeniedError(GatewardenError):
    """The firewall or the remote end rejected us."""

    default_cause = ErrorCause.SPA_DENIED


class ProcessFailureError(GatewardenError):
    """An external process failed to spawn or exited with an error."""

    default_cause = ErrorCause.VPN_FAILURE


class PreflightConflictError(GatewardenError):
    """The host is not in a state where a tunnel may be brought up."""

    default_cause = ErrorCause.OFFLINE


class ProfileValidationError(GatewardenError):
    """The connection profile failed validation."""

    default_cause = ErrorCause.INVALID_PROFILE


class InternalError(GatewardenError):
    """An invariant was violated."""

    default_cause = ErrorCause.INTERNAL


class InvalidTransitionError(InternalError):
    """The state machine rejected an event in its current state."""

    def __init__(self, state: str, event: str) -> None:
        self.state = state
        self.event = event
        super().__init__(f"Invalid event {event} in state {state}")


_USER_MESSAGES: dict[ErrorCause, str] = {
    ErrorCause.OFFLINE: "No network connectivity.",
    ErrorCause.WRONG_TIMEZONE: "System timezone is not allowed for this gateway.",
    ErrorCause.TUNNEL_ACTIVE: "Another VPN tunnel is already active.",
    ErrorCause.SIGNATURE_INVALID: "A bundled binary failed its signature check.",
    ErrorCause.SPA_DENIED: "The gateway rejected the authorization packet.",
    ErrorCause.SPA_TIMEOUT: "The authorization client did not finish in time.",
    ErrorCause.PORT_PROBE_TIMEOUT: "The gateway port never opened after authorization.",
    ErrorCause.VPN_AUTH_FAILED: "The VPN server rejected the username or password.",
    ErrorCause.VPN_HANDSHAKE_FAILED: "The VPN TLS handshake failed.",
    ErrorCause.CANCELLED: "The connection attempt was cancelled.",
}


def format_error_for_user(error: BaseException) -> str:
    """Return a short message suitable for display."""
    if isinstance(error, GatewardenError):
        hint = _USER_MESSAGES.get(error.cause)
        if hint and hint.rstrip(".") not in error.message:
            return f"{error.message} ({hint})"
        return error.message
    if isinstance(error, TimeoutError):
        return "Operation timed out."
    if isinstance(error, OSError):
        return f"System error: {error.strerror or error}"
    return str(error) or type(error).__name__
