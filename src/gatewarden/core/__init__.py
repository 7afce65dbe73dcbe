"""Core."""

from .config import (
    BinaryConfig,
    GatewardenConfig,
    TimeoutConfig,
    clear_config,
    get_config,
)
from .exceptions import (
    AuthorizationDeniedError,
    BinaryNotFoundError,
    ErrorCause,
    ErrorKind,
    GatewardenError,
    InternalError,
    InvalidTransitionError,
    PreflightConflictError,
    ProcessFailureError,
    ProfileValidationError,
    StageTimeoutError,
    format_error_for_user,
)
from .profile import AuthTokens, ConnectionProfile, VpnCredentials, split_host_port
from .validation import MAX_VPN_CONFIG_SIZE, validate_profile, validate_vpn_config

__all__ = [
    # Config
    "TimeoutConfig",
    "BinaryConfig",
    "GatewardenConfig",
    "get_config",
    "clear_config",
    # Errors
    "ErrorKind",
    "ErrorCause",
    "GatewardenError",
    "BinaryNotFoundError",
    "StageTimeoutError",
    "AuthorizationDeniedError",
    "ProcessFailureError",
    "PreflightConflictError",
    "ProfileValidationError",
    "InternalError",
    "InvalidTransitionError",
    "format_error_for_user",
    # Profile
    "ConnectionProfile",
    "VpnCredentials",
    "AuthTokens",
    "split_host_port",
    # Validation
    "MAX_VPN_CONFIG_SIZE",
    "validate_profile",
    "validate_vpn_config",
]
