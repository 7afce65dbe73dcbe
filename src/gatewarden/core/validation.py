"""Connection profile validation.

Checks run before the state machine leaves AUTHENTICATED, so a bad profile
never costs an authorization packet or a process launch.
"""

from __future__ import annotations

import re
from ipaddress import ip_address

import structlog

from gatewarden.core.exceptions import ProfileValidationError
from gatewarden.core.profile import ConnectionProfile, split_host_port

logger = structlog.get_logger()

MAX_VPN_CONFIG_SIZE = 1024 * 1024

_HOSTNAME_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
)

_REQUIRED_DIRECTIVES = ("client", "proto", "remote")

# Inline blocks holding directives rather than PEM or key data
_DIRECTIVE_BLOCKS = frozenset({"connection"})

_KNOWN_DIRECTIVES = frozenset(
    {
        "client", "server", "proto", "remote", "port", "dev", "ca", "cert", "key",
        "tls-auth", "tls-crypt", "auth", "cipher", "data-ciphers", "block-outside-dns",
        "auth-user-pass", "nobind", "persist-key", "persist-tun", "verb",
        "resolv-retry", "remote-cert-tls", "tls-version-min", "tls-cipher",
    }
)


def validate_hostname(hostname: str) -> None:
    if not hostname:
        raise ProfileValidationError("Hostname cannot be empty")
    if len(hostname) > 253:
        raise ProfileValidationError("Hostname too long")
    try:
        ip_address(hostname)
        return
    except ValueError:
        pass
    if not _HOSTNAME_RE.match(hostname):
        raise ProfileValidationError(f"Invalid hostname format: {hostname}")


def validate_port(port: int) -> None:
    if not 0 < port < 65536:
        raise ProfileValidationError(f"Invalid port number: {port}")


def validate_secret(value: str, what: str) -> None:
    if not value.strip():
        raise ProfileValidationError(f"{what} cannot be empty")


def validate_address(address: str, what: str) -> None:
    try:
        host, _ = split_host_port(address)
    except ValueError as e:
        raise ProfileValidationError(f"Invalid {what}: {e}") from None
    validate_hostname(host)


def validate_vpn_config(config: str) -> None:
    """Sanity-check a tunnel client config.

    At least two of ``client``, ``proto`` and ``remote`` must be present; the
    ``remote`` line is rewritten later anyway. Unknown directives are logged
    but accepted.
    """
    if len(config.encode("utf-8")) > MAX_VPN_CONFIG_SIZE:
        raise ProfileValidationError(
            f"VPN config too large (max {MAX_VPN_CONFIG_SIZE} bytes)"
        )
    if "\0" in config:
        raise ProfileValidationError("VPN config contains null bytes")
    if not config.isascii():
        raise ProfileValidationError("VPN config contains invalid characters")

    found = set()
    in_block = False
    for raw in config.splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", ";")):
            continue
        if line.startswith("</"):
            in_block = False
            continue
        if line.startswith("<"):
            in_block = line.strip("<>").lower() not in _DIRECTIVE_BLOCKS
            continue
        if in_block:
            continue
        directive = line.split(None, 1)[0].lower()
        if directive in _REQUIRED_DIRECTIVES:
            found.add(directive)
        elif directive not in _KNOWN_DIRECTIVES:
            logger.debug("Unknown VPN directive", directive=directive)

    if len(found) < 2:
        raise ProfileValidationError(
            "VPN config must contain at least two of: client, proto, remote"
        )


def validate_profile(profile: ConnectionProfile) -> None:
    """Validate a profile, raising ProfileValidationError on the first problem."""
    validate_hostname(profile.host)
    validate_port(profile.port)
    if not profile.skip_authorization:
        validate_secret(profile.spa_key.get_secret_value(), "SPA key")
        validate_secret(profile.spa_hmac.get_secret_value(), "SPA HMAC key")
    validate_vpn_config(profile.vpn_config)
    if profile.vpn_auth is not None:
        validate_secret(profile.vpn_auth.username.get_secret_value(), "VPN username")
        validate_secret(profile.vpn_auth.password.get_secret_value(), "VPN password")
    if profile.relay_enabled:
        validate_address(profile.relay_accept, "relay accept address")
        validate_address(profile.relay_target, "relay connect address")
