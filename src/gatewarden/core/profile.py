"""Connection profile and auth token models."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from gatewarden.core.config import load_config_from_file


class VpnCredentials(BaseModel):
    """Inline username/password for the tunnel client."""

    model_config = ConfigDict(frozen=True)

    username: SecretStr
    password: SecretStr


class ConnectionProfile(BaseModel):
    """Everything needed for one connection attempt.

    Created once per attempt and never mutated. Use ``model_copy()`` when a
    separate task needs its own copy.
    """

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(ge=1, le=65535)
    spa_key: SecretStr = SecretStr("")
    spa_hmac: SecretStr = SecretStr("")
    vpn_config: str
    vpn_auth: VpnCredentials | None = None
    relay_enabled: bool = True
    relay_accept: str = "127.0.0.1:1300"
    relay_connect: str | None = None
    relay_cert: str | None = None
    skip_authorization: bool = False

    @property
    def relay_target(self) -> str:
        """Address the relay forwards to, defaulting to the gateway itself."""
        return self.relay_connect or f"{self.host}:{self.port}"

    @property
    def tunnel_endpoint(self) -> tuple[str, int]:
        """Host and port the tunnel client should dial."""
        if self.relay_enabled:
            return split_host_port(self.relay_accept)
        return self.host, self.port

    @classmethod
    def from_file(cls, path: str | Path) -> ConnectionProfile:
        """Load a profile from a YAML or TOML file.

        The tunnel config may be inline (``vpn_config``) or referenced with
        ``vpn_config_file``, resolved relative to the profile file.
        """
        path = Path(path)
        data: dict[str, Any] = dict(load_config_from_file(path))
        config_file = data.pop("vpn_config_file", None)
        if config_file and "vpn_config" not in data:
            config_path = Path(config_file)
            if not config_path.is_absolute():
                config_path = path.parent / config_path
            data["vpn_config"] = config_path.read_text(encoding="utf-8")
        return cls.model_validate(data)


class AuthTokens(BaseModel):
    """Tokens issued by the login service."""

    model_config = ConfigDict(frozen=True)

    access_token: SecretStr
    refresh_token: SecretStr
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return datetime.now(UTC) >= expires_at


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts.

    Raises:
        ValueError: If the address has no valid port.
    """
    host, sep, port = address.strip().rpartition(":")
    if not sep or not host:
        raise ValueError(f"Address must be host:port, got {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in address {address!r}") from None
    if not 0 < port_num < 65536:
        raise ValueError(f"Port out of range in address {address!r}")
    return host, port_num
