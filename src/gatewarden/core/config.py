"""Configuration types with environment variable support.

All settings can be configured via environment variables with the GATEWARDEN_ prefix.
Example: GATEWARDEN_SPA_SEND_TIMEOUT=20 gives fwknop 20 seconds to finish.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


class TimeoutConfig(BaseSettings):
    """Stage timeouts and wait schedules.

    All values are in seconds. The defaults are the budgets the gateway
    deployment was tuned for; tests shrink them to zero.
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEWARDEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    spa_send_timeout: float = Field(
        default=10.0,
        description="Upper bound for one fwknop run.",
    )
    spa_precheck_timeout: float = Field(
        default=2.0,
        description="Dial timeout for the 'port already open' check before sending SPA.",
    )
    spa_verify_waits: tuple[float, ...] = Field(
        default=(0.5, 1.0, 2.0),
        description="Waits before each port probe after SPA was sent.",
    )
    port_probe_timeouts: tuple[float, ...] = Field(
        default=(5.0, 10.0, 15.0),
        description="Per-attempt dial timeouts for a port probe.",
    )
    port_probe_retry_delay: float = Field(
        default=0.5,
        description="Pause between port probe attempts.",
    )
    relay_read_timeout: float = Field(
        default=0.1,
        description="Per-line read timeout when sampling relay output.",
    )
    relay_read_lines: int = Field(
        default=5,
        description="Lines sampled from each relay output stream.",
    )
    relay_startup_grace: float = Field(
        default=2.0,
        description="Wait after launching the relay before checking it is still alive.",
    )
    relay_verify_timeout: float = Field(
        default=5.0,
        description="Dial timeout for the relay accept address.",
    )
    vpn_poll_attempts: int = Field(
        default=30,
        description="Connection status checks after launching the tunnel client.",
    )
    vpn_poll_interval: float = Field(
        default=1.0,
        description="Pause between tunnel client status checks.",
    )
    vpn_poll_deadline: float = Field(
        default=30.0,
        description="Wall-clock cap on the tunnel client poll (soft timeout).",
    )
    vpn_liveness_settle: float = Field(
        default=0.5,
        description="Settle time used by the default tunnel liveness heuristic.",
    )
    endpoint_dial_timeout: float = Field(
        default=1.0,
        description="Dial timeout for the relay endpoint check during the VPN poll.",
    )
    process_stop_grace: float = Field(
        default=5.0,
        description="Wait for a stopped process to exit before giving up.",
    )
    spa_stage_budget: float = Field(
        default=30.0,
        description="Budget reported by the state machine while in SPA_SENT.",
    )
    vpn_stage_budget: float = Field(
        default=60.0,
        description="Budget reported by the state machine while in VPN_CONNECTING.",
    )


class BinaryConfig(BaseSettings):
    """Locations of the external tools and scratch files."""

    model_config = SettingsConfigDict(
        env_prefix="GATEWARDEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    fwknop_path: str | None = Field(
        default=None,
        description="Explicit path to the fwknop binary. Searched first.",
    )
    stunnel_path: str | None = Field(
        default=None,
        description="Explicit path to the stunnel binary. Searched first.",
    )
    openvpn_path: str | None = Field(
        default=None,
        description="Explicit path to the openvpn binary. Searched first.",
    )
    search_dirs: list[str] = Field(
        default_factory=list,
        description="Extra directories searched before the platform defaults.",
    )
    temp_dir: str | None = Field(
        default=None,
        description="Parent directory for per-run config files. System temp dir if unset.",
    )
    elevate: bool = Field(
        default=True,
        description="Launch the tunnel client with privilege elevation when not already privileged.",
    )


class GatewardenConfig(BaseSettings):
    """Master configuration combining all settings.

    Example:
        config = get_config()
        print(config.timeouts.spa_send_timeout)
        print(config.binaries.openvpn_path)
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEWARDEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def timeouts(self) -> TimeoutConfig:
        """Get timeout configuration."""
        return TimeoutConfig()

    @property
    def binaries(self) -> BinaryConfig:
        """Get binary and path configuration."""
        return BinaryConfig()

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "timeouts": self.timeouts.model_dump(),
            "binaries": self.binaries.model_dump(),
        }


_config: GatewardenConfig | None = None


def get_config() -> GatewardenConfig:
    """Get the global configuration instance.

    The instance is created once and cached for the lifetime of the process.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = GatewardenConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration."""
    global _config
    _config = None
