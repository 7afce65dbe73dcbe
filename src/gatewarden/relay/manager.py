"""TLS relay (stunnel) lifecycle.

The relay listens on a local address and forwards to the gateway over TLS,
so the tunnel client only ever talks to 127.0.0.1.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path

import structlog

from gatewarden.core.config import BinaryConfig, TimeoutConfig, get_config
from gatewarden.core.exceptions import ErrorCause, ProcessFailureError
from gatewarden.core.process import (
    ProcessSlot,
    dial,
    find_binary,
    make_run_dir,
    read_lines,
    remove_run_dir,
    write_private_file,
)
from gatewarden.core.profile import ConnectionProfile, split_host_port

logger = structlog.get_logger()

STUNNEL = "stunnel"

# Key spelling stunnel expects, for keys whose attribute name differs.
_KEY_NAMES = {"cafile": "CAfile"}


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


@dataclass
class RelayConfig:
    """stunnel client configuration.

    Rendered as global ``key = value`` lines followed by one service section.
    """

    accept: str
    connect: str
    client: bool = True
    cert: str | None = None
    key: str | None = None
    cafile: str | None = None
    verify: int | None = None
    debug: int | None = None
    output: str | None = None
    foreground: bool | None = None
    service: str = "openvpn"

    @classmethod
    def from_profile(cls, profile: ConnectionProfile) -> RelayConfig:
        return cls(
            accept=profile.relay_accept,
            connect=profile.relay_target,
            cert=profile.relay_cert,
            debug=3,
        )

    def to_config_string(self) -> str:
        lines: list[str] = []
        if self.foreground is not None:
            lines.append(f"foreground = {_yes_no(self.foreground)}")
        if self.debug is not None:
            lines.append(f"debug = {self.debug}")
        if self.output:
            lines.append(f"output = {self.output}")
        lines.append("")

        lines.append(f"[{self.service}]")
        lines.append(f"client = {_yes_no(self.client)}")
        lines.append(f"accept = {self.accept}")
        lines.append(f"connect = {self.connect}")
        for attr in ("cert", "key", "cafile"):
            value = getattr(self, attr)
            if value:
                lines.append(f"{_KEY_NAMES.get(attr, attr)} = {value}")
        if self.verify is not None:
            lines.append(f"verify = {self.verify}")
        return "\n".join(lines) + "\n"

    @classmethod
    def parse(cls, text: str) -> RelayConfig:
        """Read a rendered configuration back.

        Comment lines (``;`` or ``#``) and unknown keys are ignored.

        Raises:
            ValueError: If the service section lacks ``accept`` or ``connect``.
        """
        global_opts: dict[str, str] = {}
        service_opts: dict[str, str] = {}
        service: str | None = None
        current = global_opts

        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith((";", "#")):
                continue
            if line.startswith("[") and line.endswith("]"):
                if service is not None:
                    break
                service = line[1:-1].strip()
                current = service_opts
                continue
            key, sep, value = line.partition("=")
            if sep:
                current[key.strip().lower()] = value.strip()

        if "accept" not in service_opts or "connect" not in service_opts:
            raise ValueError("Relay config needs accept and connect in a service section")

        def opt_int(source: dict[str, str], key: str) -> int | None:
            return int(source[key]) if key in source else None

        foreground = global_opts.get("foreground")
        return cls(
            accept=service_opts["accept"],
            connect=service_opts["connect"],
            client=service_opts.get("client", "yes").lower() == "yes",
            cert=service_opts.get("cert"),
            key=service_opts.get("key"),
            cafile=service_opts.get("cafile"),
            verify=opt_int(service_opts, "verify"),
            debug=opt_int(global_opts, "debug"),
            output=global_opts.get("output"),
            foreground=None if foreground is None else foreground.lower() == "yes",
            service=service or "openvpn",
        )


class TunnelRelayManager:
    """Starts, verifies and stops the local TLS relay.

    Example:
        relay = TunnelRelayManager()
        await relay.start(profile)
        await relay.verify(profile.relay_accept)
        ...
        await relay.stop()
    """

    def __init__(
        self,
        timeouts: TimeoutConfig | None = None,
        binaries: BinaryConfig | None = None,
    ) -> None:
        if timeouts is None or binaries is None:
            config = get_config()
            timeouts = timeouts or config.timeouts
            binaries = binaries or config.binaries
        self.timeouts = timeouts
        self.binaries = binaries
        self._slot = ProcessSlot(STUNNEL)
        self._run_dir: Path | None = None

    @property
    def pid(self) -> int | None:
        return self._slot.pid

    @property
    def run_dir(self) -> Path | None:
        return self._run_dir

    def is_running(self) -> bool:
        return self._slot.is_running()

    def find_binary(self) -> Path:
        path, searched = find_binary(
            STUNNEL, self.binaries.stunnel_path, self.binaries.search_dirs
        )
        if path is None:
            logger.error("stunnel not found", searched=searched)
            raise ProcessFailureError(
                f"stunnel not found in any expected location (searched {len(searched)} paths)",
                ErrorCause.RELAY_FAILURE,
            )
        return path

    def write_config(self, config: RelayConfig) -> Path:
        """Render ``config`` into a fresh private run directory."""
        remove_run_dir(self._run_dir)
        self._run_dir = make_run_dir(self.binaries.temp_dir, prefix="gatewarden-relay-")
        if config.output is None:
            config.output = str(self._run_dir / "stunnel.log")
        if config.foreground is None and sys.platform != "win32":
            config.foreground = True
        path = self._run_dir / "stunnel.conf"
        write_private_file(path, config.to_config_string())
        logger.debug("Relay config written", path=str(path))
        return path

    async def start(self, profile: ConnectionProfile) -> None:
        """Launch the relay for ``profile``.

        Raises:
            ProcessFailureError: stunnel is missing, could not start, or
                exited during the startup grace period (cause RELAY_FAILURE).
        """
        config = RelayConfig.from_profile(profile)
        binary = self.find_binary()
        config_path = self.write_config(config)

        logger.info(
            "Starting relay",
            accept=config.accept,
            connect=config.connect,
            binary=str(binary),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                str(config_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._run_dir,
            )
        except OSError as e:
            raise ProcessFailureError(
                f"Failed to start stunnel: {e}", ErrorCause.RELAY_FAILURE
            ) from e

        read_timeout = self.timeouts.relay_read_timeout
        max_lines = self.timeouts.relay_read_lines
        for line in await read_lines(process.stdout, max_lines, read_timeout):
            logger.debug("stunnel stdout", line=line)
        for line in await read_lines(process.stderr, max_lines, read_timeout):
            logger.debug("stunnel stderr", line=line)

        self._slot.replace(process)
        logger.info("Relay process started", pid=process.pid)

        await asyncio.sleep(self.timeouts.relay_startup_grace)

        if process.returncode is not None and process.returncode != 0:
            self._slot.take()
            logger.error("Relay exited during startup", status=process.returncode)
            raise ProcessFailureError(
                f"stunnel exited with status {process.returncode}",
                ErrorCause.RELAY_FAILURE,
            )

    async def verify(self, accept_addr: str) -> None:
        """Dial the relay's listening address.

        Raises:
            ProcessFailureError: The address does not accept a connection.
        """
        try:
            host, port = split_host_port(accept_addr)
            await dial(host, port, self.timeouts.relay_verify_timeout)
        except (ValueError, OSError, TimeoutError) as e:
            logger.error("Relay connection failed", accept=accept_addr, error=str(e))
            raise ProcessFailureError(
                f"Relay connection failed: {e or type(e).__name__}",
                ErrorCause.RELAY_FAILURE,
            ) from e
        logger.info("Relay connection verified", accept=accept_addr)

    async def stop(self) -> None:
        """Stop the relay if it is running and remove its run directory."""
        await self._slot.stop(self.timeouts.process_stop_grace)
        remove_run_dir(self._run_dir)
        self._run_dir = None
