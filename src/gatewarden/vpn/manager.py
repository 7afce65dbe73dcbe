"""Tunnel client (OpenVPN) lifecycle."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog

from gatewarden.core.config import BinaryConfig, TimeoutConfig, get_config
from gatewarden.core.exceptions import ErrorCause, ProcessFailureError
from gatewarden.core.process import (
    ProcessSlot,
    can_dial,
    find_binary,
    make_run_dir,
    remove_run_dir,
    write_private_file,
)
from gatewarden.core.profile import ConnectionProfile
from gatewarden.platform.launcher import ProcessLauncher, default_launcher
from gatewarden.vpn.rewrite import harden_and_rewrite, inject_credentials

logger = structlog.get_logger()

OPENVPN = "openvpn"

LivenessCheck = Callable[[asyncio.subprocess.Process], Awaitable[bool]]


def parse_diagnostics(text: str) -> list[str]:
    """Lines mentioning an error or fatal condition, for display only."""
    return [
        line.strip()
        for line in text.splitlines()
        if "error" in line.lower() or "fatal" in line.lower()
    ]


def classify_exit(log_text: str) -> ErrorCause:
    """Map the tunnel client's log to the cause of a non-zero exit."""
    upper = log_text.upper()
    if "AUTH_FAILED" in upper:
        return ErrorCause.VPN_AUTH_FAILED
    if "TLS HANDSHAKE FAILED" in upper or "TLS ERROR" in upper:
        return ErrorCause.VPN_HANDSHAKE_FAILED
    return ErrorCause.VPN_UNEXPECTED_EXIT


class VpnSessionManager:
    """Writes the tunnel client config, launches the client and confirms it.

    Confirmation is best effort: the client runs elevated and its real state
    is not observable from here, so running out of poll attempts is logged
    and treated as success. Only a non-zero exit during the poll fails.

    Example:
        vpn = VpnSessionManager()
        await vpn.start(profile)
        ...
        await vpn.stop()
    """

    def __init__(
        self,
        timeouts: TimeoutConfig | None = None,
        binaries: BinaryConfig | None = None,
        launcher: ProcessLauncher | None = None,
        liveness: LivenessCheck | None = None,
    ) -> None:
        if timeouts is None or binaries is None:
            config = get_config()
            timeouts = timeouts or config.timeouts
            binaries = binaries or config.binaries
        self.timeouts = timeouts
        self.binaries = binaries
        self.launcher = launcher or default_launcher(binaries.elevate)
        self.liveness: LivenessCheck = liveness or self._default_liveness
        self._slot = ProcessSlot(OPENVPN)
        self._run_dir: Path | None = None

    @property
    def pid(self) -> int | None:
        return self._slot.pid

    @property
    def run_dir(self) -> Path | None:
        return self._run_dir

    @property
    def log_path(self) -> Path | None:
        return self._run_dir / "openvpn.log" if self._run_dir else None

    def is_running(self) -> bool:
        return self._slot.is_running()

    def read_log(self) -> str:
        path = self.log_path
        if path is None or not path.exists():
            return ""
        return path.read_text(encoding="utf-8", errors="replace")

    def find_binary(self) -> Path:
        path, searched = find_binary(
            OPENVPN, self.binaries.openvpn_path, self.binaries.search_dirs
        )
        if path is None:
            logger.error("openvpn not found", searched=searched)
            raise ProcessFailureError(
                f"openvpn not found in any expected location (searched {len(searched)} paths)",
                ErrorCause.VPN_BINARY_NOT_FOUND,
            )
        return path

    def prepare(self, profile: ConnectionProfile, config: str | None = None) -> Path:
        """Write the final config (and credential file) into a fresh run dir.

        ``config`` is the already hardened config; when omitted it is built
        from the profile.
        """
        if config is None:
            host, port = profile.tunnel_endpoint
            config = harden_and_rewrite(profile.vpn_config, host, port)

        remove_run_dir(self._run_dir)
        self._run_dir = make_run_dir(self.binaries.temp_dir, prefix="gatewarden-vpn-")

        if profile.vpn_auth is not None:
            auth_path = write_private_file(
                self._run_dir / "auth.txt",
                f"{profile.vpn_auth.username.get_secret_value()}\n"
                f"{profile.vpn_auth.password.get_secret_value()}\n",
            )
            config = inject_credentials(config, auth_path)
            logger.debug("Credential file written", path=str(auth_path))

        config_path = write_private_file(self._run_dir / "client.ovpn", config)
        logger.debug("Tunnel config written", path=str(config_path))
        return config_path

    async def start(self, profile: ConnectionProfile, config: str | None = None) -> None:
        """Launch the tunnel client and wait for it to come up.

        Raises:
            ProcessFailureError: openvpn is missing, could not be launched,
                or exited non-zero while we were waiting.
        """
        binary = self.find_binary()
        config_path = self.prepare(profile, config)
        log_path = config_path.with_name("openvpn.log")

        argv = [str(binary), "--config", str(config_path)]
        logger.info("Starting VPN", launcher=self.launcher.name, config=str(config_path))
        with open(log_path, "wb") as log_file:
            try:
                process = await self.launcher.launch(
                    argv,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=self._run_dir,
                )
            except OSError as e:
                raise ProcessFailureError(
                    f"Failed to start openvpn: {e}", ErrorCause.VPN_FAILURE
                ) from e

        self._slot.replace(process)
        logger.info("VPN process started", pid=process.pid)
        await self._wait_until_up(profile, process)

    async def _wait_until_up(
        self, profile: ConnectionProfile, process: asyncio.subprocess.Process
    ) -> None:
        host, port = profile.tunnel_endpoint
        attempts = self.timeouts.vpn_poll_attempts
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeouts.vpn_poll_deadline

        for attempt in range(1, attempts + 1):
            if process.returncode is not None and process.returncode != 0:
                self._slot.take()
                raise self._exit_error(process.returncode)

            endpoint_up = await can_dial(host, port, self.timeouts.endpoint_dial_timeout)
            if endpoint_up and await self.liveness(process):
                logger.info("VPN connection confirmed", attempt=attempt)
                return

            logger.debug("VPN not up yet", attempt=attempt, endpoint_up=endpoint_up)
            if attempt == attempts or loop.time() >= deadline:
                break
            await asyncio.sleep(self.timeouts.vpn_poll_interval)

        if process.returncode is not None and process.returncode != 0:
            self._slot.take()
            raise self._exit_error(process.returncode)

        logger.warning(
            "VPN connection not confirmed, assuming it is up",
            attempts=attempts,
            deadline_sec=self.timeouts.vpn_poll_deadline,
        )

    def _exit_error(self, status: int) -> ProcessFailureError:
        log_text = self.read_log()
        cause = classify_exit(log_text)
        diagnostics = parse_diagnostics(log_text)
        logger.error(
            "VPN process exited",
            status=status,
            cause=cause.value,
            diagnostics=diagnostics[-5:],
        )
        message = f"openvpn exited with status {status}"
        if diagnostics:
            message += f": {diagnostics[-1]}"
        return ProcessFailureError(message, cause)

    async def _default_liveness(self, process: asyncio.subprocess.Process) -> bool:
        # No reliable interface check is available; settle, then trust a live process.
        await asyncio.sleep(self.timeouts.vpn_liveness_settle)
        return process.returncode is None

    async def stop(self) -> None:
        """Stop the tunnel client and remove its config and credential files."""
        await self._slot.stop(self.timeouts.process_stop_grace)
        remove_run_dir(self._run_dir)
        self._run_dir = None
