"""Single Packet Authorization via fwknop.

The gateway keeps its port closed until it sees a valid SPA packet. We send
the packet with the external ``fwknop`` client and then probe the port until
it opens.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import structlog

from gatewarden.core.config import BinaryConfig, TimeoutConfig, get_config
from gatewarden.core.exceptions import (
    AuthorizationDeniedError,
    BinaryNotFoundError,
    ErrorCause,
    ProcessFailureError,
    StageTimeoutError,
)
from gatewarden.core.process import can_dial, dial, find_binary
from gatewarden.core.profile import ConnectionProfile

logger = structlog.get_logger()

FWKNOP = "fwknop"


def redact(secret: str, keep: int = 4) -> str:
    """Only the first few characters of a secret ever reach the log."""
    if not secret:
        return "<empty>"
    return f"{secret[:keep]}..."


def build_spa_args(profile: ConnectionProfile) -> list[str]:
    """fwknop arguments requesting access to the gateway's TCP port."""
    return [
        "-A",
        f"tcp/{profile.port}",
        "-s",
        "-D",
        profile.host,
        "--key-rijndael",
        profile.spa_key.get_secret_value(),
        "--key-hmac",
        profile.spa_hmac.get_secret_value(),
        "--use-hmac",
    ]


class SpaAuthorizer:
    """Sends SPA packets and waits for the gateway port to open.

    Example:
        authorizer = SpaAuthorizer()
        await authorizer.verify(profile)
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

    def find_binary(self) -> Path:
        """Locate fwknop.

        Raises:
            BinaryNotFoundError: If no candidate location has it.
        """
        path, searched = find_binary(
            FWKNOP, self.binaries.fwknop_path, self.binaries.search_dirs
        )
        if path is None:
            logger.error("fwknop not found", searched=searched)
            raise BinaryNotFoundError(FWKNOP, searched, ErrorCause.SPA_BINARY_NOT_FOUND)
        return path

    async def send(self, profile: ConnectionProfile) -> None:
        """Send one SPA packet.

        Raises:
            BinaryNotFoundError: fwknop is missing.
            ProcessFailureError: fwknop could not be started.
            StageTimeoutError: fwknop did not finish in time.
            AuthorizationDeniedError: fwknop exited non-zero.
        """
        binary = self.find_binary()
        args = build_spa_args(profile)
        logger.info(
            "Sending SPA packet",
            host=profile.host,
            port=profile.port,
            key=redact(profile.spa_key.get_secret_value()),
            hmac=redact(profile.spa_hmac.get_secret_value()),
        )

        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessFailureError(
                f"Failed to start fwknop: {e}", ErrorCause.SPA_DENIED
            ) from e

        timeout = self.timeouts.spa_send_timeout
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            logger.error("fwknop timed out", timeout_sec=timeout)
            raise StageTimeoutError(
                f"fwknop did not finish within {timeout:g}s", ErrorCause.SPA_TIMEOUT
            ) from None

        out = stdout.decode("utf-8", errors="replace").strip()
        err = stderr.decode("utf-8", errors="replace").strip()
        if out:
            logger.debug("fwknop stdout", output=out)
        if err:
            logger.debug("fwknop stderr", output=err)

        if process.returncode != 0:
            detail = err.splitlines()[0] if err else "no error output"
            logger.error("fwknop failed", status=process.returncode, error=detail)
            raise AuthorizationDeniedError(
                f"fwknop exited with status {process.returncode}: {detail}"
            )

        logger.info("SPA packet sent", host=profile.host)

    async def probe_port(self, host: str, port: int) -> None:
        """Dial ``host:port`` with escalating timeouts until it answers.

        Raises:
            StageTimeoutError: Every attempt failed (cause PORT_PROBE_TIMEOUT).
        """
        timeouts = self.timeouts.port_probe_timeouts
        last_error: BaseException | None = None
        for attempt, timeout in enumerate(timeouts, start=1):
            try:
                await dial(host, port, timeout)
            except (OSError, TimeoutError) as e:
                last_error = e
                logger.debug(
                    "Port probe attempt failed",
                    host=host,
                    port=port,
                    attempt=attempt,
                    timeout_sec=timeout,
                    error=str(e) or type(e).__name__,
                )
            else:
                logger.info("Port is open", host=host, port=port, attempt=attempt)
                return
            if attempt < len(timeouts):
                await asyncio.sleep(self.timeouts.port_probe_retry_delay)

        raise StageTimeoutError(
            f"Port {host}:{port} did not open after {len(timeouts)} attempts"
            f" ({last_error or 'no attempts'})",
            ErrorCause.PORT_PROBE_TIMEOUT,
        )

    async def wait_for_port(self, profile: ConnectionProfile) -> None:
        """Probe after each verify wait; first success returns."""
        for wait in self.timeouts.spa_verify_waits:
            await asyncio.sleep(wait)
            try:
                await self.probe_port(profile.host, profile.port)
            except StageTimeoutError:
                logger.debug("Port still closed", host=profile.host, waited_sec=wait)
            else:
                return
        raise StageTimeoutError(
            f"Port {profile.host}:{profile.port} did not open after SPA",
            ErrorCause.PORT_PROBE_TIMEOUT,
        )

    async def verify(self, profile: ConnectionProfile) -> None:
        """Send SPA and confirm the gateway port opens."""
        host, port = profile.host, profile.port
        if await can_dial(host, port, self.timeouts.spa_precheck_timeout):
            logger.warning("Gateway port already open before SPA", host=host, port=port)

        await self.send(profile)
        await self.wait_for_port(profile)
        logger.info("SPA verified", host=host, port=port)

    async def version(self) -> str:
        """Return the first line of ``fwknop --version``."""
        binary = self.find_binary()
        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            stdout, _ = await asyncio.wait_for(
                process.communicate(), self.timeouts.spa_send_timeout
            )
        except OSError as e:
            raise ProcessFailureError(
                f"Failed to run fwknop --version: {e}", ErrorCause.SPA_DENIED
            ) from e
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            raise StageTimeoutError("fwknop --version timed out", ErrorCause.SPA_TIMEOUT) from None
        text = stdout.decode("utf-8", errors="replace").strip()
        return text.splitlines()[0] if text else ""
