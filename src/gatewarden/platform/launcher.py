"""Process launch strategies.

The tunnel client needs to create a virtual interface and change routes, so
on most platforms it has to run with elevated privileges. Orchestration code
only sees the ``ProcessLauncher`` protocol; which strategy is used is decided
once by ``default_launcher``.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import IO, Any, Protocol

import structlog

logger = structlog.get_logger()


class ProcessLauncher(Protocol):
    """Spawns an external process, possibly with elevated privileges."""

    name: str

    async def launch(
        self,
        argv: Sequence[str],
        *,
        stdout: int | IO[Any] | None = None,
        stderr: int | IO[Any] | None = None,
        cwd: Path | None = None,
    ) -> asyncio.subprocess.Process: ...


class DirectLauncher:
    """Runs the command as the current user."""

    name = "direct"

    async def launch(
        self,
        argv: Sequence[str],
        *,
        stdout: int | IO[Any] | None = None,
        stderr: int | IO[Any] | None = None,
        cwd: Path | None = None,
    ) -> asyncio.subprocess.Process:
        logger.debug("Launching process", launcher=self.name, argv=list(argv))
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
            cwd=cwd,
        )


class SudoLauncher(DirectLauncher):
    """Prefixes the command with non-interactive sudo.

    ``sudo -n`` fails immediately instead of prompting when no cached
    credential or NOPASSWD rule exists; that failure surfaces as a non-zero
    exit of the launched process.
    """

    name = "sudo"

    def __init__(self, sudo: str = "sudo") -> None:
        self.sudo = sudo

    async def launch(
        self,
        argv: Sequence[str],
        *,
        stdout: int | IO[Any] | None = None,
        stderr: int | IO[Any] | None = None,
        cwd: Path | None = None,
    ) -> asyncio.subprocess.Process:
        return await super().launch(
            [self.sudo, "-n", *argv], stdout=stdout, stderr=stderr, cwd=cwd
        )


class WindowsElevatedLauncher(DirectLauncher):
    """Starts the command through PowerShell ``Start-Process -Verb RunAs``.

    The UAC prompt is shown to the user. The returned handle belongs to the
    PowerShell wrapper, which exits once the elevated process is started.
    """

    name = "runas"

    async def launch(
        self,
        argv: Sequence[str],
        *,
        stdout: int | IO[Any] | None = None,
        stderr: int | IO[Any] | None = None,
        cwd: Path | None = None,
    ) -> asyncio.subprocess.Process:
        executable, *args = argv
        quoted = ",".join(_ps_quote(arg) for arg in args)
        command = f"Start-Process -FilePath {_ps_quote(executable)} -Verb RunAs -WindowStyle Normal"
        if quoted:
            command += f" -ArgumentList {quoted}"
        return await super().launch(
            ["powershell.exe", "-NoProfile", "-Command", command],
            stdout=stdout,
            stderr=stderr,
            cwd=cwd,
        )


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def is_privileged() -> bool:
    if sys.platform == "win32":
        try:
            import ctypes

            return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def default_launcher(elevate: bool = True) -> ProcessLauncher:
    """Pick the launch strategy for this platform."""
    if not elevate or is_privileged():
        return DirectLauncher()
    if sys.platform == "win32":
        return WindowsElevatedLauncher()
    if shutil.which("sudo"):
        return SudoLauncher()
    logger.warning("No privilege elevation available, launching directly")
    return DirectLauncher()
