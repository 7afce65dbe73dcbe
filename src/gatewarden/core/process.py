"""External process helpers shared by the stage managers."""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import sys
import tempfile
from collections.abc import Sequence
from pathlib import Path

import structlog

logger = structlog.get_logger()

if sys.platform == "win32":
    DEFAULT_SEARCH_DIRS: tuple[str, ...] = (
        r"C:\Program Files\Gatewarden\bin",
        r"C:\Program Files\OpenVPN\bin",
        r"C:\Program Files (x86)\stunnel\bin",
        ".",
        "bin",
    )
else:
    DEFAULT_SEARCH_DIRS = (
        "/usr/local/sbin",
        "/usr/local/bin",
        "/usr/sbin",
        "/usr/bin",
        "/opt/homebrew/sbin",
        "/opt/homebrew/bin",
        "bin",
    )


def executable_name(name: str) -> str:
    if sys.platform == "win32" and not name.lower().endswith(".exe"):
        return f"{name}.exe"
    return name


def candidate_paths(
    name: str,
    explicit: str | None = None,
    search_dirs: Sequence[str] = (),
) -> list[str]:
    """Ordered list of locations to look for ``name``."""
    exe = executable_name(name)
    candidates: list[str] = []
    if explicit:
        candidates.append(explicit)
    for directory in (*search_dirs, *DEFAULT_SEARCH_DIRS):
        candidates.append(os.path.join(directory, exe))
    return candidates


def find_binary(
    name: str,
    explicit: str | None = None,
    search_dirs: Sequence[str] = (),
) -> tuple[Path | None, list[str]]:
    """Search for an executable by priority.

    Order: the explicit path, the extra search dirs, the platform defaults,
    then ``PATH``.

    Returns:
        The absolute path if found (else None) and the list of places searched.
    """
    searched = candidate_paths(name, explicit, search_dirs)
    for candidate in searched:
        path = Path(candidate)
        if path.is_file() and os.access(path, os.X_OK):
            resolved = path.resolve()
            logger.debug("Binary found", binary=name, path=str(resolved))
            return resolved, searched
    on_path = shutil.which(executable_name(name))
    searched.append(f"$PATH/{executable_name(name)}")
    if on_path:
        logger.debug("Binary found on PATH", binary=name, path=on_path)
        return Path(on_path).resolve(), searched
    logger.debug("Binary not found", binary=name, searched=searched)
    return None, searched


def make_run_dir(parent: str | None = None, prefix: str = "gatewarden-") -> Path:
    """Create a fresh directory only the current user can read."""
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    with contextlib.suppress(OSError):
        path.chmod(0o700)
    return path


def remove_run_dir(path: Path | None) -> None:
    if path is None:
        return
    shutil.rmtree(path, ignore_errors=True)


def write_private_file(path: Path, content: str) -> Path:
    """Write ``content`` to a new file with owner-only permissions."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
        f.write(content)
    return path


async def dial(host: str, port: int, timeout: float) -> None:
    """Open and immediately close a TCP connection.

    Raises:
        OSError: If the connection is refused or fails.
        TimeoutError: If it does not complete within ``timeout``.
    """
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()


async def can_dial(host: str, port: int, timeout: float) -> bool:
    try:
        await dial(host, port, timeout)
    except (OSError, TimeoutError):
        return False
    return True


async def read_lines(
    stream: asyncio.StreamReader | None,
    max_lines: int,
    timeout: float,
) -> list[str]:
    """Read up to ``max_lines`` lines, giving up on the first slow read."""
    lines: list[str] = []
    if stream is None:
        return lines
    for _ in range(max_lines):
        try:
            raw = await asyncio.wait_for(stream.readline(), timeout)
        except TimeoutError:
            break
        if not raw:
            break
        lines.append(raw.decode("utf-8", errors="replace").rstrip())
    return lines


class ProcessSlot:
    """Holds at most one running process for a tool.

    ``replace`` overwrites whatever was held. Call ``stop`` first if the old
    process should not be orphaned.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._process: asyncio.subprocess.Process | None = None

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    def replace(self, process: asyncio.subprocess.Process) -> None:
        if self._process is not None and self._process.returncode is None:
            logger.warning(
                "Replacing a live process handle",
                tool=self.name,
                old_pid=self._process.pid,
            )
        self._process = process

    def take(self) -> asyncio.subprocess.Process | None:
        process, self._process = self._process, None
        return process

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def stop(self, grace: float = 5.0) -> None:
        """Terminate the held process and wait for it. Best effort, never raises."""
        process = self.take()
        if process is None:
            logger.info("No process to stop", tool=self.name)
            return

        logger.info("Stopping process", tool=self.name, pid=process.pid)
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            except OSError as e:
                logger.warning("Failed to signal process", tool=self.name, error=str(e))

        try:
            status = await asyncio.wait_for(process.wait(), grace)
            logger.info("Process exited", tool=self.name, status=status)
        except TimeoutError:
            logger.warning(
                "Timeout waiting for process to exit",
                tool=self.name,
                pid=process.pid,
                grace_sec=grace,
            )
