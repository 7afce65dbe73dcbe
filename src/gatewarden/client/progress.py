"""Human-readable progress records for the control surface."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

MAX_PROGRESS_LINES = 200


@dataclass(frozen=True)
class ProgressRecord:
    """One step of the connect sequence."""

    message: str
    step: str = ""
    ok: bool = True
    timestamp: datetime = field(default_factory=datetime.now)

    def format(self) -> str:
        return f"[{self.timestamp:%H:%M:%S}] {self.message}"


ProgressSink = Callable[[ProgressRecord], None]


class ProgressLog:
    """Keeps the most recent formatted progress lines.

    Usable directly as a ``ProgressSink``.
    """

    def __init__(self, max_lines: int = MAX_PROGRESS_LINES) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)

    def __call__(self, record: ProgressRecord) -> None:
        self._lines.append(record.format())

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def clear(self) -> None:
        self._lines.clear()
