"""Preflight gate interface.

The actual host checks (timezone, reachability, conflicting tunnels, binary
signatures) live outside this package. The orchestrator only needs something
that passes or raises ``PreflightConflictError`` with the failing cause.
"""

from __future__ import annotations

from typing import Protocol

import structlog

logger = structlog.get_logger()


class PreflightGate(Protocol):
    """Host checks that must pass before a tunnel may be brought up."""

    async def check(self) -> None:
        """Raise PreflightConflictError if any check fails."""
        ...


class PassthroughPreflightGate:
    """Gate that always passes. Used when the checks ran elsewhere."""

    async def check(self) -> None:
        logger.debug("Preflight checks delegated, passing")
