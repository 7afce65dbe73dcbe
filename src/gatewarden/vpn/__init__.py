"""Tunnel client config rewriting and session management."""

from .manager import VpnSessionManager, classify_exit, parse_diagnostics
from .rewrite import HARDENING_DIRECTIVES, harden_and_rewrite, inject_credentials

__all__ = [
    "VpnSessionManager",
    "classify_exit",
    "parse_diagnostics",
    "HARDENING_DIRECTIVES",
    "harden_and_rewrite",
    "inject_credentials",
]
