"""Tunnel client config rewriting.

Both functions are pure. Lines that are not rewritten are passed through
unchanged, line endings included, and running either function twice gives
the same result as running it once.
"""

from __future__ import annotations

import re
from pathlib import PurePath

HARDENING_DIRECTIVES: tuple[str, ...] = (
    "block-outside-dns",
    "data-ciphers AES-256-GCM:AES-128-GCM",
    "auth SHA256",
    "tls-version-min 1.2",
    "tls-cipher TLS-ECDHE-RSA-WITH-AES-256-GCM-SHA384",
    "persist-tun",
    "persist-key",
    "nobind",
    "verb 3",
)

_LINE_RE = re.compile(r"[^\r\n]*(?:\r\n|\r|\n)|[^\r\n]+\Z")
_BLOCK_OPEN_RE = re.compile(r"^<([A-Za-z0-9-]+)>$")
_BLOCK_CLOSE_RE = re.compile(r"^</([A-Za-z0-9-]+)>$")

# Inline blocks whose body is made of directives. Every other block (ca, cert,
# key, tls-crypt, ...) carries PEM or key data.
DIRECTIVE_BLOCKS = frozenset({"connection"})


def split_lines(text: str) -> list[str]:
    """Split into lines keeping each line's own terminator."""
    return _LINE_RE.findall(text)


def _ending(line: str) -> str:
    return line[len(line.rstrip("\r\n")) :]


def _default_ending(lines: list[str]) -> str:
    for line in lines:
        ending = _ending(line)
        if ending:
            return ending
    return "\n"


def _terminate(lines: list[str], index: int, eol: str) -> None:
    if not _ending(lines[index]):
        lines[index] += eol


def _directives(lines: list[str]) -> list[str | None]:
    """Lower-cased directive name per line.

    None for comments, blanks, block tags and the body of data blocks. Lines
    inside a ``<connection>`` block are directives like any other.
    """
    names: list[str | None] = []
    block: str | None = None
    for line in lines:
        stripped = line.strip()
        if block is not None:
            if stripped.lower() == f"</{block}>":
                block = None
            names.append(None)
            continue
        match = _BLOCK_OPEN_RE.match(stripped)
        if match:
            tag = match.group(1).lower()
            if tag not in DIRECTIVE_BLOCKS:
                block = tag
            names.append(None)
            continue
        if _BLOCK_CLOSE_RE.match(stripped):
            names.append(None)
            continue
        if not stripped or stripped.startswith(("#", ";")):
            names.append(None)
            continue
        names.append(stripped.split(None, 1)[0].lower())
    return names


def harden_and_rewrite(raw_config: str, host: str, port: int) -> str:
    """Point the config at ``host:port`` and enforce the hardening directives.

    Every ``remote`` line collapses into a single ``remote <host> <port>`` at
    the position of the first one. Without any ``remote`` the line goes right
    after the first ``proto`` line, or at the top. Each hardening directive
    missing from the config is appended at the end.
    """
    lines = split_lines(raw_config)
    eol = _default_ending(lines)
    names = _directives(lines)
    remote = f"remote {host} {port}"

    out: list[str] = []
    placed = False
    proto_index: int | None = None
    for line, name in zip(lines, names, strict=True):
        if name == "remote":
            if not placed:
                out.append(remote + (_ending(line) or eol))
                placed = True
            continue
        if name == "proto" and proto_index is None:
            proto_index = len(out)
        out.append(line)

    if not placed:
        if proto_index is not None:
            _terminate(out, proto_index, eol)
            out.insert(proto_index + 1, remote + eol)
        else:
            out.insert(0, remote + eol)

    present = {line.strip().lower() for line in out}
    missing = [d for d in HARDENING_DIRECTIVES if d.lower() not in present]
    if missing:
        if out:
            _terminate(out, len(out) - 1, eol)
        out.extend(directive + eol for directive in missing)

    return "".join(out)


def _auth_path_arg(auth_path: str | PurePath) -> str:
    # The config parser treats backslashes as escapes; forward slashes work everywhere.
    value = str(auth_path).replace("\\", "/")
    if any(ch.isspace() for ch in value):
        return f'"{value}"'
    return value


def inject_credentials(config: str, auth_path: str | PurePath) -> str:
    """Make the single ``auth-user-pass`` directive point at ``auth_path``.

    The first existing directive is replaced in place and any others are
    dropped. Without one, the directive is appended.
    """
    lines = split_lines(config)
    eol = _default_ending(lines)
    directive = f"auth-user-pass {_auth_path_arg(auth_path)}"

    out: list[str] = []
    placed = False
    for line, name in zip(lines, _directives(lines), strict=True):
        if name == "auth-user-pass":
            if not placed:
                out.append(directive + (_ending(line) or eol))
                placed = True
            continue
        out.append(line)

    if not placed:
        if out:
            _terminate(out, len(out) - 1, eol)
        out.append(directive + eol)
    return "".join(out)
