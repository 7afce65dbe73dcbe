"""Shared fixtures."""

from __future__ import annotations

import socket
import stat
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
import structlog

from gatewarden.core.config import BinaryConfig, TimeoutConfig, clear_config
from gatewarden.core.profile import ConnectionProfile, VpnCredentials

SAMPLE_VPN_CONFIG = (
    "client\n"
    "dev tun\n"
    "proto tcp\n"
    "remote vpn.example.com 1194\n"
    "resolv-retry infinite\n"
    "remote-cert-tls server\n"
)


@pytest.fixture(autouse=True)
def _fresh_config() -> Iterator[None]:
    clear_config()
    yield
    clear_config()


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture
def fast_timeouts() -> TimeoutConfig:
    """Timeouts shrunk so failure paths finish quickly."""
    return TimeoutConfig(
        spa_send_timeout=2.0,
        spa_precheck_timeout=0.2,
        spa_verify_waits=(0.0, 0.0),
        port_probe_timeouts=(0.2, 0.2),
        port_probe_retry_delay=0.0,
        relay_read_timeout=0.05,
        relay_read_lines=2,
        relay_startup_grace=0.2,
        relay_verify_timeout=0.5,
        vpn_poll_attempts=3,
        vpn_poll_interval=0.05,
        vpn_poll_deadline=2.0,
        vpn_liveness_settle=0.0,
        endpoint_dial_timeout=0.2,
        process_stop_grace=2.0,
    )


@pytest.fixture
def bin_dir(tmp_path: Path) -> Path:
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def binaries(bin_dir: Path, tmp_path: Path) -> BinaryConfig:
    """Binary config that only looks in the test's own bin dir."""
    run_root = tmp_path / "run"
    run_root.mkdir()
    return BinaryConfig(
        fwknop_path=str(bin_dir / "fwknop"),
        stunnel_path=str(bin_dir / "stunnel"),
        openvpn_path=str(bin_dir / "openvpn"),
        temp_dir=str(run_root),
        elevate=False,
    )


@pytest.fixture
def fake_binary(bin_dir: Path) -> Callable[[str, str], Path]:
    """Write a Python script that stands in for an external tool."""

    def _write(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text(f"#!{sys.executable}\nimport sys, time\n{body}\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _write


@pytest.fixture
def listening_port() -> Iterator[int]:
    """A local port that accepts connections for the duration of the test."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", 0))
    server.listen(16)
    try:
        yield server.getsockname()[1]
    finally:
        server.close()


@pytest.fixture
def closed_port() -> int:
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def sample_vpn_config() -> str:
    return SAMPLE_VPN_CONFIG


@pytest.fixture
def profile() -> ConnectionProfile:
    return ConnectionProfile(
        host="gateway.example.com",
        port=8443,
        spa_key="rijndael-key-0123",
        spa_hmac="hmac-key-4567",
        vpn_config=SAMPLE_VPN_CONFIG,
        vpn_auth=VpnCredentials(username="alice", password="s3cret"),
    )
