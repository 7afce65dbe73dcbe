"""Tests for the SPA authorizer."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from structlog.testing import capture_logs

from gatewarden.core.config import BinaryConfig, TimeoutConfig
from gatewarden.core.exceptions import (
    AuthorizationDeniedError,
    BinaryNotFoundError,
    ErrorCause,
    StageTimeoutError,
)
from gatewarden.spa.authorizer import SpaAuthorizer, build_spa_args, redact

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake binaries are POSIX scripts")

RECORD_ARGS = 'open(__file__ + ".args", "w").write("\\n".join(sys.argv[1:]))'


@pytest.fixture
def authorizer(fast_timeouts: TimeoutConfig, binaries: BinaryConfig) -> SpaAuthorizer:
    return SpaAuthorizer(fast_timeouts, binaries)


def local_profile(profile, port: int):
    return profile.model_copy(update={"host": "127.0.0.1", "port": port})


class TestArguments:
    """fwknop command line and secret handling."""

    def test_build_args(self, profile):
        assert build_spa_args(profile) == [
            "-A",
            "tcp/8443",
            "-s",
            "-D",
            "gateway.example.com",
            "--key-rijndael",
            "rijndael-key-0123",
            "--key-hmac",
            "hmac-key-4567",
            "--use-hmac",
        ]

    def test_redact(self):
        assert redact("rijndael-key-0123") == "rijn..."
        assert redact("") == "<empty>"


class TestProbePort:
    """Escalating port probes."""

    @pytest.mark.asyncio
    async def test_open_port(self, authorizer, listening_port):
        await authorizer.probe_port("127.0.0.1", listening_port)

    @pytest.mark.asyncio
    async def test_closed_port(self, authorizer, closed_port):
        with pytest.raises(StageTimeoutError) as exc_info:
            await authorizer.probe_port("127.0.0.1", closed_port)
        assert exc_info.value.cause is ErrorCause.PORT_PROBE_TIMEOUT

    @pytest.mark.asyncio
    async def test_escalating_timeouts_until_success(self, binaries):
        authorizer = SpaAuthorizer(TimeoutConfig(), binaries)
        dial = AsyncMock(side_effect=[OSError("refused"), TimeoutError(), None])

        with (
            patch("gatewarden.spa.authorizer.dial", dial),
            patch("gatewarden.spa.authorizer.asyncio.sleep", AsyncMock()) as sleep,
        ):
            await authorizer.probe_port("10.0.0.1", 443)

        assert [c.args for c in dial.call_args_list] == [
            ("10.0.0.1", 443, 5.0),
            ("10.0.0.1", 443, 10.0),
            ("10.0.0.1", 443, 15.0),
        ]
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.5)

    @pytest.mark.asyncio
    async def test_fails_only_after_all_attempts(self, binaries):
        authorizer = SpaAuthorizer(TimeoutConfig(), binaries)
        dial = AsyncMock(side_effect=OSError("refused"))

        with (
            patch("gatewarden.spa.authorizer.dial", dial),
            patch("gatewarden.spa.authorizer.asyncio.sleep", AsyncMock()),
        ):
            with pytest.raises(StageTimeoutError):
                await authorizer.probe_port("10.0.0.1", 443)

        assert dial.await_count == 3


@posix_only
class TestSend:
    """Running the fwknop client."""

    @pytest.mark.asyncio
    async def test_send_passes_arguments(self, authorizer, profile, fake_binary):
        script = fake_binary("fwknop", RECORD_ARGS)

        await authorizer.send(profile)

        recorded = Path(str(script) + ".args").read_text().splitlines()
        assert recorded == build_spa_args(profile)

    @pytest.mark.asyncio
    async def test_secrets_not_logged(self, authorizer, profile, fake_binary):
        fake_binary("fwknop", "pass")

        with capture_logs() as logs:
            await authorizer.send(profile)

        sent = next(e for e in logs if e["event"] == "Sending SPA packet")
        assert sent["key"] == "rijn..."
        assert sent["hmac"] == "hmac..."
        assert "rijndael-key-0123" not in repr(logs)
        assert "hmac-key-4567" not in repr(logs)

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_denied(self, authorizer, profile, fake_binary):
        fake_binary("fwknop", 'sys.stderr.write("denied by policy\\n"); sys.exit(2)')

        with pytest.raises(AuthorizationDeniedError) as exc_info:
            await authorizer.send(profile)

        assert exc_info.value.cause is ErrorCause.SPA_DENIED
        assert "denied by policy" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_slow_client_times_out(self, binaries, profile, fake_binary):
        fake_binary("fwknop", "time.sleep(10)")
        authorizer = SpaAuthorizer(TimeoutConfig(spa_send_timeout=0.3), binaries)

        with pytest.raises(StageTimeoutError) as exc_info:
            await authorizer.send(profile)

        assert exc_info.value.cause is ErrorCause.SPA_TIMEOUT

    @pytest.mark.asyncio
    async def test_missing_binary(self, fast_timeouts, tmp_path, profile):
        binaries = BinaryConfig(fwknop_path=str(tmp_path / "nope"), search_dirs=[str(tmp_path)])
        authorizer = SpaAuthorizer(fast_timeouts, binaries)

        with patch("gatewarden.core.process.shutil.which", return_value=None), patch(
            "gatewarden.core.process.DEFAULT_SEARCH_DIRS", ()
        ):
            with pytest.raises(BinaryNotFoundError) as exc_info:
                await authorizer.send(profile)

        assert exc_info.value.cause is ErrorCause.SPA_BINARY_NOT_FOUND
        assert str(tmp_path / "nope") in exc_info.value.searched

    @pytest.mark.asyncio
    async def test_version(self, authorizer, fake_binary):
        fake_binary("fwknop", 'print("fwknop client 2.6.10")')
        assert await authorizer.version() == "fwknop client 2.6.10"


@posix_only
class TestVerify:
    """Send then wait for the port to open."""

    @pytest.mark.asyncio
    async def test_verify_success(self, authorizer, profile, fake_binary, listening_port):
        fake_binary("fwknop", "pass")

        with capture_logs() as logs:
            await authorizer.verify(local_profile(profile, listening_port))

        events = [e["event"] for e in logs]
        assert "Gateway port already open before SPA" in events
        assert "SPA verified" in events

    @pytest.mark.asyncio
    async def test_verify_port_never_opens(self, authorizer, profile, fake_binary, closed_port):
        fake_binary("fwknop", "pass")

        with pytest.raises(StageTimeoutError) as exc_info:
            await authorizer.verify(local_profile(profile, closed_port))

        assert exc_info.value.cause is ErrorCause.PORT_PROBE_TIMEOUT

    @pytest.mark.asyncio
    async def test_verify_stops_on_denied(self, authorizer, profile, fake_binary, closed_port):
        fake_binary("fwknop", "sys.exit(1)")
        authorizer.probe_port = AsyncMock()

        with pytest.raises(AuthorizationDeniedError):
            await authorizer.verify(local_profile(profile, closed_port))

        authorizer.probe_port.assert_not_awaited()
