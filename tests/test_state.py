"""Tests for the connection state machine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from gatewarden.client.state import (
    RETRY_RESUME,
    ConnectionEvent,
    ConnectionState,
    ConnectionStateMachine,
    Disconnect,
    ErrorInfo,
    FetchBootstrap,
    Login,
    Logout,
    ManualConfig,
    PortProbeFailed,
    PortProbeSuccess,
    PreflightFailed,
    PreflightPassed,
    Retry,
    SpaFailed,
    SpaSent,
    VpnConnected,
    VpnFailed,
    VpnStarted,
    resume_state_for,
)
from gatewarden.core.exceptions import (
    ErrorCause,
    GatewardenError,
    InvalidTransitionError,
    PreflightConflictError,
    StageTimeoutError,
)
from gatewarden.core.profile import AuthTokens, ConnectionProfile

S = ConnectionState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_events(profile: ConnectionProfile) -> list[ConnectionEvent]:
    error = GatewardenError("boom", ErrorCause.SPA_DENIED)
    return [
        Login(),
        Logout(),
        FetchBootstrap(),
        ManualConfig(profile),
        PreflightPassed(),
        PreflightFailed(error),
        SpaSent(),
        SpaFailed(error),
        PortProbeSuccess(),
        PortProbeFailed(error),
        VpnStarted(),
        VpnConnected(),
        VpnFailed(error),
        Disconnect(),
        Retry(),
    ]


VALID: dict[ConnectionState, set[type[ConnectionEvent]]] = {
    S.IDLE: {Login},
    S.PREFLIGHT: {PreflightPassed, PreflightFailed},
    S.AUTHENTICATED: {FetchBootstrap, ManualConfig, Logout},
    S.BOOTSTRAP_FETCH: {ManualConfig},
    S.BOOTSTRAP_MANUAL: {SpaSent},
    S.SPA_SENT: {SpaFailed, PortProbeSuccess, PortProbeFailed},
    S.PORT_OPEN: {VpnStarted},
    S.VPN_CONNECTING: {VpnConnected, VpnFailed},
    S.CONNECTED: {Disconnect, Logout},
    S.ERROR: {Retry, Logout},
}


def drive_to(fsm: ConnectionStateMachine, target: ConnectionState, profile: ConnectionProfile) -> None:
    paths: dict[ConnectionState, list[ConnectionEvent]] = {
        S.IDLE: [],
        S.PREFLIGHT: [Login()],
        S.AUTHENTICATED: [Login(), PreflightPassed()],
        S.BOOTSTRAP_FETCH: [Login(), PreflightPassed(), FetchBootstrap()],
        S.BOOTSTRAP_MANUAL: [Login(), PreflightPassed(), ManualConfig(profile)],
    }
    spa = [*paths[S.BOOTSTRAP_MANUAL], SpaSent()]
    paths[S.SPA_SENT] = spa
    paths[S.PORT_OPEN] = [*spa, PortProbeSuccess()]
    paths[S.VPN_CONNECTING] = [*spa, PortProbeSuccess(), VpnStarted()]
    paths[S.CONNECTED] = [*spa, PortProbeSuccess(), VpnStarted(), VpnConnected()]
    paths[S.ERROR] = [*spa, SpaFailed(GatewardenError("denied", ErrorCause.SPA_DENIED))]

    for event in paths[target]:
        fsm.handle_event(event)
    assert fsm.state is target


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fsm(clock: FakeClock) -> ConnectionStateMachine:
    return ConnectionStateMachine(spa_budget=30.0, vpn_budget=60.0, clock=clock)


@pytest.fixture
def tokens() -> AuthTokens:
    return AuthTokens(
        access_token="access",
        refresh_token="refresh",
        expires_at=datetime.now(UTC) + timedelta(hours=1),
    )


class TestTransitionTable:
    """Every (state, event) pair is either in the table or rejected cleanly."""

    def test_initial_state_is_idle(self, fsm):
        assert fsm.state is S.IDLE
        assert fsm.error is None
        assert not fsm.is_busy()

    @pytest.mark.parametrize("state", list(ConnectionState))
    def test_invalid_events_leave_machine_untouched(self, state, profile, clock):
        for event in make_events(profile):
            if type(event) in VALID[state]:
                continue
            fsm = ConnectionStateMachine(clock=clock)
            drive_to(fsm, state, profile)
            before = fsm.snapshot()
            before_stats = fsm.stats

            with pytest.raises(InvalidTransitionError) as exc_info:
                fsm.handle_event(event)

            assert exc_info.value.cause is ErrorCause.INTERNAL
            assert exc_info.value.event == event.name
            assert exc_info.value.state == state.value
            assert fsm.snapshot() == before
            assert fsm.stats == before_stats

    @pytest.mark.parametrize("state", list(ConnectionState))
    def test_valid_events_are_accepted(self, state, profile, clock):
        for event in make_events(profile):
            if type(event) not in VALID[state]:
                continue
            fsm = ConnectionStateMachine(clock=clock)
            drive_to(fsm, state, profile)
            fsm.handle_event(event)

    def test_fetched_bootstrap_goes_straight_to_spa_sent(self, fsm, profile):
        drive_to(fsm, S.BOOTSTRAP_FETCH, profile)
        fsm.handle_event(ManualConfig(profile))
        assert fsm.state is S.SPA_SENT
        assert fsm.profile == profile

    def test_skipped_spa_is_recorded(self, fsm, profile):
        drive_to(fsm, S.BOOTSTRAP_MANUAL, profile)
        fsm.handle_event(SpaSent(skipped=True))
        assert fsm.state is S.SPA_SENT
        assert fsm.spa_skipped is True
        fsm.handle_event(PortProbeSuccess())
        assert fsm.state is S.PORT_OPEN


class TestErrorsAndRetry:
    """Failure events store the classified error; Retry resumes by cause."""

    def test_failure_stores_error_info(self, fsm, profile):
        drive_to(fsm, S.SPA_SENT, profile)
        error = StageTimeoutError("probe failed", ErrorCause.PORT_PROBE_TIMEOUT)
        fsm.handle_event(PortProbeFailed(error))

        assert fsm.state is S.ERROR
        assert fsm.error == ErrorInfo(
            cause=ErrorCause.PORT_PROBE_TIMEOUT,
            message="probe failed",
            can_retry=True,
            resume_state=S.SPA_SENT,
        )
        assert fsm.last_error is error
        assert fsm.can_retry()
        assert fsm.stats["error_count"] == 1

    @pytest.mark.parametrize(
        "cause", [c for c in ErrorCause if c is not ErrorCause.INTERNAL]
    )
    def test_retry_resumes_at_documented_state(self, fsm, profile, cause):
        drive_to(fsm, S.SPA_SENT, profile)
        fsm.handle_event(SpaFailed(GatewardenError("failed", cause)))
        assert fsm.can_retry()

        fsm.handle_event(Retry())

        expected = RETRY_RESUME.get(cause, S.AUTHENTICATED)
        assert fsm.state is expected
        assert fsm.state is resume_state_for(cause)
        assert fsm.error is None

    def test_resume_table(self):
        assert resume_state_for(ErrorCause.OFFLINE) is S.PREFLIGHT
        assert resume_state_for(ErrorCause.WRONG_TIMEZONE) is S.PREFLIGHT
        assert resume_state_for(ErrorCause.TUNNEL_ACTIVE) is S.PREFLIGHT
        assert resume_state_for(ErrorCause.SPA_DENIED) is S.SPA_SENT
        assert resume_state_for(ErrorCause.SPA_TIMEOUT) is S.SPA_SENT
        assert resume_state_for(ErrorCause.PORT_PROBE_TIMEOUT) is S.SPA_SENT
        assert resume_state_for(ErrorCause.VPN_AUTH_FAILED) is S.VPN_CONNECTING
        assert resume_state_for(ErrorCause.VPN_HANDSHAKE_FAILED) is S.VPN_CONNECTING
        assert resume_state_for(ErrorCause.RELAY_FAILURE) is S.AUTHENTICATED
        assert resume_state_for(ErrorCause.VPN_UNEXPECTED_EXIT) is S.AUTHENTICATED

    def test_internal_error_cannot_be_retried(self, fsm, profile):
        drive_to(fsm, S.VPN_CONNECTING, profile)
        fsm.handle_event(VpnFailed(GatewardenError("bug", ErrorCause.INTERNAL)))
        assert fsm.state is S.ERROR
        assert not fsm.can_retry()

        with pytest.raises(InvalidTransitionError):
            fsm.handle_event(Retry())
        assert fsm.state is S.ERROR

        fsm.handle_event(Logout())
        assert fsm.state is S.IDLE

    def test_preflight_failure_retries_preflight(self, fsm):
        fsm.handle_event(Login())
        fsm.handle_event(
            PreflightFailed(PreflightConflictError("no net", ErrorCause.OFFLINE))
        )
        assert fsm.error.cause is ErrorCause.OFFLINE
        fsm.handle_event(Retry())
        assert fsm.state is S.PREFLIGHT

    def test_port_probe_failure_then_retry_goes_to_spa_sent(self, fsm, profile):
        drive_to(fsm, S.SPA_SENT, profile)
        fsm.handle_event(
            PortProbeFailed(StageTimeoutError("closed", ErrorCause.PORT_PROBE_TIMEOUT))
        )
        fsm.handle_event(Retry())
        assert fsm.state is S.SPA_SENT


class TestDisconnectAndLogout:
    """Disconnect keeps the session, logout ends it."""

    def test_disconnect_keeps_tokens(self, fsm, profile, tokens):
        fsm.set_auth_tokens(tokens)
        drive_to(fsm, S.CONNECTED, profile)

        fsm.handle_event(Disconnect())

        assert fsm.state is S.AUTHENTICATED
        assert fsm.auth_tokens == tokens
        assert fsm.profile is None

    def test_logout_clears_tokens(self, fsm, profile, tokens):
        fsm.set_auth_tokens(tokens)
        drive_to(fsm, S.CONNECTED, profile)

        fsm.handle_event(Logout())

        assert fsm.state is S.IDLE
        assert fsm.auth_tokens is None
        assert fsm.profile is None

    def test_can_disconnect_only_when_connected(self, fsm, profile):
        assert not fsm.can_disconnect()
        drive_to(fsm, S.CONNECTED, profile)
        assert fsm.can_disconnect()
        assert fsm.is_connected()


class TestStageTimers:
    """Remaining budgets are reported only inside their stage."""

    def test_spa_timer_counts_down(self, fsm, profile, clock):
        assert fsm.get_spa_timeout() is None
        drive_to(fsm, S.SPA_SENT, profile)
        assert fsm.get_spa_timeout() == 30.0

        clock.now += 12.5
        assert fsm.get_spa_timeout() == pytest.approx(17.5)

        clock.now += 100
        assert fsm.get_spa_timeout() == 0.0

    def test_spa_timer_cleared_after_leaving(self, fsm, profile):
        drive_to(fsm, S.PORT_OPEN, profile)
        assert fsm.get_spa_timeout() is None

    def test_vpn_timer(self, fsm, profile, clock):
        drive_to(fsm, S.VPN_CONNECTING, profile)
        assert fsm.get_spa_timeout() is None
        clock.now += 10
        assert fsm.get_vpn_timeout() == pytest.approx(50.0)

        fsm.handle_event(VpnConnected())
        assert fsm.get_vpn_timeout() is None

    def test_timer_restarts_on_retry(self, fsm, profile, clock):
        drive_to(fsm, S.SPA_SENT, profile)
        clock.now += 20
        fsm.handle_event(SpaFailed(GatewardenError("denied", ErrorCause.SPA_DENIED)))
        assert fsm.get_spa_timeout() is None

        clock.now += 5
        fsm.handle_event(Retry())
        assert fsm.get_spa_timeout() == 30.0


class TestHooksAndQueries:
    """State hooks and derived queries."""

    def test_hooks_called_on_change(self, fsm):
        seen = []
        fsm.add_state_hook(seen.append)
        fsm.handle_event(Login())
        fsm.handle_event(PreflightPassed())
        assert seen == [S.PREFLIGHT, S.AUTHENTICATED]

    def test_removed_hook_not_called(self, fsm):
        seen = []
        fsm.add_state_hook(seen.append)
        fsm.remove_state_hook(seen.append)
        fsm.handle_event(Login())
        assert seen == []

    def test_failing_hook_does_not_break_machine(self, fsm):
        def broken(state):
            raise RuntimeError("hook failed")

        fsm.add_state_hook(broken)
        fsm.handle_event(Login())
        assert fsm.state is S.PREFLIGHT

    def test_is_busy(self, fsm, profile):
        busy = {S.PREFLIGHT, S.BOOTSTRAP_FETCH, S.BOOTSTRAP_MANUAL, S.SPA_SENT, S.PORT_OPEN, S.VPN_CONNECTING}
        for state in ConnectionState:
            machine = ConnectionStateMachine()
            drive_to(machine, state, profile)
            assert machine.is_busy() is (state in busy), state

    def test_snapshot(self, fsm, profile):
        drive_to(fsm, S.SPA_SENT, profile)
        snap = fsm.snapshot()
        assert snap.state is S.SPA_SENT
        assert snap.host == "gateway.example.com"
        assert snap.is_busy
        assert snap.spa_remaining == 30.0
        assert snap.vpn_remaining is None
