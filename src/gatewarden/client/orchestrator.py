"""Connection orchestrator.

Drives the state machine through login, authorization, relay and tunnel
client bring-up. Each stage runs to completion before the next starts, and
every outcome is reported to the machine as an event.

Example:
    orchestrator = ConnectionOrchestrator()
    await orchestrator.login(tokens)
    state = await orchestrator.connect(profile)
    if state is ConnectionState.ERROR and orchestrator.machine.can_retry():
        await orchestrator.retry()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from gatewarden.client.progress import ProgressLog, ProgressRecord, ProgressSink
from gatewarden.client.state import (
    ConnectionEvent,
    ConnectionState,
    ConnectionStateMachine,
    Disconnect,
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
    StateSnapshot,
    VpnConnected,
    VpnFailed,
    VpnStarted,
)
from gatewarden.core.config import GatewardenConfig, get_config
from gatewarden.core.exceptions import (
    ErrorCause,
    GatewardenError,
    InternalError,
    InvalidTransitionError,
    format_error_for_user,
)
from gatewarden.core.profile import AuthTokens, ConnectionProfile
from gatewarden.core.validation import validate_profile
from gatewarden.platform.preflight import PassthroughPreflightGate, PreflightGate
from gatewarden.relay.manager import TunnelRelayManager
from gatewarden.spa.authorizer import SpaAuthorizer
from gatewarden.vpn.manager import VpnSessionManager
from gatewarden.vpn.rewrite import harden_and_rewrite

logger = structlog.get_logger()

_FAILURE_EVENTS: dict[ConnectionState, type[ConnectionEvent]] = {
    ConnectionState.PREFLIGHT: PreflightFailed,
    ConnectionState.SPA_SENT: SpaFailed,
    ConnectionState.VPN_CONNECTING: VpnFailed,
}

_LOGOUT_STATES = frozenset(
    {ConnectionState.AUTHENTICATED, ConnectionState.CONNECTED, ConnectionState.ERROR}
)


@dataclass(frozen=True)
class ConnectionStatus:
    """Machine snapshot plus the liveness of the managed processes."""

    snapshot: StateSnapshot
    relay_running: bool
    vpn_running: bool
    relay_pid: int | None
    vpn_pid: int | None

    @property
    def state(self) -> ConnectionState:
        return self.snapshot.state


class ConnectionOrchestrator:
    """Runs the connect sequence and keeps the state machine in step with it.

    Disconnect and logout requests made while a step is running are recorded
    and honoured as soon as that step returns. The step itself is not
    interrupted.
    """

    def __init__(
        self,
        config: GatewardenConfig | None = None,
        machine: ConnectionStateMachine | None = None,
        preflight: PreflightGate | None = None,
        authorizer: SpaAuthorizer | None = None,
        relay: TunnelRelayManager | None = None,
        vpn: VpnSessionManager | None = None,
        progress: ProgressSink | None = None,
    ) -> None:
        config = config or get_config()
        timeouts = config.timeouts
        binaries = config.binaries

        self.machine = machine or ConnectionStateMachine(
            spa_budget=timeouts.spa_stage_budget,
            vpn_budget=timeouts.vpn_stage_budget,
        )
        self.preflight: PreflightGate = preflight or PassthroughPreflightGate()
        self.authorizer = authorizer or SpaAuthorizer(timeouts, binaries)
        self.relay = relay or TunnelRelayManager(timeouts, binaries)
        self.vpn = vpn or VpnSessionManager(timeouts, binaries)

        self.progress_log = ProgressLog()
        self._progress_sinks: list[ProgressSink] = [self.progress_log]
        if progress is not None:
            self._progress_sinks.append(progress)

        self._hardened_config: str | None = None
        self._fetched = False
        self._active = False
        self._pending: type[ConnectionEvent] | None = None

    def add_progress_sink(self, sink: ProgressSink) -> None:
        self._progress_sinks.append(sink)

    def remove_progress_sink(self, sink: ProgressSink) -> None:
        if sink in self._progress_sinks:
            self._progress_sinks.remove(sink)

    @property
    def is_active(self) -> bool:
        """True while a stage is running."""
        return self._active

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            snapshot=self.machine.snapshot(),
            relay_running=self.relay.is_running(),
            vpn_running=self.vpn.is_running(),
            relay_pid=self.relay.pid,
            vpn_pid=self.vpn.pid,
        )

    async def login(self, tokens: AuthTokens | None = None) -> ConnectionState:
        """Start a session and run the preflight gate."""
        self.machine.handle_event(Login())
        if tokens is not None:
            self.machine.set_auth_tokens(tokens)
        await self._guarded(self._preflight_stage)
        return self.machine.state

    async def connect(self, profile: ConnectionProfile, fetched: bool = False) -> ConnectionState:
        """Bring the tunnel up for ``profile``.

        Profile validation, binary lookup and the config rewrite happen
        before the machine leaves AUTHENTICATED, so their errors are raised
        directly. Failures in later stages put the machine into ERROR.

        Args:
            profile: The connection profile.
            fetched: True when the profile came from the bootstrap service.

        Returns:
            The machine state after the sequence ended.

        Raises:
            InvalidTransitionError: If the machine is not AUTHENTICATED.
            ProfileValidationError: If the profile is invalid.
            GatewardenError: If a required binary is missing.
        """
        state = self.machine.state
        if state is not ConnectionState.AUTHENTICATED:
            raise InvalidTransitionError(
                state.value, "FetchBootstrap" if fetched else "ManualConfig"
            )

        self._emit(f"Preparing connection to {profile.host}:{profile.port}", "prepare")
        try:
            validate_profile(profile)
            self._check_binaries(profile)
            host, port = profile.tunnel_endpoint
            self._hardened_config = harden_and_rewrite(profile.vpn_config, host, port)
        except GatewardenError as e:
            self._emit(f"Cannot connect: {format_error_for_user(e)}", "prepare", ok=False)
            raise
        self._emit("Tunnel configuration hardened", "prepare")
        self._fetched = fetched

        if fetched:
            self.machine.handle_event(FetchBootstrap())
            self.machine.handle_event(ManualConfig(profile))
        else:
            self.machine.handle_event(ManualConfig(profile))
            self.machine.handle_event(SpaSent(skipped=profile.skip_authorization))

        await self._guarded(lambda: self._connect_from_spa(profile))
        return self.machine.state

    async def retry(self) -> ConnectionState:
        """Retry after a failure, resuming at the stage the error maps to.

        Raises:
            InvalidTransitionError: If the machine is not in a retryable ERROR.
        """
        info = self.machine.error
        self.machine.handle_event(Retry())
        if info is None:
            raise InternalError("Retry accepted without a stored error")

        resume = self.machine.state
        profile = self.machine.profile
        self._emit(f"Retrying after {info.cause.value}", "retry")

        if resume is ConnectionState.PREFLIGHT:
            await self._guarded(self._preflight_stage)
        elif resume is ConnectionState.SPA_SENT:
            probe_only = info.cause is ErrorCause.PORT_PROBE_TIMEOUT
            await self._guarded(
                lambda: self._connect_from_spa(self._require(profile), probe_only=probe_only)
            )
        elif resume is ConnectionState.VPN_CONNECTING:
            await self._guarded(lambda: self._vpn_stage(self._require(profile)))
        elif resume is ConnectionState.AUTHENTICATED and profile is not None:
            await self.connect(profile, fetched=self._fetched)
        return self.machine.state

    async def disconnect(self) -> None:
        """Tear the tunnel down and return to AUTHENTICATED.

        Raises:
            InvalidTransitionError: If not connected and nothing is in flight.
        """
        if self._active:
            logger.info("Disconnect requested, cancelling after current step")
            self._pending = self._pending or Disconnect
            return

        state = self.machine.state
        if state is not ConnectionState.CONNECTED:
            raise InvalidTransitionError(state.value, "Disconnect")

        self._emit("Disconnecting", "disconnect")
        await self._stop_managers()
        self.machine.handle_event(Disconnect())
        self._hardened_config = None
        self._emit("Disconnected", "disconnect")

    async def logout(self) -> None:
        """Tear everything down and return to IDLE.

        Raises:
            InvalidTransitionError: If there is no session to end.
        """
        if self._active:
            logger.info("Logout requested, cancelling after current step")
            self._pending = Logout
            return

        state = self.machine.state
        if state not in _LOGOUT_STATES:
            raise InvalidTransitionError(state.value, "Logout")

        await self._stop_managers()
        self.machine.handle_event(Logout())
        self._hardened_config = None
        self._emit("Logged out", "logout")

    # Stages

    async def _preflight_stage(self) -> None:
        self._emit("Running preflight checks", "preflight")
        await self.preflight.check()
        self._checkpoint()
        self.machine.handle_event(PreflightPassed())
        self._emit("Preflight checks passed", "preflight")

    async def _connect_from_spa(self, profile: ConnectionProfile, probe_only: bool = False) -> None:
        await self._spa_stage(profile, probe_only)
        self.machine.handle_event(VpnStarted())
        await self._vpn_stage(profile)

    async def _spa_stage(self, profile: ConnectionProfile, probe_only: bool) -> None:
        if profile.skip_authorization:
            self._emit("SPA skipped", "spa")
        elif probe_only:
            self._emit(f"Probing {profile.host}:{profile.port}", "spa")
            await self.authorizer.wait_for_port(profile)
        else:
            self._emit(f"Sending SPA packet to {profile.host}", "spa")
            await self.authorizer.verify(profile)
        self._checkpoint()
        self.machine.handle_event(PortProbeSuccess())
        self._emit("Gateway port open", "spa")

    async def _vpn_stage(self, profile: ConnectionProfile) -> None:
        if profile.relay_enabled:
            self._emit(f"Starting TLS relay on {profile.relay_accept}", "relay")
            await self.relay.start(profile)
            self._checkpoint()
            await self.relay.verify(profile.relay_accept)
            self._checkpoint()
            self._emit("TLS relay ready", "relay")

        self._emit("Starting VPN client", "vpn")
        await self.vpn.start(profile, self._hardened_config)
        self._checkpoint()
        self.machine.handle_event(VpnConnected())
        self._emit(f"Connected to {profile.host}", "vpn")

    # Plumbing

    async def _guarded(self, stage: Callable[[], Awaitable[None]]) -> None:
        """Run a stage, turning its failure into the matching machine event."""
        self._active = True
        self._pending = None
        try:
            await stage()
        except asyncio.CancelledError:
            await self._abort(self._cancellation())
            raise
        except GatewardenError as e:
            if not await self._abort(e):
                raise
        except Exception as e:
            logger.exception("Unexpected error during connection", error=str(e))
            if not await self._abort(InternalError(f"Unexpected error: {e}")):
                raise
        finally:
            self._active = False
        await self._apply_pending()

    async def _abort(self, error: GatewardenError) -> bool:
        """Stop the managers and fail the current stage. False if no stage can fail here."""
        await self._stop_managers()
        state = self.machine.state
        event_type = _FAILURE_EVENTS.get(state)
        if event_type is None:
            return False
        if event_type is SpaFailed and error.cause is ErrorCause.PORT_PROBE_TIMEOUT:
            event_type = PortProbeFailed
        self.machine.handle_event(event_type(error))  # type: ignore[call-arg]
        self._emit(f"Failed: {format_error_for_user(error)}", state.value, ok=False)
        return True

    async def _apply_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is Logout:
            await self.logout()
        elif pending is Disconnect and self.machine.can_disconnect():
            await self.disconnect()

    def _checkpoint(self) -> None:
        if self._pending is not None:
            raise self._cancellation()

    def _cancellation(self) -> GatewardenError:
        return GatewardenError("Connection attempt cancelled", ErrorCause.CANCELLED)

    async def _stop_managers(self) -> None:
        # Tunnel client first; it depends on the relay.
        await self.vpn.stop()
        await self.relay.stop()

    def _check_binaries(self, profile: ConnectionProfile) -> None:
        if not profile.skip_authorization:
            self.authorizer.find_binary()
        if profile.relay_enabled:
            self.relay.find_binary()
        self.vpn.find_binary()

    def _require(self, profile: ConnectionProfile | None) -> ConnectionProfile:
        if profile is None:
            raise InternalError("No connection profile stored")
        return profile

    def _emit(self, message: str, step: str = "", ok: bool = True) -> None:
        record = ProgressRecord(message=message, step=step, ok=ok)
        for sink in list(self._progress_sinks):
            try:
                sink(record)
            except Exception as e:
                logger.warning("Progress sink error", error=str(e))
