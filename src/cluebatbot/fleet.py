"""Fleet runner: win leadership, run one supervisor per tenant, shut down on signals."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Callable, Optional

import structlog

from .config import Settings
from .errors import ShutdownRequested, TenantFatalError
from .leader import LeaderCoordinator, build_leader_coordinator
from .models import TenantConfig
from .rich_logger import flush_logs
from .session import SessionSupervisor
from .store import StateClient, build_state_client

_logger = structlog.get_logger("fleet")

SHUTDOWN_SIGNALS = (signal.SIGHUP, signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)

SupervisorFactory = Callable[[TenantConfig], SessionSupervisor]


class FleetRunner:
    """Coordinates leadership and the per-tenant supervisor tasks.

    Shutdown is requested through :meth:`request_stop` (signal handlers and the
    ``die`` command both end up there); the first request's exit code wins.
    """

    def __init__(
        self,
        tenants: list[TenantConfig],
        *,
        instance_id: str,
        leader: LeaderCoordinator,
        supervisor_factory: SupervisorFactory,
        retry_interval_seconds: float = 60.0,
        restart_delay_seconds: float = 5.0,
    ):
        self.tenants = list(tenants)
        self.instance_id = instance_id
        self.leader = leader
        self.supervisor_factory = supervisor_factory
        self.retry_interval_seconds = retry_interval_seconds
        self.restart_delay_seconds = restart_delay_seconds
        self.exit_code = 0
        self.is_leader = False
        self.supervisors: dict[str, SessionSupervisor] = {}
        self._stop = asyncio.Event()
        self._stop_requested = False

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, exit_code: int = 0, reason: str = "") -> None:
        if not self._stop_requested:
            self._stop_requested = True
            self.exit_code = exit_code
            _logger.info("fleet.stop_requested", reason=reason, exit_code=exit_code)
        self._stop.set()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop, int(sig), f"signal {sig.name}")

    async def _sleep_unless_stopped(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)

    async def run(self) -> int:
        """Serve until stopped. Returns the process exit code."""
        try:
            while not self.stopping:
                if not await self._await_leadership():
                    break
                await self._serve()
                if not self.stopping:
                    _logger.warning("fleet.leadership_lost", identity=self.instance_id)
        finally:
            if self.is_leader:
                await self.leader.release(self.instance_id)
                self.is_leader = False
            for supervisor in self.supervisors.values():
                with contextlib.suppress(Exception):
                    await supervisor.aclose()
            _logger.info("fleet.stopped", exit_code=self.exit_code)
            flush_logs()
        return self.exit_code

    async def _await_leadership(self) -> bool:
        while not self.stopping:
            if await self.leader.try_become_leader(self.instance_id):
                self.is_leader = True
                _logger.info("fleet.leader", identity=self.instance_id)
                return True
            _logger.info("fleet.standby", identity=self.instance_id, retry_s=self.retry_interval_seconds)
            await self._sleep_unless_stopped(self.retry_interval_seconds)
        return False

    def _supervisor_for(self, tenant: TenantConfig) -> SessionSupervisor:
        supervisor = self.supervisors.get(tenant.name)
        if supervisor is None:
            supervisor = self.supervisor_factory(tenant)
            self.supervisors[tenant.name] = supervisor
        return supervisor

    async def _serve(self) -> None:
        tenant_tasks = [
            asyncio.create_task(self._run_tenant(self._supervisor_for(tenant)), name=f"tenant:{tenant.name}")
            for tenant in self.tenants
        ]
        heartbeat_stop = asyncio.Event()
        heartbeat = asyncio.create_task(self.leader.heartbeat(self.instance_id, heartbeat_stop), name="leader-heartbeat")
        stop_wait = asyncio.create_task(self._stop.wait(), name="stop-wait")
        try:
            await asyncio.wait({heartbeat, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            heartbeat_stop.set()
            for task in tenant_tasks:
                task.cancel()
            await asyncio.gather(*tenant_tasks, return_exceptions=True)
            stop_wait.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_wait
            kept = await asyncio.gather(heartbeat, return_exceptions=True)
            if kept[0] is not True:
                self.is_leader = False

    async def _run_tenant(self, supervisor: SessionSupervisor) -> None:
        name = supervisor.tenant.name
        while not self.stopping:
            try:
                _logger.info("fleet.session_starting", tenant=name)
                await supervisor.run()
            except TenantFatalError as exc:
                _logger.error("fleet.session_fatal", tenant=name, reason=exc.reason)
                return
            except ShutdownRequested as exc:
                self.request_stop(exc.exit_code, exc.reason)
                return
            except asyncio.CancelledError:
                raise
            except Exception:
                _logger.exception("fleet.session_crashed", tenant=name)
            if self.stopping:
                return
            _logger.info("fleet.session_restarting", tenant=name, delay_s=self.restart_delay_seconds)
            await self._sleep_unless_stopped(self.restart_delay_seconds)


async def run_fleet(settings: Settings, tenants: list[TenantConfig], *, store: Optional[StateClient] = None) -> int:
    """Connect to the shared store, then run the fleet until a stop is requested.

    Raises StateStoreError when the store cannot be reached at startup.
    """
    store = store or build_state_client(settings)
    try:
        await store.ping()
        runner = FleetRunner(
            tenants,
            instance_id=settings.instance_id,
            leader=build_leader_coordinator(settings, store),
            supervisor_factory=lambda tenant: SessionSupervisor.from_settings(tenant, settings, store),
            retry_interval_seconds=settings.leader.retry_interval_seconds,
            restart_delay_seconds=settings.session.restart_delay_seconds,
        )
        runner.install_signal_handlers()
        return await runner.run()
    finally:
        await store.close()
