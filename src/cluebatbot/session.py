"""Per-tenant session supervisor: authenticate, bootstrap caches, drive the event loop."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from typing import Any, Callable, Iterable, Optional

import structlog

from .commands import CommandRouter
from .config import Settings
from .dedup import DedupGuard
from .errors import ShutdownRequested, SlackApiError, StateStoreError, TenantFatalError
from .latency import LatencyMonitor
from .models import (
    CONNECTED,
    DISCONNECTED,
    INVALID_AUTH,
    LATENCY_REPORT,
    MESSAGE,
    USER_CHANGE,
    ChannelRecord,
    Event,
    LatencyState,
    Session,
    TenantConfig,
    UserRecord,
)
from .slack import EventStream, MessagingClient, RtmStream, SlackWebClient
from .store import StateClient, channel_key, user_key

_logger = structlog.get_logger("session")

CONNECTED_ANNOUNCEMENT = "ClueBatBot Connected!"

# Message subtypes that never carry a fresh command
_IGNORED_SUBTYPES = frozenset({"message_changed", "message_deleted", "message_replied", "channel_join", "channel_leave"})

StreamFactory = Callable[[MessagingClient], EventStream]


class SessionSupervisor:
    """Owns one tenant's connection and its :class:`Session`.

    ``run`` returns when the stream ends (or the idle timeout fires) and raises
    :class:`TenantFatalError` when the tenant's credentials are rejected. It may
    be called again to restart; caches and latency history are kept.
    """

    def __init__(
        self,
        tenant: TenantConfig,
        *,
        store: StateClient,
        client: MessagingClient,
        stream_factory: StreamFactory,
        latency_monitor: LatencyMonitor,
        router: Optional[CommandRouter] = None,
        dedup_capacity: int = 512,
        debug: bool = False,
        debug_latency_tick: bool = False,
        idle_timeout_seconds: float = 0.0,
    ):
        self.tenant = tenant
        self.store = store
        self.client = client
        self.stream_factory = stream_factory
        self.latency_monitor = latency_monitor
        self.router = router or CommandRouter(client)
        self.idle_timeout_seconds = idle_timeout_seconds
        self.session = Session(
            tenant=tenant,
            dedup=DedupGuard(dedup_capacity, debug=debug),
            debug=debug,
            debug_latency_tick=debug_latency_tick,
            latency=LatencyState(tick=tenant.latency_counter, samples=deque(tenant.latency_samples)),
        )
        self._log = _logger.bind(tenant=tenant.name)

    @classmethod
    def from_settings(cls, tenant: TenantConfig, settings: Settings, store: StateClient) -> SessionSupervisor:
        client = SlackWebClient(tenant.api_key, base_url=settings.session.slack_api_url)

        def _stream(c: MessagingClient) -> EventStream:
            return RtmStream(
                c,
                ping_interval=settings.session.ping_interval_seconds,
                reconnect_max_delay=settings.session.reconnect_max_delay_seconds,
            )

        return cls(
            tenant,
            store=store,
            client=client,
            stream_factory=_stream,
            latency_monitor=LatencyMonitor.from_settings(store, settings.latency),
            dedup_capacity=settings.session.dedup_capacity,
            debug=settings.debug,
            debug_latency_tick=settings.debug_latency_tick,
            idle_timeout_seconds=settings.session.idle_timeout_seconds,
        )

    async def run(self) -> None:
        await self.authenticate()
        stream = self.stream_factory(self.client)
        try:
            await self.bootstrap()
            self.session.announced = False
            events = stream.events()
            try:
                while True:
                    event = await self._next_event(events)
                    if event is None:
                        break
                    await self.dispatch(event)
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    await aclose()
        finally:
            await stream.close()
        self._log.info("session.stream_ended")

    async def _next_event(self, events: AsyncIterator[Event]) -> Optional[Event]:
        try:
            if self.idle_timeout_seconds > 0:
                return await asyncio.wait_for(events.__anext__(), timeout=self.idle_timeout_seconds)
            return await events.__anext__()
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError:
            self._log.warning("session.idle_timeout", timeout_s=self.idle_timeout_seconds)
            return None

    async def aclose(self) -> None:
        await self.client.aclose()

    async def authenticate(self) -> None:
        try:
            payload = await self.client.auth_test()
        except SlackApiError as exc:
            raise TenantFatalError(self.tenant.name, f"authentication failed: {exc.error}") from exc
        self.session.bot_id = str(payload.get("user_id") or "")
        self.session.team_id = str(payload.get("team_id") or "")
        self._log.info("session.authenticated", bot_id=self.session.bot_id, team_id=self.session.team_id)

    async def bootstrap(self) -> None:
        try:
            users = await self.client.users_list()
        except SlackApiError as exc:
            self._log.error("session.users_list_failed", error=str(exc))
            users = []
        for payload in users:
            record = UserRecord.from_api(payload)
            if record.id:
                self.session.users[record.id] = record
        added_users = await self._remember(
            (user_key(self.tenant.name, r.id), r.to_json()) for r in self.session.users.values()
        )

        try:
            channels = await self.client.conversations_list()
        except SlackApiError as exc:
            self._log.error("session.channels_list_failed", error=str(exc))
            channels = []
        for payload in channels:
            channel = ChannelRecord.from_api(payload)
            if channel.id:
                self.session.channels[channel.id] = channel
        added_channels = await self._remember(
            (channel_key(self.tenant.name, c.id), c.to_json()) for c in self.session.channels.values()
        )
        self._log.info(
            "session.bootstrapped",
            users=len(self.session.users),
            channels=len(self.session.channels),
            stored_users=added_users,
            stored_channels=added_channels,
        )

    async def _remember(self, entries: Iterable[tuple[str, str]]) -> int:
        """Write each snapshot the first time its key is seen. Returns the number written."""
        written = 0
        for key, value in entries:
            try:
                present = await self.store.exists(key)
            except StateStoreError as exc:
                self._log.warning("session.exists_failed", key=key, error=str(exc))
                present = False
            if present:
                continue
            try:
                if await self.store.set(key, value, only_if_absent=True):
                    written += 1
            except StateStoreError as exc:
                self._log.warning("session.store_failed", key=key, error=str(exc))
        return written

    async def dispatch(self, event: Event) -> None:
        """Handle one event. Only fatal conditions escape."""
        try:
            await self._dispatch(event)
        except (TenantFatalError, ShutdownRequested):
            raise
        except Exception:
            self._log.exception("session.event_failed", kind=event.kind)

    async def _dispatch(self, event: Event) -> None:
        session = self.session
        if session.debug:
            self._log.debug("session.event", kind=event.kind)

        if event.kind == CONNECTED:
            self._log.info("session.connected", connection_count=event.data.get("connection_count"))
            if not session.announced:
                session.announced = True
                await self.router.send(session, self.tenant.control_channel_id, CONNECTED_ANNOUNCEMENT)
        elif event.kind == MESSAGE:
            await self._on_message(event)
        elif event.kind == LATENCY_REPORT:
            await self.latency_monitor.observe(int(event.data.get("latency_ns") or 0), session)
        elif event.kind == INVALID_AUTH:
            self._log.error("session.invalid_credentials", error=event.data.get("error"))
            raise TenantFatalError(self.tenant.name, "invalid credentials")
        elif event.kind == USER_CHANGE:
            self._on_user_change(event.data.get("user") or {})
        elif event.kind == DISCONNECTED:
            self._log.info("session.disconnected", connection_count=event.data.get("connection_count"))
        else:
            self._log.debug("session.event_discarded", kind=event.kind)

    async def _on_message(self, event: Event) -> None:
        session = self.session
        if event.data.get("subtype") in _IGNORED_SUBTYPES or not event.text:
            return
        if event.user and event.user == session.bot_id:
            return
        if session.dedup.search(event.channel, event.ts):
            if session.debug:
                self._log.debug("session.own_message", channel=event.channel, ts=event.ts)
            return
        await self.router.handle(event, session)

    def _on_user_change(self, payload: dict[str, Any]) -> None:
        record = UserRecord.from_api(payload)
        if record.id:
            self.session.users[record.id] = record
            self._log.debug("session.user_changed", user=record.id, name=record.name)
