"""Fleet-wide leader election over the shared state store.

The leader record is a single key (``cluster-id-master``) for the whole fleet,
not one per tenant, so exactly one replica serves every tenant.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from .config import Settings
from .errors import StateStoreError
from .store import StateClient

_logger = structlog.get_logger("leader")


class LeaderCoordinator(Protocol):
    key: str

    async def try_become_leader(self, self_id: str) -> bool: ...

    async def renew(self, self_id: str) -> bool: ...

    async def release(self, self_id: str) -> bool: ...

    async def heartbeat(self, self_id: str, stop: asyncio.Event) -> bool: ...


class LeaseLeaderCoordinator:
    """Leadership as a lease: identity plus expiry, renewed by heartbeat.

    A record is claimed only when absent or expired, so two replicas racing on
    the same attempt cannot both win.
    """

    def __init__(self, store: StateClient, *, key: str, ttl_seconds: int):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.store = store
        self.key = key
        self.ttl_seconds = ttl_seconds

    @property
    def _ttl_ms(self) -> int:
        return int(self.ttl_seconds * 1000)

    async def try_become_leader(self, self_id: str) -> bool:
        try:
            if await self.store.set(self.key, self_id, ttl_ms=self._ttl_ms, only_if_absent=True):
                _logger.info("leader.claimed", identity=self_id, ttl_s=self.ttl_seconds)
                return True
            if await self.store.renew_if_owner(self.key, self_id, self._ttl_ms):
                return True
            holder = await self.store.get(self.key)
        except StateStoreError as exc:
            _logger.warning("leader.attempt_failed", identity=self_id, error=str(exc))
            return False
        _logger.info("leader.held_elsewhere", identity=self_id, holder=holder)
        return False

    async def renew(self, self_id: str) -> bool:
        try:
            return await self.store.renew_if_owner(self.key, self_id, self._ttl_ms)
        except StateStoreError as exc:
            _logger.warning("leader.renew_failed", identity=self_id, error=str(exc))
            return False

    async def release(self, self_id: str) -> bool:
        try:
            released = await self.store.delete_if_owner(self.key, self_id)
        except StateStoreError as exc:
            _logger.warning("leader.release_failed", identity=self_id, error=str(exc))
            return False
        if released:
            _logger.info("leader.released", identity=self_id)
        return released

    async def heartbeat(self, self_id: str, stop: asyncio.Event) -> bool:
        """Renew every third of the TTL until ``stop`` is set.

        Returns True when stopped on request, False when the lease was lost.
        """
        interval = max(self.ttl_seconds / 3.0, 0.01)
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                return True
            if not await self.renew(self_id):
                _logger.error("leader.lease_lost", identity=self_id)
                return False
        return True


class OverwriteLeaderCoordinator:
    """Legacy election: unconditional read-then-overwrite with no expiry.

    ``try_become_leader`` returns True when the stored identity differed and was
    replaced, False when it already matched. Two replicas can both win a
    concurrent attempt; kept for compatibility checks against older fleets.
    """

    def __init__(self, store: StateClient, *, key: str, check_interval_seconds: float = 60.0):
        self.store = store
        self.key = key
        self.check_interval_seconds = check_interval_seconds

    async def try_become_leader(self, self_id: str) -> bool:
        try:
            current = await self.store.get(self.key)
            if current == self_id:
                return False
            await self.store.set(self.key, self_id)
        except StateStoreError as exc:
            _logger.warning("leader.attempt_failed", identity=self_id, error=str(exc))
            return False
        _logger.info("leader.overwritten", identity=self_id, previous=current)
        return True

    async def renew(self, self_id: str) -> bool:
        try:
            return await self.store.get(self.key) == self_id
        except StateStoreError as exc:
            _logger.warning("leader.renew_failed", identity=self_id, error=str(exc))
            return False

    async def release(self, self_id: str) -> bool:
        try:
            released = await self.store.delete_if_owner(self.key, self_id)
        except StateStoreError as exc:
            _logger.warning("leader.release_failed", identity=self_id, error=str(exc))
            return False
        if released:
            _logger.info("leader.released", identity=self_id)
        return released

    async def heartbeat(self, self_id: str, stop: asyncio.Event) -> bool:
        # No lease to renew; only notice when another replica overwrote us.
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.check_interval_seconds)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                return True
            if not await self.renew(self_id):
                _logger.error("leader.overwritten_elsewhere", identity=self_id)
                return False
        return True


def build_leader_coordinator(settings: Settings, store: StateClient) -> LeaderCoordinator:
    if settings.leader.mode == "overwrite":
        return OverwriteLeaderCoordinator(
            store,
            key=settings.leader.key,
            check_interval_seconds=settings.leader.retry_interval_seconds,
        )
    return LeaseLeaderCoordinator(store, key=settings.leader.key, ttl_seconds=settings.leader.lease_ttl_seconds)
