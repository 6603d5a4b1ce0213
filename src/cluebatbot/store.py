"""Shared state client: Redis for fleets, in-memory for single nodes and tests.

Every operation is an independent point operation. The only compound steps are
the lease primitives used by leader election, which Redis runs as Lua scripts
so a compare and its write cannot interleave with another replica.
"""

from __future__ import annotations

import time
from typing import Callable, Optional, Protocol

import structlog
from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError

from .config import Settings
from .errors import StateStoreError

_logger = structlog.get_logger("store")


def user_key(tenant: str, user_id: str) -> str:
    return f"{tenant}:user:{user_id}"


def channel_key(tenant: str, channel_id: str) -> str:
    return f"{tenant}:channel:{channel_id}"


def latency_key(tenant: str, timestamp: str) -> str:
    return f"{tenant}:latency:{timestamp}"


class StateClient(Protocol):
    async def ping(self) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, *, ttl_ms: Optional[int] = None, only_if_absent: bool = False) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def renew_if_owner(self, key: str, value: str, ttl_ms: int) -> bool: ...

    async def delete_if_owner(self, key: str, value: str) -> bool: ...

    async def close(self) -> None: ...


_RENEW_IF_OWNER_LUA = (
    "if redis.call('GET', KEYS[1]) == ARGV[1] then\n"
    "  return redis.call('PEXPIRE', KEYS[1], ARGV[2])\n"
    "end\n"
    "return 0\n"
)

_DELETE_IF_OWNER_LUA = (
    "if redis.call('GET', KEYS[1]) == ARGV[1] then\n"
    "  return redis.call('DEL', KEYS[1])\n"
    "end\n"
    "return 0\n"
)


class RedisStateClient:
    """``redis.asyncio`` backed client. Redis errors surface as StateStoreError."""

    def __init__(self, redis: redis_asyncio.Redis):
        self._redis = redis

    @classmethod
    def from_settings(cls, settings: Settings) -> RedisStateClient:
        redis = redis_asyncio.Redis.from_url(
            settings.store.redis_url,
            decode_responses=True,
            socket_timeout=settings.store.socket_timeout_seconds,
            socket_connect_timeout=settings.store.socket_timeout_seconds,
        )
        return cls(redis)

    async def ping(self) -> None:
        try:
            await self._redis.ping()
        except RedisError as exc:
            raise StateStoreError(f"ping failed: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._redis.get(key)
        except RedisError as exc:
            raise StateStoreError(f"get {key} failed: {exc}") from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, *, ttl_ms: Optional[int] = None, only_if_absent: bool = False) -> bool:
        try:
            result = await self._redis.set(key, value, px=ttl_ms, nx=only_if_absent)
        except RedisError as exc:
            raise StateStoreError(f"set {key} failed: {exc}") from exc
        return bool(result)

    async def exists(self, key: str) -> bool:
        try:
            return int(await self._redis.exists(key) or 0) > 0
        except RedisError as exc:
            raise StateStoreError(f"exists {key} failed: {exc}") from exc

    async def delete(self, key: str) -> bool:
        try:
            return int(await self._redis.delete(key) or 0) > 0
        except RedisError as exc:
            raise StateStoreError(f"delete {key} failed: {exc}") from exc

    async def renew_if_owner(self, key: str, value: str, ttl_ms: int) -> bool:
        try:
            result = await self._redis.eval(_RENEW_IF_OWNER_LUA, 1, key, value, ttl_ms)
        except RedisError as exc:
            raise StateStoreError(f"renew {key} failed: {exc}") from exc
        return int(result or 0) == 1

    async def delete_if_owner(self, key: str, value: str) -> bool:
        try:
            result = await self._redis.eval(_DELETE_IF_OWNER_LUA, 1, key, value)
        except RedisError as exc:
            raise StateStoreError(f"delete {key} failed: {exc}") from exc
        return int(result or 0) == 1

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as exc:
            _logger.warning("store.close_failed", error=str(exc))


class MemoryStateClient:
    """Process-local store with the same semantics, including key expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    def snapshot(self) -> dict[str, str]:
        """Return all live keys and values."""
        return {key: value for key in list(self._data) if (value := self._live(key)) is not None}

    async def ping(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, *, ttl_ms: Optional[int] = None, only_if_absent: bool = False) -> bool:
        if only_if_absent and self._live(key) is not None:
            return False
        expires_at = self._clock() + ttl_ms / 1000.0 if ttl_ms else None
        self._data[key] = (value, expires_at)
        return True

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def delete(self, key: str) -> bool:
        present = self._live(key) is not None
        self._data.pop(key, None)
        return present

    async def renew_if_owner(self, key: str, value: str, ttl_ms: int) -> bool:
        if self._live(key) != value:
            return False
        self._data[key] = (value, self._clock() + ttl_ms / 1000.0)
        return True

    async def delete_if_owner(self, key: str, value: str) -> bool:
        if self._live(key) != value:
            return False
        self._data.pop(key, None)
        return True

    async def close(self) -> None:
        return None


def build_state_client(settings: Settings) -> StateClient:
    if settings.store.backend == "memory":
        _logger.info("store.backend", backend="memory")
        return MemoryStateClient()
    _logger.info("store.backend", backend="redis", host=settings.store.redis_host)
    return RedisStateClient.from_settings(settings)
