"""Bounded record of messages the bot has sent, used to skip their reflections."""

from __future__ import annotations

import threading
from collections import deque
from typing import TYPE_CHECKING

import structlog

from .errors import DedupGuardEmpty

if TYPE_CHECKING:
    from .models import MessageRef

_logger = structlog.get_logger("dedup")

DEFAULT_CAPACITY = 512


class DedupGuard:
    """Fixed-capacity ring of :class:`MessageRef`.

    ``push`` appends (evicting the oldest entry once full), ``search`` scans for
    a matching ``(channel, timestamp)`` pair and ``pop`` removes the newest
    entry. All three take the same lock so the sending path and the event path
    never interleave.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, *, debug: bool = False):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._lock = threading.Lock()
        self._refs: deque[MessageRef] = deque(maxlen=capacity)
        self._debug = debug

    @property
    def capacity(self) -> int:
        return self._refs.maxlen or 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._refs)

    def push(self, ref: MessageRef) -> None:
        with self._lock:
            self._refs.append(ref)
        if self._debug:
            _logger.debug("dedup.push", channel=ref.channel_id, ts=ref.timestamp)

    def pop(self) -> MessageRef:
        with self._lock:
            if not self._refs:
                raise DedupGuardEmpty("dedup guard is empty")
            ref = self._refs.pop()
        if self._debug:
            _logger.debug("dedup.pop", channel=ref.channel_id, ts=ref.timestamp)
        return ref

    def search(self, channel_id: str, timestamp: str) -> bool:
        with self._lock:
            return any(ref.channel_id == channel_id and ref.timestamp == timestamp for ref in self._refs)

    def clear(self) -> None:
        with self._lock:
            self._refs.clear()
