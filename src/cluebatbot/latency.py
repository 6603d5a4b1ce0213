"""Round-trip latency sampling, alerting and periodic persistence."""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Callable, Optional

import structlog

from .config import LatencySettings
from .errors import StateStoreError
from .models import Session
from .store import StateClient, latency_key
from .utils import utc_timestamp

_logger = structlog.get_logger("latency")

NANOS_PER_MS = 1_000_000


class LatencyMonitor:
    """Accumulates latency samples (nanoseconds) on each session.

    Every ``period`` observations the mean over the retained history is written
    to ``{tenant}:latency:{timestamp}``. History is a ring of ``history_limit``
    samples; the tick counter resets each period while the history is kept.
    """

    def __init__(
        self,
        store: StateClient,
        *,
        threshold_ms: int = 2000,
        period: int = 10,
        history_limit: int = 10000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if period <= 0:
            raise ValueError("period must be positive")
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self.store = store
        self.threshold_ns = threshold_ms * NANOS_PER_MS
        self.period = period
        self.history_limit = history_limit
        self._clock = clock

    @classmethod
    def from_settings(cls, store: StateClient, settings: LatencySettings) -> LatencyMonitor:
        return cls(
            store,
            threshold_ms=settings.threshold_ms,
            period=settings.period,
            history_limit=settings.history_limit,
        )

    async def observe(self, duration_ns: int, session: Session) -> Optional[int]:
        """Record one sample. Returns the persisted mean when this sample closed a period."""
        state = session.latency
        if duration_ns > self.threshold_ns:
            _logger.warning(
                "latency.over_threshold",
                tenant=session.name,
                latency_ms=round(duration_ns / NANOS_PER_MS, 3),
                threshold_ms=self.threshold_ns // NANOS_PER_MS,
            )
        if getattr(state.samples, "maxlen", None) != self.history_limit:
            # Sessions start with an unbounded ring (resumed from config)
            state.samples = deque(state.samples, maxlen=self.history_limit)
        state.samples.append(int(duration_ns))

        state.tick += 1
        if state.tick < self.period:
            if session.debug and session.debug_latency_tick:
                _logger.debug("latency.tick", tenant=session.name, tick=state.tick)
            return None

        state.tick = 0
        mean = sum(state.samples) // len(state.samples)
        now = self._clock() if self._clock else None
        key = latency_key(session.name, utc_timestamp(now))
        try:
            await self.store.set(key, str(mean))
        except StateStoreError as exc:
            _logger.error("latency.persist_failed", tenant=session.name, key=key, error=str(exc))
        _logger.info("latency.mean", tenant=session.name, mean_ms=round(mean / NANOS_PER_MS, 3), samples=len(state.samples))
        return mean
