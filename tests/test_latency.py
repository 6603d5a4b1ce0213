from __future__ import annotations

from datetime import datetime, timezone

import pytest
from conftest import make_tenant

from cluebatbot.dedup import DedupGuard
from cluebatbot.errors import StateStoreError
from cluebatbot.latency import LatencyMonitor
from cluebatbot.models import Session
from cluebatbot.store import MemoryStateClient


def _session(name: str = "acme") -> Session:
    return Session(tenant=make_tenant(name), dedup=DedupGuard())


def _latency_entries(store: MemoryStateClient, tenant: str = "acme") -> dict[str, str]:
    return {k: v for k, v in store.snapshot().items() if k.startswith(f"{tenant}:latency:")}


@pytest.mark.asyncio
async def test_period_of_three_persists_single_mean():
    store = MemoryStateClient()
    fixed = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    monitor = LatencyMonitor(store, period=3, clock=lambda: fixed)
    session = _session()
    results = [await monitor.observe(ns, session) for ns in (1, 2, 3)]
    assert results == [None, None, 2]
    entries = _latency_entries(store)
    assert entries == {"acme:latency:2024-05-01T12:00:00+00:00": "2"}
    assert session.latency.tick == 0
    assert list(session.latency.samples) == [1, 2, 3]


@pytest.mark.asyncio
async def test_mean_covers_whole_history_across_periods():
    store = MemoryStateClient()
    monitor = LatencyMonitor(store, period=2)
    session = _session()
    means = [await monitor.observe(ns, session) for ns in (10, 20, 30, 40)]
    assert means == [None, 15, None, 25]


@pytest.mark.asyncio
async def test_history_is_bounded():
    store = MemoryStateClient()
    monitor = LatencyMonitor(store, period=100, history_limit=3)
    session = _session()
    for ns in (1, 2, 3, 4, 5):
        await monitor.observe(ns, session)
    assert list(session.latency.samples) == [3, 4, 5]
    assert session.latency.samples.maxlen == 3


@pytest.mark.asyncio
async def test_resumed_history_is_trimmed_into_ring():
    monitor = LatencyMonitor(MemoryStateClient(), period=100, history_limit=2)
    session = _session()
    session.latency.samples.extend([7, 8, 9])
    await monitor.observe(10, session)
    assert list(session.latency.samples) == [9, 10]
    await monitor.observe(11, session)
    assert list(session.latency.samples) == [10, 11]


@pytest.mark.asyncio
async def test_resumes_from_configured_counter_and_samples():
    store = MemoryStateClient()
    monitor = LatencyMonitor(store, period=3)
    session = _session()
    session.latency.tick = 2
    session.latency.samples = [6, 6]
    assert await monitor.observe(9, session) == 7


@pytest.mark.asyncio
async def test_threshold_breach_logs_warning(monkeypatch):
    import cluebatbot.latency as latency_mod

    warnings: list[tuple[str, dict]] = []

    class _Recorder:
        def warning(self, event, **kw):
            warnings.append((event, kw))

        def info(self, *a, **k):
            pass

        def debug(self, *a, **k):
            pass

        def error(self, *a, **k):
            pass

    monkeypatch.setattr(latency_mod, "_logger", _Recorder())
    monitor = LatencyMonitor(MemoryStateClient(), threshold_ms=2000, period=10)
    session = _session()
    await monitor.observe(1_500_000_000, session)
    assert warnings == []
    await monitor.observe(2_500_000_000, session)
    assert len(warnings) == 1
    assert warnings[0][0] == "latency.over_threshold"
    assert warnings[0][1]["tenant"] == "acme"


@pytest.mark.asyncio
async def test_store_failure_does_not_break_observation():
    class _BrokenStore(MemoryStateClient):
        async def set(self, key, value, *, ttl_ms=None, only_if_absent=False):
            raise StateStoreError("down")

    monitor = LatencyMonitor(_BrokenStore(), period=1)
    session = _session()
    assert await monitor.observe(4, session) == 4
    assert list(session.latency.samples) == [4]


def test_invalid_period():
    with pytest.raises(ValueError):
        LatencyMonitor(MemoryStateClient(), period=0)
