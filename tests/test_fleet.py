from __future__ import annotations

import asyncio
import os
import signal

import pytest
from conftest import FakeSlackClient, FakeStream, make_tenant, wait_until

from cluebatbot import config as _config
from cluebatbot.errors import StateStoreError
from cluebatbot.fleet import FleetRunner, run_fleet
from cluebatbot.latency import LatencyMonitor
from cluebatbot.leader import LeaseLeaderCoordinator
from cluebatbot.models import INVALID_AUTH, MESSAGE, Event
from cluebatbot.session import SessionSupervisor
from cluebatbot.store import MemoryStateClient

KEY = "cluster-id-master"


class _Fleet:
    """Wires FakeSlackClient/FakeStream pairs into a FleetRunner."""

    def __init__(self, names, *, store=None, debug=False, ttl_seconds=30, streams=None):
        self.store = store or MemoryStateClient()
        self.clients = {name: FakeSlackClient() for name in names}
        self.streams = streams or {name: FakeStream() for name in names}
        self.debug = debug
        self.leader = LeaseLeaderCoordinator(self.store, key=KEY, ttl_seconds=ttl_seconds)
        self.runner = FleetRunner(
            [make_tenant(name) for name in names],
            instance_id="replica-a",
            leader=self.leader,
            supervisor_factory=self._factory,
            retry_interval_seconds=0.05,
            restart_delay_seconds=0.05,
        )

    def _stream_for(self, name):
        stream = self.streams[name]
        return stream() if callable(stream) else stream

    def _factory(self, tenant):
        return SessionSupervisor(
            tenant,
            store=self.store,
            client=self.clients[tenant.name],
            stream_factory=lambda _client: self._stream_for(tenant.name),
            latency_monitor=LatencyMonitor(self.store),
            debug=self.debug,
        )

    def auth_count(self, name):
        return self.clients[name].calls.count(("auth_test",))

    def bootstrapped(self, name):
        return ("conversations_list",) in self.clients[name].calls


def _ping(user="USOMEONE", channel="CREQ", ts="9.000001", text="ping"):
    return Event(MESSAGE, {"type": "message", "text": text, "user": user, "channel": channel, "ts": ts})


@pytest.mark.asyncio
async def test_fatal_tenant_does_not_stop_others():
    fleet = _Fleet(["a", "b"])
    fleet.streams["a"].feed(Event(INVALID_AUTH, {"error": "invalid_auth"}))
    task = asyncio.create_task(fleet.runner.run())

    await wait_until(lambda: fleet.bootstrapped("b"))
    await wait_until(lambda: fleet.streams["a"].closed)
    fleet.streams["b"].feed(_ping())
    await wait_until(lambda: ("post", "CREQ", "pong", None) in fleet.clients["b"].posts())

    await asyncio.sleep(0.15)
    # fatal tenants are not restarted
    assert fleet.auth_count("a") == 1

    fleet.runner.request_stop(0, "test")
    assert await asyncio.wait_for(task, timeout=2) == 0


@pytest.mark.asyncio
async def test_stop_releases_leadership_and_closes_clients():
    fleet = _Fleet(["a"])
    task = asyncio.create_task(fleet.runner.run())
    await wait_until(lambda: fleet.bootstrapped("a"))
    assert await fleet.store.get(KEY) == "replica-a"

    fleet.runner.request_stop(0, "test")
    assert await asyncio.wait_for(task, timeout=2) == 0
    assert await fleet.store.get(KEY) is None
    assert fleet.clients["a"].closed
    assert fleet.streams["a"].closed


@pytest.mark.asyncio
async def test_standby_until_lease_expires():
    store = MemoryStateClient()
    await store.set(KEY, "replica-b", ttl_ms=200)
    fleet = _Fleet(["a"], store=store)
    task = asyncio.create_task(fleet.runner.run())

    await asyncio.sleep(0.1)
    assert not fleet.runner.is_leader
    assert fleet.auth_count("a") == 0

    await wait_until(lambda: fleet.runner.is_leader)
    await wait_until(lambda: fleet.bootstrapped("a"))
    assert await store.get(KEY) == "replica-a"

    fleet.runner.request_stop(0, "test")
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_stop_while_standby_leaves_other_leader_alone():
    store = MemoryStateClient()
    await store.set(KEY, "replica-b", ttl_ms=60_000)
    fleet = _Fleet(["a"], store=store)
    task = asyncio.create_task(fleet.runner.run())
    await asyncio.sleep(0.1)
    fleet.runner.request_stop(0, "test")
    assert await asyncio.wait_for(task, timeout=2) == 0
    assert await store.get(KEY) == "replica-b"
    assert fleet.auth_count("a") == 0


@pytest.mark.asyncio
async def test_die_in_debug_mode_stops_the_fleet():
    fleet = _Fleet(["a", "b"], debug=True)
    task = asyncio.create_task(fleet.runner.run())
    await wait_until(lambda: fleet.bootstrapped("a") and fleet.bootstrapped("b"))
    fleet.streams["a"].feed(_ping(text="die"))
    assert await asyncio.wait_for(task, timeout=2) == 0
    assert fleet.runner.stopping
    assert await fleet.store.get(KEY) is None


@pytest.mark.asyncio
async def test_ended_stream_is_restarted():
    fleet = _Fleet(["a"], streams={"a": lambda: FakeStream([None])})
    task = asyncio.create_task(fleet.runner.run())
    await wait_until(lambda: fleet.auth_count("a") >= 3)
    # one supervisor per tenant across restarts
    assert list(fleet.runner.supervisors) == ["a"]
    fleet.runner.request_stop(0, "test")
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_lost_lease_stops_sessions_and_waits_for_leadership():
    fleet = _Fleet(["a"], ttl_seconds=0.3)
    task = asyncio.create_task(fleet.runner.run())
    await wait_until(lambda: fleet.bootstrapped("a"))

    await fleet.store.set(KEY, "replica-b", ttl_ms=60_000)
    await wait_until(lambda: fleet.streams["a"].closed)
    await wait_until(lambda: not fleet.runner.is_leader)
    assert await fleet.store.get(KEY) == "replica-b"

    fleet.runner.request_stop(0, "test")
    assert await asyncio.wait_for(task, timeout=2) == 0
    assert await fleet.store.get(KEY) == "replica-b"


def test_first_stop_request_sets_exit_code():
    fleet_runner = FleetRunner(
        [],
        instance_id="x",
        leader=LeaseLeaderCoordinator(MemoryStateClient(), key=KEY, ttl_seconds=30),
        supervisor_factory=lambda tenant: None,
    )
    fleet_runner.request_stop(int(signal.SIGTERM), "signal SIGTERM")
    fleet_runner.request_stop(0, "later")
    assert fleet_runner.exit_code == int(signal.SIGTERM)
    assert fleet_runner.stopping


@pytest.mark.asyncio
async def test_run_fleet_exits_with_signal_number(isolated_env):
    store = MemoryStateClient()
    settings = _config.get_settings()
    loop = asyncio.get_running_loop()
    loop.call_later(0.2, os.kill, os.getpid(), signal.SIGHUP)
    exit_code = await asyncio.wait_for(run_fleet(settings, [], store=store), timeout=5)
    assert exit_code == int(signal.SIGHUP)
    assert await store.get(KEY) is None
    for sig in (signal.SIGHUP, signal.SIGINT, signal.SIGTERM, signal.SIGQUIT):
        loop.remove_signal_handler(sig)


@pytest.mark.asyncio
async def test_run_fleet_fails_fast_when_store_unreachable(isolated_env):
    closed = []

    class _Unreachable(MemoryStateClient):
        async def ping(self):
            raise StateStoreError("connection refused")

        async def close(self):
            closed.append(True)

    with pytest.raises(StateStoreError):
        await run_fleet(_config.get_settings(), [], store=_Unreachable())
    assert closed == [True]
