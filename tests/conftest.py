import asyncio
import contextlib
from typing import Any, Optional

import pytest

from cluebatbot.config import clear_settings_cache
from cluebatbot.errors import SlackApiError
from cluebatbot.models import Event, TenantConfig


class FakeSlackClient:
    """In-memory stand-in for SlackWebClient that records every call."""

    def __init__(
        self,
        *,
        bot_id: str = "UBOT",
        team_id: str = "T1",
        users: Optional[list[dict[str, Any]]] = None,
        channels: Optional[list[dict[str, Any]]] = None,
        conversations: Optional[dict[str, list[dict[str, Any]]]] = None,
        auth_error: Optional[str] = None,
        fail_methods: Optional[set[str]] = None,
    ):
        self.bot_id = bot_id
        self.team_id = team_id
        self.users = users or []
        self.channels = channels or []
        self.conversations = conversations or {}
        self.auth_error = auth_error
        self.fail_methods = fail_methods or set()
        self.calls: list[tuple[Any, ...]] = []
        self.closed = False
        self._ts = 1700000000

    def _maybe_fail(self, method: str) -> None:
        if method in self.fail_methods:
            raise SlackApiError(method, "fake_failure")

    def posts(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == "post"]

    def side_effects(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] in {"post", "join", "leave"}]

    async def auth_test(self) -> dict[str, Any]:
        self.calls.append(("auth_test",))
        if self.auth_error:
            raise SlackApiError("auth.test", self.auth_error)
        return {"ok": True, "user_id": self.bot_id, "team_id": self.team_id}

    async def users_list(self) -> list[dict[str, Any]]:
        self.calls.append(("users_list",))
        self._maybe_fail("users.list")
        return list(self.users)

    async def conversations_list(self) -> list[dict[str, Any]]:
        self.calls.append(("conversations_list",))
        self._maybe_fail("conversations.list")
        return list(self.channels)

    async def users_info(self, user_id: str) -> dict[str, Any]:
        self.calls.append(("users_info", user_id))
        self._maybe_fail("users.info")
        for user in self.users:
            if user.get("id") == user_id:
                return user
        return {"id": user_id, "name": user_id.lower()}

    async def users_conversations(self, user_id: str) -> list[dict[str, Any]]:
        self.calls.append(("users_conversations", user_id))
        self._maybe_fail("users.conversations")
        return list(self.conversations.get(user_id, []))

    async def conversations_join(self, channel_id: str) -> dict[str, Any]:
        self.calls.append(("join", channel_id))
        self._maybe_fail("conversations.join")
        return {"id": channel_id}

    async def conversations_leave(self, channel_id: str) -> None:
        self.calls.append(("leave", channel_id))
        self._maybe_fail("conversations.leave")

    async def chat_post_message(self, channel: str, text: str = "", *, attachments=None) -> tuple[str, str]:
        self.calls.append(("post", channel, text, attachments))
        self._maybe_fail("chat.postMessage")
        self._ts += 1
        return channel, f"{self._ts}.000100"

    async def rtm_connect(self) -> dict[str, Any]:
        self.calls.append(("rtm_connect",))
        return {"ok": True, "url": "wss://example.invalid/rtm"}

    async def aclose(self) -> None:
        self.closed = True


class FakeStream:
    """Event stream fed from a queue; ``None`` ends the stream."""

    def __init__(self, events: Optional[list[Optional[Event]]] = None):
        self.queue: asyncio.Queue[Optional[Event]] = asyncio.Queue()
        for event in events or []:
            self.queue.put_nowait(event)
        self.closed = False

    def feed(self, event: Optional[Event]) -> None:
        self.queue.put_nowait(event)

    async def events(self):
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.closed = True


def make_tenant(name: str = "acme", owner_id: str = "UOWNER", **overrides: Any) -> TenantConfig:
    values: dict[str, Any] = {
        "name": name,
        "api_key": f"xoxb-{name}",
        "control_channel_id": f"D{name.upper()}",
        "owner_id": owner_id,
    }
    values.update(overrides)
    return TenantConfig(**values)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is truthy or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point settings at an in-memory store and a temp creds file; reset caches."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("STATE_BACKEND", "memory")
    monkeypatch.setenv("CREDS_FILE", str(tmp_path / "cluebatbot-config.json"))
    for name in ("REDIS_HOST", "MY_POD_NAME", "WRITE_EXAMPLE_CONFIG", "CSLACK_DEBUG", "LEADER_MODE"):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    try:
        yield tmp_path
    finally:
        clear_settings_cache()


@pytest.fixture(autouse=True)
def _global_settings_cleanup():
    yield
    with contextlib.suppress(Exception):
        clear_settings_cache()
