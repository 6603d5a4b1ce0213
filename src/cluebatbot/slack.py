"""Slack Web API client (httpx) and real-time event stream (websockets)."""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from collections.abc import AsyncIterator
from typing import Any, Callable, Optional, Protocol

import httpx
import structlog
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .errors import SlackApiError
from .models import (
    CONNECTED,
    DISCONNECTED,
    HELLO,
    INVALID_AUTH,
    LATENCY_REPORT,
    MESSAGE,
    PRESENCE_CHANGE,
    RTM_ERROR,
    USER_CHANGE,
    Event,
)

_logger = structlog.get_logger("slack")

DEFAULT_API_URL = "https://slack.com/api/"
BOT_USERNAME = "ClueBatBot"
BOT_ICON_URL = "https://avatars.slack-edge.com/2018-10-30/468904459303_65c7fc492ecc467edcbe_192.jpg"

# rtm.connect errors that will never succeed on retry
_CREDENTIAL_ERRORS = frozenset({"invalid_auth", "not_authed", "account_inactive", "token_revoked", "token_expired"})

_KIND_BY_TYPE = {
    "hello": HELLO,
    "message": MESSAGE,
    "presence_change": PRESENCE_CHANGE,
    "user_change": USER_CHANGE,
    "error": RTM_ERROR,
}


class MessagingClient(Protocol):
    """The subset of the Slack Web API the bot uses."""

    async def auth_test(self) -> dict[str, Any]: ...

    async def users_list(self) -> list[dict[str, Any]]: ...

    async def conversations_list(self) -> list[dict[str, Any]]: ...

    async def users_info(self, user_id: str) -> dict[str, Any]: ...

    async def users_conversations(self, user_id: str) -> list[dict[str, Any]]: ...

    async def conversations_join(self, channel_id: str) -> dict[str, Any]: ...

    async def conversations_leave(self, channel_id: str) -> None: ...

    async def chat_post_message(
        self,
        channel: str,
        text: str = "",
        *,
        attachments: Optional[list[dict[str, Any]]] = None,
    ) -> tuple[str, str]: ...

    async def rtm_connect(self) -> dict[str, Any]: ...

    async def aclose(self) -> None: ...


class EventStream(Protocol):
    def events(self) -> AsyncIterator[Event]: ...

    async def close(self) -> None: ...


class SlackWebClient:
    """Minimal async Slack Web API client.

    Every call is a form-encoded POST authenticated with the bot token. A
    response with ``ok: false`` or any transport failure raises SlackApiError.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    async def _call(self, method: str, **params: Any) -> dict[str, Any]:
        data = {key: value for key, value in params.items() if value is not None}
        try:
            response = await self._client.post(method, data=data)
        except httpx.HTTPError as exc:
            raise SlackApiError(method, f"transport error: {exc}") from exc
        if response.status_code == 429:
            raise SlackApiError(method, f"ratelimited (retry after {response.headers.get('Retry-After', '?')}s)")
        try:
            payload = response.json()
        except ValueError as exc:
            raise SlackApiError(method, f"invalid response (HTTP {response.status_code})") from exc
        if not payload.get("ok"):
            raise SlackApiError(method, str(payload.get("error") or "unknown_error"))
        return payload

    async def _paginate(self, method: str, item_key: str, **params: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            payload = await self._call(method, cursor=cursor, **params)
            items.extend(payload.get(item_key) or [])
            cursor = ((payload.get("response_metadata") or {}).get("next_cursor") or "").strip()
            if not cursor:
                return items

    async def auth_test(self) -> dict[str, Any]:
        return await self._call("auth.test")

    async def users_list(self) -> list[dict[str, Any]]:
        return await self._paginate("users.list", "members", limit=200)

    async def conversations_list(self) -> list[dict[str, Any]]:
        return await self._paginate(
            "conversations.list",
            "channels",
            types="public_channel,private_channel",
            exclude_archived="true",
            limit=200,
        )

    async def users_info(self, user_id: str) -> dict[str, Any]:
        payload = await self._call("users.info", user=user_id)
        return payload.get("user") or {}

    async def users_conversations(self, user_id: str) -> list[dict[str, Any]]:
        return await self._paginate(
            "users.conversations",
            "channels",
            user=user_id,
            types="public_channel,private_channel",
            limit=100,
        )

    async def conversations_join(self, channel_id: str) -> dict[str, Any]:
        payload = await self._call("conversations.join", channel=channel_id)
        return payload.get("channel") or {}

    async def conversations_leave(self, channel_id: str) -> None:
        await self._call("conversations.leave", channel=channel_id)

    async def chat_post_message(
        self,
        channel: str,
        text: str = "",
        *,
        attachments: Optional[list[dict[str, Any]]] = None,
    ) -> tuple[str, str]:
        payload = await self._call(
            "chat.postMessage",
            channel=channel,
            text=text,
            attachments=json.dumps(attachments) if attachments else None,
            username=BOT_USERNAME,
            icon_url=BOT_ICON_URL,
            mrkdwn="true",
            unfurl_links="true",
        )
        return str(payload.get("channel") or channel), str(payload.get("ts") or "")

    async def rtm_connect(self) -> dict[str, Any]:
        return await self._call("rtm.connect")

    async def aclose(self) -> None:
        await self._client.aclose()


class RtmStream:
    """Real-time event stream over the RTM websocket.

    ``events()`` yields :class:`Event` objects until the credentials are
    rejected or :meth:`close` is called. Dropped connections are re-opened with
    exponential backoff. A ``ping`` is sent every ``ping_interval`` seconds and
    each matching ``pong`` is turned into a ``latency_report`` event.
    """

    def __init__(
        self,
        client: MessagingClient,
        *,
        ping_interval: float = 30.0,
        reconnect_max_delay: float = 60.0,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self._client = client
        self._ping_interval = ping_interval
        self._reconnect_max_delay = reconnect_max_delay
        self._connect = connect
        self._closed = asyncio.Event()
        self._ws: Any = None
        self._ping_id = 0
        self._pings_in_flight: dict[int, int] = {}
        self.connection_count = 0

    async def close(self) -> None:
        self._closed.set()
        if self._ws is not None:
            with contextlib.suppress(Exception):
                await self._ws.close()

    async def _backoff(self, attempt: int) -> None:
        delay = min(self._reconnect_max_delay, float(2 ** min(attempt, 10)))
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._closed.wait(), timeout=delay)

    async def _ping_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            self._ping_id += 1
            self._pings_in_flight[self._ping_id] = time.perf_counter_ns()
            await ws.send(json.dumps({"id": self._ping_id, "type": "ping"}))

    def _to_event(self, payload: dict[str, Any]) -> Optional[Event]:
        msg_type = str(payload.get("type") or "")
        if msg_type == "pong":
            try:
                ping_id = int(payload.get("reply_to") or 0)
            except (TypeError, ValueError):
                _logger.warning("rtm.invalid_pong", reply_to=payload.get("reply_to"))
                return None
            sent_at = self._pings_in_flight.pop(ping_id, None)
            if sent_at is None:
                return None
            return Event(LATENCY_REPORT, {"latency_ns": time.perf_counter_ns() - sent_at})
        if not msg_type and "reply_to" in payload:
            # Acknowledgement of a message we sent over the socket
            return None
        return Event(_KIND_BY_TYPE.get(msg_type, msg_type or "unknown"), payload)

    async def events(self) -> AsyncIterator[Event]:
        attempt = 0
        while not self._closed.is_set():
            try:
                info = await self._client.rtm_connect()
            except SlackApiError as exc:
                if exc.error in _CREDENTIAL_ERRORS:
                    yield Event(INVALID_AUTH, {"error": exc.error})
                    return
                yield Event(RTM_ERROR, {"error": str(exc)})
                attempt += 1
                await self._backoff(attempt)
                continue

            try:
                ws = await self._connect(info["url"])
            except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as exc:
                yield Event(RTM_ERROR, {"error": f"websocket connect failed: {exc}"})
                attempt += 1
                await self._backoff(attempt)
                continue

            self._ws = ws
            attempt = 0
            self.connection_count += 1
            self._pings_in_flight.clear()
            yield Event(CONNECTED, {"connection_count": self.connection_count, "info": info})
            ping_task = asyncio.create_task(self._ping_loop(ws))
            try:
                async for raw in ws:
                    try:
                        payload = json.loads(raw)
                    except (TypeError, ValueError):
                        _logger.warning("rtm.invalid_json")
                        continue
                    if not isinstance(payload, dict):
                        continue
                    if payload.get("type") == "goodbye":
                        break
                    event = self._to_event(payload)
                    if event is not None:
                        yield event
            except ConnectionClosed as exc:
                _logger.info("rtm.connection_closed", code=getattr(exc, "code", None))
            finally:
                ping_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, ConnectionClosed):
                    await ping_task
                with contextlib.suppress(Exception):
                    await ws.close()
                self._ws = None
            if self._closed.is_set():
                return
            yield Event(DISCONNECTED, {"connection_count": self.connection_count})
            attempt += 1
            await self._backoff(attempt)
