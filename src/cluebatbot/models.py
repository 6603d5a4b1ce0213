"""Plain data models: tenant configuration, workspace snapshots, events and sessions."""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from .dedup import DedupGuard


@dataclass(slots=True, frozen=True)
class TenantConfig:
    """One configured Slack workspace."""

    name: str
    api_key: str
    control_channel_id: str
    owner_id: str
    latency_counter: int = 0
    latency_samples: tuple[int, ...] = ()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TenantConfig:
        try:
            name = payload["Name"]
            api_key = payload["APIKey"]
            control_channel_id = payload["CluebatBotChan"]
            owner_id = payload["OwnerID"]
        except KeyError as exc:
            raise ValueError(f"tenant entry missing field {exc.args[0]!r}") from exc
        for key, value in (("Name", name), ("APIKey", api_key), ("CluebatBotChan", control_channel_id), ("OwnerID", owner_id)):
            if not isinstance(value, str):
                raise ValueError(f"tenant field {key!r} must be a string")
        raw_samples = payload.get("LatencySlice") or []
        if not isinstance(raw_samples, list):
            raise ValueError("tenant field 'LatencySlice' must be a list")
        # Older config writers stored the samples as numeric strings
        samples = tuple(int(sample) for sample in raw_samples)
        return cls(
            name=name,
            api_key=api_key,
            control_channel_id=control_channel_id,
            owner_id=owner_id,
            latency_counter=int(payload.get("LatencyCounter") or 0),
            latency_samples=samples,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "Name": self.name,
            "APIKey": self.api_key,
            "CluebatBotChan": self.control_channel_id,
            "OwnerID": self.owner_id,
            "LatencyCounter": self.latency_counter,
            "LatencySlice": list(self.latency_samples),
        }


def dumps_tenants(tenants: list[TenantConfig]) -> str:
    return json.dumps([tenant.to_dict() for tenant in tenants], indent=2)


def loads_tenants(text: str) -> list[TenantConfig]:
    payload = json.loads(text)
    if not isinstance(payload, list):
        raise ValueError("tenant configuration must be a JSON array")
    tenants: list[TenantConfig] = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise ValueError(f"tenant entry {index} must be a JSON object")
        tenants.append(TenantConfig.from_dict(entry))
    return tenants


@dataclass(slots=True)
class UserRecord:
    id: str
    name: str = ""
    real_name: str = ""
    email: str = ""
    is_bot: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> UserRecord:
        profile = payload.get("profile") or {}
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name", "")),
            real_name=str(profile.get("real_name") or payload.get("real_name") or ""),
            email=str(profile.get("email") or ""),
            is_bot=bool(payload.get("is_bot", False)),
            raw=dict(payload),
        )

    def to_json(self) -> str:
        return json.dumps(self.raw or {"id": self.id, "name": self.name}, sort_keys=True, default=str)


@dataclass(slots=True)
class ChannelRecord:
    id: str
    name: str = ""
    is_member: bool = False
    is_general: bool = False
    is_private: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> ChannelRecord:
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name", "")),
            is_member=bool(payload.get("is_member", False)),
            is_general=bool(payload.get("is_general", False)),
            is_private=bool(payload.get("is_private", False)),
            raw=dict(payload),
        )

    def to_json(self) -> str:
        return json.dumps(self.raw or {"id": self.id, "name": self.name}, sort_keys=True, default=str)


@dataclass(slots=True, frozen=True)
class MessageRef:
    """Identifies a message previously posted by the bot."""

    channel_id: str
    timestamp: str


# Event kinds produced by the event stream. Anything else keeps Slack's own type name.
HELLO = "hello"
CONNECTED = "connected"
DISCONNECTED = "disconnected"
MESSAGE = "message"
LATENCY_REPORT = "latency_report"
INVALID_AUTH = "invalid_auth"
RTM_ERROR = "rtm_error"
PRESENCE_CHANGE = "presence_change"
USER_CHANGE = "user_change"


@dataclass(slots=True)
class Event:
    kind: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def user(self) -> str:
        return str(self.data.get("user") or "")

    @property
    def channel(self) -> str:
        return str(self.data.get("channel") or "")

    @property
    def text(self) -> str:
        return str(self.data.get("text") or "")

    @property
    def ts(self) -> str:
        return str(self.data.get("ts") or "")


@dataclass(slots=True)
class LatencyState:
    """Per-session latency accumulator; the sample ring is bounded by the monitor."""

    tick: int = 0
    samples: deque[int] = field(default_factory=deque)


@dataclass(slots=True)
class Session:
    """Live state of one tenant connection. Owned by exactly one supervisor."""

    tenant: TenantConfig
    dedup: DedupGuard
    debug: bool = False
    debug_latency_tick: bool = False
    bot_id: str = ""
    team_id: str = ""
    users: dict[str, UserRecord] = field(default_factory=dict)
    channels: dict[str, ChannelRecord] = field(default_factory=dict)
    latency: LatencyState = field(default_factory=LatencyState)
    announced: bool = False

    @property
    def name(self) -> str:
        return self.tenant.name

    def lookup_user(self, user_id: str) -> Optional[UserRecord]:
        return self.users.get(user_id)
