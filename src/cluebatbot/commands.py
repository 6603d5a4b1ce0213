"""Text command handling for inbound Slack messages."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from .errors import ShutdownRequested, SlackApiError
from .models import Event, MessageRef, Session, UserRecord
from .slack import MessagingClient
from .utils import parse_user_mention, slack_ts_to_datetime

_logger = structlog.get_logger("commands")

USAGE = (
    "send a message to cluebatbot in any channel (or by DM, hint hint) of the form `bat @user`.\n"
    "Cluebatbot will find a random channel then hit @user with a cluebat in it. @user will never see it coming"
)

EXCLUDED_CHANNEL_NAMES = frozenset({"announcements"})

CLUEBAT_TEMPLATES: tuple[str, ...] = (
    "<@{user}> you've been hit with a cluebat, peon",
    "WHAM. <@{user}>, you've been nailed with the cluebat. Hopefully it left a lasting impression",
    "SHWOK. <@{user}>, you've been beaned in the noggin with the cluebat. Hopefully it imparted clue",
    "THWACK. <@{user}>, you've been hit with the cluebat. Clue imprint attempted",
)

IMAGE_ATTACHMENT: dict[str, Any] = {
    "pretext": "ClueBatBot engage!",
    "text": "I'm gonna bat you a clue",
    "fields": [{"title": "cluebat", "value": "a cluebat for you", "short": False}],
    "image_url": "http://austenblog.files.wordpress.com/2009/04/mycluebat.jpg",
}


@dataclass(slots=True, frozen=True)
class ParsedCommand:
    name: str
    target: str
    rest: tuple[str, ...]


def parse_command(text: str) -> Optional[ParsedCommand]:
    """Split message text on whitespace into command, object and remaining tokens."""
    tokens = text.split()
    if not tokens:
        return None
    return ParsedCommand(name=tokens[0], target=tokens[1] if len(tokens) > 1 else "", rest=tuple(tokens[2:]))


def cluebat_message(user_id: str, rng: random.Random) -> str:
    return rng.choice(CLUEBAT_TEMPLATES).format(user=user_id)


Handler = Callable[[ParsedCommand, Event, Session], Awaitable[None]]


class CommandRouter:
    """Dispatches the first token of a message to a bot command.

    Randomness (channel and template picks) uses a time-seeded ``random.Random``;
    it is not meant to be unpredictable.
    """

    def __init__(self, client: MessagingClient, *, rng: Optional[random.Random] = None):
        self.client = client
        self.rng = rng or random.Random(time.time_ns())
        self._handlers: dict[str, Handler] = {
            "ping": self._ping,
            "bat": self._bat,
            "help": self._help,
            "img": self._img,
            "die": self._die,
        }
        self._aliases = {"clue": "bat", "Bat": "bat", "Clue": "bat"}

    def resolve(self, name: str) -> Optional[Handler]:
        return self._handlers.get(self._aliases.get(name, name))

    async def handle(self, event: Event, session: Session) -> None:
        parsed = parse_command(event.text)
        if parsed is None:
            return
        handler = self.resolve(parsed.name)
        if handler is None:
            _logger.debug("commands.ignored", tenant=session.name, text=event.text)
            return
        await handler(parsed, event, session)

    async def send(self, session: Session, channel: str, text: str) -> Optional[MessageRef]:
        """Post ``text`` and remember the resulting message. Failures are logged, not raised."""
        try:
            channel_id, ts = await self.client.chat_post_message(channel, text)
        except SlackApiError as exc:
            _logger.error("commands.send_failed", tenant=session.name, channel=channel, error=str(exc))
            return None
        ref = MessageRef(channel_id, ts)
        session.dedup.push(ref)
        if session.debug:
            _logger.debug("commands.sent", tenant=session.name, channel=channel_id, ts=ts)
        return ref

    async def _ping(self, parsed: ParsedCommand, event: Event, session: Session) -> None:
        if session.debug:
            _logger.debug("commands.ping", tenant=session.name, user=event.user)
        await self.send(session, event.channel, "pong")

    async def _help(self, parsed: ParsedCommand, event: Event, session: Session) -> None:
        await self.send(session, event.channel, USAGE)

    async def _img(self, parsed: ParsedCommand, event: Event, session: Session) -> None:
        try:
            channel_id, ts = await self.client.chat_post_message(event.channel, "", attachments=[IMAGE_ATTACHMENT])
        except SlackApiError as exc:
            _logger.error("commands.img_failed", tenant=session.name, channel=event.channel, error=str(exc))
            return
        session.dedup.push(MessageRef(channel_id, ts))

    async def _die(self, parsed: ParsedCommand, event: Event, session: Session) -> None:
        if not session.debug:
            _logger.debug("commands.die_ignored", tenant=session.name, user=event.user)
            return
        _logger.warning("commands.die", tenant=session.name, user=event.user)
        raise ShutdownRequested(f"{session.name} got die from {event.user}")

    async def _lookup_user(self, session: Session, user_id: str) -> UserRecord:
        try:
            payload = await self.client.users_info(user_id)
        except SlackApiError as exc:
            _logger.warning("commands.user_lookup_failed", tenant=session.name, user=user_id, error=str(exc))
            payload = {}
        if payload:
            return UserRecord.from_api(payload)
        return session.lookup_user(user_id) or UserRecord(id=user_id)

    async def _bat(self, parsed: ParsedCommand, event: Event, session: Session) -> None:
        if event.user != session.tenant.owner_id:
            _logger.info("commands.bat_denied", tenant=session.name, user=event.user)
            return
        target_id = parse_user_mention(parsed.target)
        if not target_id:
            _logger.info("commands.bat_no_target", tenant=session.name, target=parsed.target)
            return
        target = await self._lookup_user(session, target_id)

        try:
            conversations = await self.client.users_conversations(target_id)
        except SlackApiError as exc:
            _logger.error("commands.conversations_failed", tenant=session.name, user=target_id, error=str(exc))
            return
        eligible = [c for c in conversations if c.get("id") and c.get("name") not in EXCLUDED_CHANNEL_NAMES]
        if not eligible:
            _logger.info("commands.bat_no_channels", tenant=session.name, user=target_id)
            return
        channel = self.rng.choice(eligible)
        channel_id = str(channel["id"])
        channel_name = str(channel.get("name") or channel_id)

        try:
            await self.client.conversations_join(channel_id)
        except SlackApiError as exc:
            # Already-member and private channels can still accept the post
            _logger.warning("commands.join_failed", tenant=session.name, channel=channel_name, error=str(exc))

        sent = await self.send(session, channel_id, cluebat_message(target.id, self.rng))

        try:
            await self.client.conversations_leave(channel_id)
        except SlackApiError as exc:
            _logger.warning("commands.leave_failed", tenant=session.name, channel=channel_name, error=str(exc))

        if sent is None:
            return
        when = slack_ts_to_datetime(sent.timestamp)
        when_text = when.strftime("%Y-%m-%d %H:%M:%S %Z") if when else sent.timestamp
        await self.send(
            session,
            event.channel,
            f"sent <@{target.id}> a cluebat message in <#{channel_id}> at {when_text}\n"
            "If you join right away, they'll totally know it was you. <GRIN>",
        )
        _logger.info(
            "commands.cluebat_sent",
            tenant=session.name,
            target=target.name or target.id,
            requested_by=event.user,
            channel=channel_name,
            at=when_text,
        )
