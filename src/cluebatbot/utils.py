"""Utility helpers for the cluebat bot."""

from __future__ import annotations

import random
import re
from datetime import datetime, timezone
from typing import Iterable, Optional

# Word lists for generated fleet identities (e.g. "AmberHeron-3f9a01c2") used
# when the orchestrator does not hand us a pod name.
ADJECTIVES: Iterable[str] = (
    "Amber",
    "Azure",
    "Bold",
    "Bright",
    "Calm",
    "Cobalt",
    "Copper",
    "Crimson",
    "Dusty",
    "Frosty",
    "Gentle",
    "Jade",
    "Misty",
    "Quiet",
    "Rustic",
    "Silent",
    "Silver",
    "Stormy",
    "Swift",
    "Violet",
)

NOUNS: Iterable[str] = (
    "Anchor",
    "Badger",
    "Beacon",
    "Brook",
    "Canyon",
    "Compass",
    "Falcon",
    "Forge",
    "Glacier",
    "Heron",
    "Lantern",
    "Lynx",
    "Meadow",
    "Otter",
    "Raven",
    "Ridge",
    "Tower",
    "Wolf",
)

_MENTION_RE = re.compile(r"^<@([A-Z0-9]+)(?:\|[^>]*)?>$")
_MENTION_ANYWHERE_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")


def generate_instance_id(rng: Optional[random.Random] = None) -> str:
    """Return a random adjective+noun identity with a hex suffix."""
    rng = rng or random.Random()
    adjective = rng.choice(tuple(ADJECTIVES))
    noun = rng.choice(tuple(NOUNS))
    return f"{adjective}{noun}-{rng.getrandbits(32):08x}"


def parse_user_mention(token: str) -> Optional[str]:
    """Extract ``U123`` from a Slack mention token like ``<@U123>`` or ``<@U123|bob>``."""
    candidate = (token or "").strip()
    match = _MENTION_RE.match(candidate)
    if match:
        return match.group(1)
    match = _MENTION_ANYWHERE_RE.search(candidate)
    return match.group(1) if match else None


def mask_secret(value: str, visible: int = 4) -> str:
    """Hide all but the last ``visible`` characters of a credential."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp used in latency keys."""
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def slack_ts_to_datetime(ts: str) -> Optional[datetime]:
    """Convert a Slack message timestamp (``"1700000000.000100"``) to an aware datetime."""
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None
