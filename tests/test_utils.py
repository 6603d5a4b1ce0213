from __future__ import annotations

import random
import re
from datetime import datetime, timedelta, timezone

from cluebatbot.utils import (
    generate_instance_id,
    mask_secret,
    parse_user_mention,
    slack_ts_to_datetime,
    utc_timestamp,
)


def test_generate_instance_id_shape_and_determinism():
    value = generate_instance_id(random.Random(3))
    assert re.fullmatch(r"[A-Z][a-z]+[A-Z][a-z]+-[0-9a-f]{8}", value)
    assert generate_instance_id(random.Random(3)) == value


def test_parse_user_mention_variants():
    assert parse_user_mention("<@U123>") == "U123"
    assert parse_user_mention("<@U123|bob>") == "U123"
    assert parse_user_mention("hey <@W9> there") == "W9"
    assert parse_user_mention("bob") is None
    assert parse_user_mention("") is None


def test_mask_secret():
    assert mask_secret("xoxb-123456") == "*******3456"
    assert mask_secret("abc") == "***"
    assert mask_secret("") == ""


def test_utc_timestamp_normalizes_to_utc():
    naive = datetime(2024, 1, 2, 3, 4, 5)
    assert utc_timestamp(naive) == "2024-01-02T03:04:05+00:00"
    plus_two = datetime(2024, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2)))
    assert utc_timestamp(plus_two) == "2024-01-02T03:04:05+00:00"


def test_slack_ts_to_datetime():
    assert slack_ts_to_datetime("1700000000.000100").year == 2023
    assert slack_ts_to_datetime("garbage") is None
