"""Tests for puck_economy.utils."""

from __future__ import annotations

from datetime import timezone
from unittest.mock import patch

import pytest

from puck_economy.utils import (
    PUSH_CHARS,
    generate_push_id,
    now_iso,
    now_utc,
    strip_auth_scheme,
)


def test_now_utc_is_aware():
    assert now_utc().tzinfo == timezone.utc
    assert now_iso().endswith("+00:00")


class TestPushId:

    def test_shape(self):
        key = generate_push_id()
        assert len(key) == 20
        assert all(c in PUSH_CHARS for c in key)

    def test_same_millisecond_still_ordered(self):
        with patch("puck_economy.utils.time.time", return_value=1_700_000_000.0):
            keys = [generate_push_id() for _ in range(200)]
        assert keys == sorted(keys)
        assert len(set(keys)) == 200

    def test_later_time_sorts_after(self):
        with patch("puck_economy.utils.time.time", return_value=1_700_000_000.0):
            early = generate_push_id()
        with patch("puck_economy.utils.time.time", return_value=1_700_000_000.5):
            late = generate_push_id()
        assert early < late


@pytest.mark.parametrize("header, expected", [
    ("Bearer abc", "abc"),
    ("bearer abc", "abc"),
    ("OAuth tok", "tok"),
    ("abc123", "abc123"),
    ("  abc123  ", "abc123"),
    ("", None),
    (None, None),
])
def test_strip_auth_scheme(header, expected):
    assert strip_auth_scheme(header) == expected
