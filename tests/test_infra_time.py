"""Tests for time helpers."""

from datetime import datetime, timedelta, timezone

from lexbill.infra.time import charge_expiry, is_past, utc_now


def test_utc_now_is_aware():
    assert utc_now().tzinfo is not None


def test_charge_expiry_adds_ttl():
    created = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert charge_expiry(created, 7) == datetime(2026, 1, 8, 12, 0, tzinfo=timezone.utc)


def test_is_past():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert is_past(now - timedelta(seconds=1), now)
    assert is_past(now, now)
    assert not is_past(now + timedelta(seconds=1), now)
    assert not is_past(None, now)
