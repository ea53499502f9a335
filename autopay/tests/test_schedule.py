"""Tests for next-charge computation."""

from datetime import datetime, timedelta, timezone

import pytest

from autopay.core.errors import ValidationError
from autopay.features.schedule.service import (
    MonthlyClampPolicy,
    add_months,
    advance_schedule,
    compute_next_payment_date,
    parse_frequency,
)
from autopay.models.subscription import Frequency


UTC = timezone.utc

REFERENCES = [
    datetime(2024, 1, 15, 9, 30, tzinfo=UTC),
    datetime(2024, 1, 31, 23, 59, tzinfo=UTC),
    datetime(2024, 2, 29, 0, 0, tzinfo=UTC),
    datetime(2023, 12, 31, 12, 0, tzinfo=UTC),
    datetime(2025, 8, 30, 6, 15, tzinfo=UTC),
]


@pytest.mark.parametrize("reference", REFERENCES)
@pytest.mark.parametrize("frequency", list(Frequency))
@pytest.mark.parametrize("policy", list(MonthlyClampPolicy))
def test_next_payment_is_strictly_later(reference, frequency, policy):
    assert compute_next_payment_date(reference, frequency, policy=policy) > reference


def test_daily_and_weekly_steps():
    t = datetime(2024, 2, 28, 10, 0, tzinfo=UTC)
    assert compute_next_payment_date(t, "daily") == datetime(2024, 2, 29, 10, 0, tzinfo=UTC)
    assert compute_next_payment_date(t, "weekly") == datetime(2024, 3, 6, 10, 0, tzinfo=UTC)


def test_monthly_keeps_day_and_time():
    t = datetime(2024, 1, 15, 8, 45, 12, tzinfo=UTC)
    assert compute_next_payment_date(t, Frequency.MONTHLY) == datetime(2024, 2, 15, 8, 45, 12, tzinfo=UTC)


def test_monthly_clamp_uses_last_day_of_short_month():
    t = datetime(2024, 1, 31, tzinfo=UTC)
    assert compute_next_payment_date(t, "monthly", policy="clamp") == datetime(2024, 2, 29, tzinfo=UTC)
    assert compute_next_payment_date(datetime(2023, 1, 31, tzinfo=UTC), "monthly", policy="clamp") == datetime(2023, 2, 28, tzinfo=UTC)


def test_monthly_roll_forward_spills_into_next_month():
    t = datetime(2024, 1, 31, tzinfo=UTC)
    assert compute_next_payment_date(t, "monthly", policy="roll_forward") == datetime(2024, 3, 2, tzinfo=UTC)
    assert compute_next_payment_date(datetime(2024, 3, 31, tzinfo=UTC), "monthly", policy="roll_forward") == datetime(2024, 5, 1, tzinfo=UTC)


def test_default_policy_comes_from_settings(monkeypatch):
    from autopay.core.config import settings

    t = datetime(2024, 1, 31, tzinfo=UTC)
    monkeypatch.setattr(settings, "MONTHLY_CLAMP_POLICY", "roll_forward")
    assert compute_next_payment_date(t, "monthly") == datetime(2024, 3, 2, tzinfo=UTC)
    monkeypatch.setattr(settings, "MONTHLY_CLAMP_POLICY", "clamp")
    assert compute_next_payment_date(t, "monthly") == datetime(2024, 2, 29, tzinfo=UTC)


@pytest.mark.parametrize("reference", REFERENCES)
def test_twelve_monthly_steps_land_in_following_year_when_clamping(reference):
    t = reference
    for _ in range(12):
        t = compute_next_payment_date(t, "monthly", policy="clamp")
    assert t.year == reference.year + 1
    assert t.month == reference.month
    assert t.day <= reference.day


@pytest.mark.parametrize("reference", REFERENCES)
def test_twelve_monthly_steps_drift_at_most_a_few_days_when_rolling(reference):
    t = reference
    for _ in range(12):
        t = compute_next_payment_date(t, "monthly", policy="roll_forward")
    one_year = add_months(reference, 12, "clamp")
    assert one_year <= t <= one_year + timedelta(days=3)


def test_add_months_crosses_year_boundary():
    assert add_months(datetime(2024, 11, 30, tzinfo=UTC), 3) == datetime(2025, 2, 28, tzinfo=UTC)
    assert add_months(datetime(2024, 2, 29, tzinfo=UTC), 12) == datetime(2025, 2, 28, tzinfo=UTC)


def test_unknown_frequency_rejected():
    with pytest.raises(ValidationError):
        parse_frequency("hourly")
    with pytest.raises(ValidationError):
        compute_next_payment_date(datetime(2024, 1, 1, tzinfo=UTC), None)


def test_unknown_policy_rejected():
    with pytest.raises(ValidationError):
        add_months(datetime(2024, 1, 1, tzinfo=UTC), 1, "truncate")


def test_advance_steps_from_stored_date_when_not_overdue():
    stored = datetime(2024, 2, 15, tzinfo=UTC)
    now = datetime(2024, 2, 10, tzinfo=UTC)
    assert advance_schedule(stored, "monthly", now=now) == datetime(2024, 3, 15, tzinfo=UTC)


def test_advance_steps_from_now_when_overdue():
    stored = datetime(2024, 2, 15, tzinfo=UTC)
    now = datetime(2024, 4, 20, tzinfo=UTC)
    nxt = advance_schedule(stored, "weekly", now=now)
    assert nxt == datetime(2024, 4, 27, tzinfo=UTC)
    assert nxt > stored


def test_advance_accepts_naive_stored_value():
    stored = datetime(2024, 2, 15)
    assert advance_schedule(stored, "daily", now=datetime(2024, 2, 1, tzinfo=UTC)) == datetime(2024, 2, 16, tzinfo=UTC)


@pytest.mark.parametrize("status", ["paused", "cancelled"])
def test_advance_refuses_inactive_subscriptions(status):
    with pytest.raises(ValidationError):
        advance_schedule(datetime(2024, 2, 15, tzinfo=UTC), "monthly", status=status)
