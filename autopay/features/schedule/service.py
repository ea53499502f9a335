"""
autopay/features/schedule/service.py

Next-charge computation for recurring subscriptions.

Pure functions only: no clock reads unless the caller omits `now`,
no persistence.
"""

import calendar
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

from autopay.core.config import settings
from autopay.core.errors import ValidationError
from autopay.models.subscription import Frequency, SubscriptionStatus


class MonthlyClampPolicy(str, Enum):
    """What a monthly step does when the reference day is missing in the target month."""
    CLAMP = "clamp"                # 2024-01-31 -> 2024-02-29
    ROLL_FORWARD = "roll_forward"  # 2024-01-31 -> 2024-03-02


def parse_frequency(value: Union[str, Frequency, None]) -> Frequency:
    if isinstance(value, Frequency):
        return value
    try:
        return Frequency(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid frequency: {value!r}. Expected one of daily, weekly, monthly")


def _resolve_policy(policy: Union[str, MonthlyClampPolicy, None]) -> MonthlyClampPolicy:
    raw = policy if policy is not None else settings.MONTHLY_CLAMP_POLICY
    try:
        return MonthlyClampPolicy(raw)
    except ValueError:
        raise ValidationError(f"Invalid monthly clamp policy: {raw!r}")


def add_months(reference: datetime, months: int, policy: Union[str, MonthlyClampPolicy, None] = None) -> datetime:
    """Shift `reference` by whole calendar months, keeping the time of day."""
    mode = _resolve_policy(policy)
    month_index = reference.month - 1 + months
    year = reference.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]

    if reference.day <= last_day:
        return reference.replace(year=year, month=month, day=reference.day)
    if mode is MonthlyClampPolicy.CLAMP:
        return reference.replace(year=year, month=month, day=last_day)
    overflow = reference.day - last_day
    return reference.replace(year=year, month=month, day=last_day) + timedelta(days=overflow)


def compute_next_payment_date(
    reference: datetime,
    frequency: Union[str, Frequency],
    *,
    policy: Union[str, MonthlyClampPolicy, None] = None,
) -> datetime:
    """
    Return the next charge instant after `reference`.

    daily   -> +1 calendar day
    weekly  -> +7 calendar days
    monthly -> same day next month, missing days handled by `policy`

    The result is always strictly later than `reference`.
    """
    freq = parse_frequency(frequency)
    if freq is Frequency.DAILY:
        return reference + timedelta(days=1)
    if freq is Frequency.WEEKLY:
        return reference + timedelta(days=7)
    return add_months(reference, 1, policy)


def advance_schedule(
    current_next: datetime,
    frequency: Union[str, Frequency],
    *,
    status: Union[str, SubscriptionStatus] = SubscriptionStatus.ACTIVE,
    now: Optional[datetime] = None,
    policy: Union[str, MonthlyClampPolicy, None] = None,
) -> datetime:
    """
    Advance a subscription's next charge instant after a successful charge.

    The step is taken from the later of the stored instant and `now`, so the
    stored value strictly increases and an overdue subscription is not
    charged again for the periods it missed.
    """
    if SubscriptionStatus(status) is not SubscriptionStatus.ACTIVE:
        raise ValidationError(f"Cannot advance schedule of a {SubscriptionStatus(status).value} subscription")

    current = current_next if current_next.tzinfo else current_next.replace(tzinfo=timezone.utc)
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return compute_next_payment_date(max(current, moment), frequency, policy=policy)
