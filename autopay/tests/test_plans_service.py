from datetime import datetime, timedelta, timezone

import pytest

from autopay.core.database import create_all_tables, drop_all_tables
from autopay.core.errors import InternalError, LimitExceededError, NotFoundOrForbiddenError, ValidationError
from autopay.features.plans.service import (
    cancel_plan_subscription,
    create_billing_plan,
    deactivate_billing_plan,
    fetch_client_rows,
    list_billing_plans,
    list_plan_subscriptions,
    record_plan_payment,
    subscribe_to_plan,
)
from autopay.features.subscriptions.service import list_activity


UTC = timezone.utc
T0 = datetime(2024, 1, 31, 9, 0, tzinfo=UTC)
CREATOR = "0xCreator"


def _plan(plan_id="plan-1", creator=CREATOR, interval="monthly", amount=10_000_000, tier="free", now=T0):
    return create_billing_plan(
        plan_id=plan_id,
        name=f"Plan {plan_id}",
        amount=amount,
        interval=interval,
        recipient_wallet="0xWallet",
        creator_address=creator,
        description="desc",
        tier=tier,
        now=now,
    )


def test_create_plan_returns_link_and_logs_activity(monkeypatch):
    from autopay.core.config import settings

    monkeypatch.setattr(settings, "FRONTEND_URL", "https://app.example/")
    plan, link = _plan()

    assert link == "https://app.example/subscribe/plan-1"
    assert plan.creator_address == "0xcreator"
    assert plan.interval.value == "monthly"
    [entry] = list_activity(creator_address=CREATOR)
    assert entry.event_type == "plan_created"
    assert entry.details["amount"] == 10_000_000


def test_create_plan_validation():
    with pytest.raises(ValidationError):
        _plan(interval="weekly")
    with pytest.raises(ValidationError):
        _plan(amount=0)
    _plan()
    with pytest.raises(ValidationError):
        _plan()


def test_free_tier_plan_limit():
    for i in range(3):
        _plan(plan_id=f"p{i}")
    with pytest.raises(LimitExceededError):
        _plan(plan_id="p3")
    _plan(plan_id="p3", tier="pro")


def test_deactivated_plans_do_not_count_toward_limit():
    for i in range(3):
        _plan(plan_id=f"p{i}")
    deactivate_billing_plan("p0", CREATOR)
    _plan(plan_id="p3")


def test_list_plans_modes():
    _plan(plan_id="a", creator="0x1", now=T0)
    _plan(plan_id="b", creator="0x2", now=T0 + timedelta(hours=1))

    assert [p.plan_id for p in list_billing_plans(public=True)] == ["b", "a"]
    assert [p.plan_id for p in list_billing_plans(creator_address="0x1")] == ["a"]
    assert [p.plan_id for p in list_billing_plans(plan_id="b")] == ["b"]
    with pytest.raises(ValidationError):
        list_billing_plans()
    with pytest.raises(NotFoundOrForbiddenError):
        list_billing_plans(plan_id="missing")


def test_deactivate_requires_owner():
    _plan()
    with pytest.raises(NotFoundOrForbiddenError):
        deactivate_billing_plan("plan-1", "0xsomeoneelse")
    deactivate_billing_plan("plan-1", CREATOR)
    assert list_billing_plans(creator_address=CREATOR) == []


def test_subscribe_monthly_clamps_and_yearly_adds_twelve_months():
    _plan(plan_id="m", interval="monthly")
    _plan(plan_id="y", interval="yearly")

    monthly = subscribe_to_plan("m", "0xSub", now=T0)
    yearly = subscribe_to_plan("y", "0xSub", now=T0)

    assert monthly.next_payment_due == datetime(2024, 2, 29, 9, 0, tzinfo=UTC)
    assert yearly.next_payment_due == datetime(2025, 1, 31, 9, 0, tzinfo=UTC)
    assert monthly.last_payment_at == T0
    assert monthly.subscriber_address == "0xsub"


def test_subscribe_rejects_duplicates_and_inactive_plans():
    _plan()
    subscribe_to_plan("plan-1", "0xSub", now=T0)
    with pytest.raises(ValidationError):
        subscribe_to_plan("plan-1", "0xsub", now=T0)
    with pytest.raises(NotFoundOrForbiddenError):
        subscribe_to_plan("nope", "0xSub", now=T0)


def test_resubscribe_after_cancel_reactivates():
    _plan()
    first = subscribe_to_plan("plan-1", "0xSub", now=T0)
    cancel_plan_subscription("plan-1", "0xSub")
    again = subscribe_to_plan("plan-1", "0xSub", now=T0 + timedelta(days=3))
    assert again.id == first.id
    assert again.is_active is True
    assert len(list_plan_subscriptions(plan_id="plan-1")) == 1


def test_record_payment_only_when_due():
    _plan()
    subscribe_to_plan("plan-1", "0xSub", now=T0)

    with pytest.raises(ValidationError):
        record_plan_payment("plan-1", "0xSub", now=T0 + timedelta(days=5))

    paid_at = datetime(2024, 3, 1, tzinfo=UTC)
    updated = record_plan_payment("plan-1", "0xSub", tx_hash="0xfeed", now=paid_at)
    assert updated.last_payment_at == paid_at
    assert updated.next_payment_due == datetime(2024, 4, 1, tzinfo=UTC)
    assert list_activity(creator_address=CREATOR)[0].event_type == "payment_success"


def test_cancel_requires_active_subscription():
    _plan()
    with pytest.raises(NotFoundOrForbiddenError):
        cancel_plan_subscription("plan-1", "0xSub")
    subscribe_to_plan("plan-1", "0xSub", now=T0)
    cancel_plan_subscription("plan-1", "0xSub")
    [sub] = list_plan_subscriptions(subscriber_address="0xSub")
    assert sub.is_active is False


def test_client_rows_join_plans_and_filter_by_creator():
    _plan(plan_id="c1", creator="0xC", amount=7)
    _plan(plan_id="d1", creator="0xD", amount=9)
    subscribe_to_plan("c1", "0xS1", now=T0)
    subscribe_to_plan("d1", "0xS2", now=T0)

    rows = fetch_client_rows("0xC")
    assert [(r.subscriber_address, r.plan_id, r.amount, r.creator_address) for r in rows] == [("0xs1", "c1", 7, "0xc")]
    assert len(fetch_client_rows()) == 2
    assert fetch_client_rows("0xnobody") == []


@pytest.mark.parametrize(
    "call",
    [
        lambda: list_billing_plans(public=True),
        lambda: deactivate_billing_plan("plan-1", CREATOR, now=T0),
        lambda: subscribe_to_plan("plan-1", "0xSub", now=T0),
        lambda: record_plan_payment("plan-1", "0xSub", now=T0),
        lambda: cancel_plan_subscription("plan-1", "0xSub", now=T0),
        lambda: list_plan_subscriptions(subscriber_address="0xSub"),
    ],
)
def test_store_failure_is_internal_error(call):
    drop_all_tables()
    try:
        with pytest.raises(InternalError):
            call()
    finally:
        create_all_tables()
