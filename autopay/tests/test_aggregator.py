"""Tests for client rollups and dashboard stats."""

from datetime import datetime, timezone
import itertools

from autopay.features.clients.aggregator import activity_title, aggregate_clients, compute_dashboard_stats
from autopay.models.billing_plan import PlanSubscriptionRow


UTC = timezone.utc


def _row(subscriber, *, active=True, created=datetime(2024, 1, 1, tzinfo=UTC), paid=None, plan="p1", amount=0):
    return PlanSubscriptionRow(
        subscriber_address=subscriber,
        is_active=active,
        created_at=created,
        last_payment_at=paid,
        plan_id=plan,
        creator_address="0xc",
        amount=amount,
    )


def test_two_rows_one_active_scenario():
    rows = [
        _row("0xs", active=True, paid=None, plan="p1"),
        _row("0xs", active=False, paid=datetime(2024, 3, 1, tzinfo=UTC), plan="p2"),
    ]

    [summary] = aggregate_clients(rows)

    assert summary.subscription_count == 2
    assert summary.status == "active"
    assert summary.last_payment == datetime(2024, 3, 1, tzinfo=UTC)
    body = summary.model_dump(mode="json", by_alias=True)
    assert body["subscriptions"] == 2
    assert body["lastPayment"].startswith("2024-03-01")
    assert "joinDate" in body


def test_all_inactive_is_inactive():
    [summary] = aggregate_clients([_row("0xs", active=False), _row("0xs", active=False)])
    assert summary.status == "inactive"
    assert summary.last_payment is None


def test_join_date_is_earliest_and_output_is_first_seen_order():
    rows = [
        _row("0xb", created=datetime(2024, 5, 1, tzinfo=UTC)),
        _row("0xa", created=datetime(2024, 2, 1, tzinfo=UTC)),
        _row("0xb", created=datetime(2024, 1, 1, tzinfo=UTC)),
    ]
    summaries = aggregate_clients(rows)
    assert [s.subscriber_address for s in summaries] == ["0xb", "0xa"]
    assert summaries[0].join_date == datetime(2024, 1, 1, tzinfo=UTC)


def test_empty_input():
    assert aggregate_clients([]) == []
    stats = compute_dashboard_stats([])
    assert stats.total_clients == stats.active_clients == stats.total_revenue == stats.total_subscriptions == 0


ROWS = [
    _row("0xs", active=False, created=datetime(2024, 2, 1, tzinfo=UTC), paid=datetime(2024, 3, 1, tzinfo=UTC)),
    _row("0xs", active=True, created=datetime(2024, 1, 10, tzinfo=UTC), paid=None),
    _row("0xs", active=False, created=datetime(2024, 4, 1, tzinfo=UTC), paid=datetime(2024, 2, 1, tzinfo=UTC)),
    _row("0xt", active=False, created=datetime(2024, 1, 5, tzinfo=UTC), paid=datetime(2024, 1, 6, tzinfo=UTC)),
]


def test_aggregation_is_idempotent():
    assert aggregate_clients(ROWS) == aggregate_clients(ROWS)
    assert aggregate_clients(list(ROWS)) == aggregate_clients(tuple(ROWS))


def test_row_order_does_not_change_rollup():
    expected = {s.subscriber_address: s for s in aggregate_clients(ROWS)}
    for perm in itertools.permutations(ROWS):
        got = {s.subscriber_address: s for s in aggregate_clients(perm)}
        assert got == expected


def test_dashboard_stats_revenue_counts_active_only():
    rows = [
        _row("0xs", active=True, amount=10_000_000),
        _row("0xs", active=True, amount=5_000_000, plan="p2"),
        _row("0xt", active=False, amount=99_000_000),
        _row("0xu", active=True, amount=1),
    ]
    stats = compute_dashboard_stats(rows)
    assert stats.total_clients == 3
    assert stats.active_clients == 2
    assert stats.total_revenue == 15_000_001
    assert stats.total_subscriptions == 4
    assert stats.model_dump(by_alias=True) == {
        "totalClients": 3,
        "activeClients": 2,
        "totalRevenue": 15_000_001,
        "totalSubscriptions": 4,
    }


def test_activity_titles():
    assert activity_title("payment_success") == "Payment Processed"
    assert activity_title("plan_deactivated") == "Plan Deactivated"
