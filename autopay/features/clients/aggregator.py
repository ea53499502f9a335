"""
autopay/features/clients/aggregator.py

Rolls plan subscription rows up into per-client summaries and dashboard
stats. Pure functions over already-fetched rows; safe to call repeatedly.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from autopay.models.billing_plan import PlanSubscriptionRow
from autopay.models.client import ClientSummary, DashboardStats


EVENT_TITLES = {
    "subscription_created": "New Subscription",
    "payment_success": "Payment Processed",
    "payment_failed": "Payment Failed",
    "subscription_cancelled": "Subscription Cancelled",
    "plan_created": "Plan Created",
    "plan_updated": "Plan Updated",
}


def activity_title(event_type: str) -> str:
    """Feed heading for an event type; unknown types are title-cased."""
    return EVENT_TITLES.get(event_type) or event_type.replace("_", " ").title()


class _ClientAccumulator:
    __slots__ = ("count", "join_date", "last_payment", "any_active")

    def __init__(self, row: PlanSubscriptionRow):
        self.count = 0
        self.join_date: datetime = row.created_at
        self.last_payment: Optional[datetime] = None
        self.any_active = False

    def add(self, row: PlanSubscriptionRow) -> None:
        self.count += 1
        if row.created_at < self.join_date:
            self.join_date = row.created_at
        if row.last_payment_at is not None and (
            self.last_payment is None or row.last_payment_at > self.last_payment
        ):
            self.last_payment = row.last_payment_at
        if row.is_active:
            self.any_active = True


def aggregate_clients(rows: Iterable[PlanSubscriptionRow]) -> List[ClientSummary]:
    """
    One summary per distinct subscriber, in first-seen order.

    count: rows for the subscriber
    join_date: earliest created_at
    last_payment: latest non-null last_payment_at
    status: active if any row is active
    """
    clients: Dict[str, _ClientAccumulator] = {}
    for row in rows:
        acc = clients.get(row.subscriber_address)
        if acc is None:
            acc = clients[row.subscriber_address] = _ClientAccumulator(row)
        acc.add(row)

    return [
        ClientSummary(
            subscriber_address=address,
            subscription_count=acc.count,
            status="active" if acc.any_active else "inactive",
            join_date=acc.join_date,
            last_payment=acc.last_payment,
        )
        for address, acc in clients.items()
    ]


def compute_dashboard_stats(rows: Iterable[PlanSubscriptionRow]) -> DashboardStats:
    rows = list(rows)
    clients = aggregate_clients(rows)
    return DashboardStats(
        total_clients=len(clients),
        active_clients=sum(1 for c in clients if c.status == "active"),
        # Revenue counts active subscriptions only, in token minor units
        total_revenue=sum(r.amount for r in rows if r.is_active),
        total_subscriptions=len(rows),
    )
