"""
Company dashboard API routes.

- GET /api/activity: Recent activity feed, optionally per creator
- GET /api/get-clients: Per-subscriber rollup for a creator
- GET /api/dashboard-stats: Client and revenue totals
- GET /api/check-payments: Active subscriptions whose charge is due
"""
from datetime import datetime, timezone
from typing import Optional
import logging

from fastapi import APIRouter, Query

from autopay.core.errors import ValidationError
from autopay.features.clients.aggregator import activity_title, aggregate_clients, compute_dashboard_stats
from autopay.features.plans.service import fetch_client_rows
from autopay.features.subscriptions.service import get_due_subscriptions, list_activity


logger = logging.getLogger("autopay")

router = APIRouter(tags=["dashboard"])


@router.get("/activity")
def activity_route(creator_address: Optional[str] = Query(None, alias="creatorAddress")):
    entries = list_activity(creator_address)
    return {
        "activities": [
            {**entry.model_dump(mode="json"), "title": activity_title(entry.event_type)}
            for entry in entries
        ]
    }


@router.get("/get-clients")
def clients_route(creator_address: Optional[str] = Query(None, alias="creatorAddress")):
    if not creator_address:
        raise ValidationError("creatorAddress is required")
    clients = aggregate_clients(fetch_client_rows(creator_address))
    return {"clients": [c.model_dump(mode="json", by_alias=True) for c in clients]}


@router.get("/dashboard-stats")
def dashboard_stats_route(creator_address: Optional[str] = Query(None, alias="creatorAddress")):
    stats = compute_dashboard_stats(fetch_client_rows(creator_address))
    return stats.model_dump(mode="json", by_alias=True)


@router.get("/check-payments")
def check_payments_route():
    due = get_due_subscriptions(datetime.now(timezone.utc))
    logger.info("[payments] due check", extra={"due": len(due)})
    return {
        "message": "Payment check completed",
        "duePayments": len(due),
        "subscriptions": [s.model_dump(mode="json") for s in due],
    }
