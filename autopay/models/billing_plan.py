"""
autopay/models/billing_plan.py

Billing plans published by creators, the plan subscriptions attached to them
and the activity feed that records what happened to both.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class PlanInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class BillingPlan(BaseModel):
    """A creator-owned plan. `amount` is in token minor units."""
    model_config = ConfigDict(frozen=True)

    plan_id: str
    creator_address: str
    name: str
    description: Optional[str] = None
    amount: int
    interval: PlanInterval
    recipient_wallet: str
    is_active: bool = True
    contract_address: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PlanSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    plan_id: str
    subscriber_address: str
    next_payment_due: datetime
    is_active: bool
    created_at: datetime
    last_payment_at: Optional[datetime] = None


class PlanSubscriptionRow(BaseModel):
    """
    One plan_subscriptions row joined with its billing plan.

    Input to the client aggregator; never persisted as-is.
    """
    model_config = ConfigDict(frozen=True)

    subscriber_address: str
    is_active: bool
    created_at: datetime
    last_payment_at: Optional[datetime] = None
    plan_id: str
    creator_address: Optional[str] = None
    amount: int = 0


class ActivityLogEntry(BaseModel):
    """Immutable, append-only feed entry."""
    model_config = ConfigDict(frozen=True)

    id: str
    event_type: str
    plan_id: Optional[str] = None
    plan_subscription_id: Optional[str] = None
    actor_address: Optional[str] = None
    target_address: Optional[str] = None
    description: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime
