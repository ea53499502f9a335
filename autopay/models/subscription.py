"""
autopay/models/subscription.py

Recurring token transfer from a subscriber wallet to a recipient wallet.
"""

from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict


class Frequency(str, Enum):
    """Billing interval governing schedule advancement."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class Subscription(BaseModel):
    """
    Subscription record as persisted in the `subscriptions` table.

    Invariants:
    - next_payment_date >= created_at at creation
    - next_payment_date only moves forward, once per successful charge
    - only user_address may change status
    """
    model_config = ConfigDict(frozen=True)

    id: str
    user_address: str
    recipient_address: str
    token_amount: int  # minor units (USDC has 6 decimals)
    token_symbol: str
    frequency: Frequency
    next_payment_date: datetime
    status: SubscriptionStatus
    created_at: datetime
    updated_at: datetime


class PaymentLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    subscription_id: str
    transaction_hash: str | None = None
    status: str
    error_message: str | None = None
    amount: int
    token_symbol: str
    created_at: datetime
