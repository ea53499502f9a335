"""
Subscription API routes.

- POST /api/create-subscription: Create a recurring payment
- PUT  /api/update-subscription: Pause, resume or cancel (owner only)
- GET  /api/get-subscriptions: List a wallet's subscriptions
"""
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from autopay.features.subscriptions.service import (
    create_subscription,
    list_subscriptions_for_user,
    update_subscription_status,
)


router = APIRouter(tags=["subscriptions"])


class CreateSubscriptionRequest(BaseModel):
    """Missing fields are rejected by the service with a single message."""
    user_address: Optional[str] = None
    recipient_address: Optional[str] = None
    token_amount: Optional[int] = None
    token_symbol: Optional[str] = None
    frequency: Optional[str] = None


class UpdateSubscriptionRequest(BaseModel):
    subscription_id: Optional[str] = None
    user_address: Optional[str] = None
    status: Optional[str] = None


@router.post("/create-subscription", status_code=201)
def create_subscription_route(body: CreateSubscriptionRequest):
    subscription = create_subscription(
        body.user_address,
        body.recipient_address,
        body.token_amount,
        body.token_symbol,
        body.frequency,
    )
    return {
        "message": "Subscription created successfully",
        "subscription": subscription.model_dump(mode="json"),
    }


@router.put("/update-subscription")
def update_subscription_route(body: UpdateSubscriptionRequest):
    subscription = update_subscription_status(body.subscription_id, body.user_address, body.status)
    return {
        "message": "Subscription updated successfully",
        "subscription": subscription.model_dump(mode="json"),
    }


@router.get("/get-subscriptions")
def get_subscriptions_route(user_address: Optional[str] = Query(None)):
    subscriptions = list_subscriptions_for_user(user_address)
    return {"subscriptions": [s.model_dump(mode="json") for s in subscriptions]}
