"""
Billing plan API routes.

- GET|POST|DELETE /api/billing-plans
- GET|POST|PUT|DELETE /api/plan-subscriptions

Request and response fields use the dashboard's camelCase names.
"""
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, Field

from autopay.api.plan_tier import refresh_plan_state
from autopay.features.entitlements.service import PlanTier
from autopay.features.plans.service import (
    cancel_plan_subscription,
    create_billing_plan,
    deactivate_billing_plan,
    list_billing_plans,
    list_plan_subscriptions,
    record_plan_payment,
    subscribe_to_plan,
)


router = APIRouter(tags=["plans"])


class CreatePlanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: Optional[str] = Field(None, alias="planId")
    name: Optional[str] = None
    amount: Optional[int] = None
    interval: Optional[str] = None
    recipient_wallet: Optional[str] = Field(None, alias="recipientWallet")
    creator_address: Optional[str] = Field(None, alias="creatorAddress")
    description: Optional[str] = None


class PlanSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: Optional[str] = Field(None, alias="planId")
    subscriber_address: Optional[str] = Field(None, alias="subscriberAddress")
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")


@router.get("/billing-plans")
def get_plans(
    creator_address: Optional[str] = Query(None, alias="creatorAddress"),
    plan_id: Optional[str] = Query(None, alias="planId"),
    public: bool = Query(False),
):
    plans = list_billing_plans(creator_address=creator_address, plan_id=plan_id, public=public)
    if plan_id:
        return {"plan": plans[0].model_dump(mode="json")}
    return {"plans": [p.model_dump(mode="json") for p in plans]}


@router.post("/billing-plans", status_code=201)
def create_plan(body: CreatePlanRequest):
    # quota tier is read from the chain
    tier = refresh_plan_state(body.creator_address).tier if body.creator_address else PlanTier.FREE
    plan, link = create_billing_plan(
        plan_id=body.plan_id,
        name=body.name,
        amount=body.amount,
        interval=body.interval,
        recipient_wallet=body.recipient_wallet,
        creator_address=body.creator_address,
        description=body.description,
        tier=tier,
    )
    return {"plan": {**plan.model_dump(mode="json"), "subscriptionLink": link}}


@router.delete("/billing-plans")
def delete_plan(
    plan_id: Optional[str] = Query(None, alias="planId"),
    creator_address: Optional[str] = Query(None, alias="creatorAddress"),
):
    deactivate_billing_plan(plan_id, creator_address)
    return {"success": True}


@router.get("/plan-subscriptions")
def get_plan_subscriptions(
    subscriber_address: Optional[str] = Query(None, alias="subscriberAddress"),
    plan_id: Optional[str] = Query(None, alias="planId"),
):
    subs = list_plan_subscriptions(subscriber_address=subscriber_address, plan_id=plan_id)
    return {"subscriptions": [s.model_dump(mode="json") for s in subs]}


@router.post("/plan-subscriptions", status_code=201)
def create_plan_subscription(body: PlanSubscriptionRequest):
    sub = subscribe_to_plan(body.plan_id, body.subscriber_address)
    return {"subscription": sub.model_dump(mode="json")}


@router.put("/plan-subscriptions")
def process_plan_payment(body: PlanSubscriptionRequest):
    sub = record_plan_payment(body.plan_id, body.subscriber_address, tx_hash=body.transaction_hash)
    return {"success": True, "nextPaymentDue": sub.next_payment_due.isoformat()}


@router.delete("/plan-subscriptions")
def delete_plan_subscription(
    plan_id: Optional[str] = Query(None, alias="planId"),
    subscriber_address: Optional[str] = Query(None, alias="subscriberAddress"),
):
    cancel_plan_subscription(plan_id, subscriber_address)
    return {"success": True}
