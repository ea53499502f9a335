"""
autopay/features/plans/service.py

Billing plan and plan subscription service.

Handles:
- Plan publishing (gated by the creator's plan tier), listing, deactivation
- Subscriber sign-up, payment bookkeeping and cancellation per plan
- The plan_subscriptions x billing_plans join used by the company dashboard

Every mutation appends an activity_log entry in the same session.
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union
import uuid

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from autopay.core.config import settings
from autopay.core.database import (
    as_utc,
    billing_plans,
    get_db_session,
    plan_subscriptions,
)
from autopay.core.errors import InternalError, NotFoundOrForbiddenError, ValidationError
from autopay.core.logging import log_event
from autopay.features.entitlements.service import LimitKind, PlanTier, enforce_limit, parse_tier
from autopay.features.schedule.service import add_months
from autopay.features.subscriptions.service import append_activity
from autopay.models.billing_plan import BillingPlan, PlanInterval, PlanSubscription, PlanSubscriptionRow


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now else datetime.now(timezone.utc)


def _row_to_plan(row) -> BillingPlan:
    m = row._mapping
    return BillingPlan(
        plan_id=m["plan_id"],
        creator_address=m["creator_address"],
        name=m["name"],
        description=m["description"],
        amount=m["amount"],
        interval=m["interval"],
        recipient_wallet=m["recipient_wallet"],
        is_active=m["is_active"],
        contract_address=m["contract_address"],
        created_at=as_utc(m["created_at"]),
        updated_at=as_utc(m["updated_at"]),
    )


def _row_to_plan_subscription(row) -> PlanSubscription:
    m = row._mapping
    return PlanSubscription(
        id=m["id"],
        plan_id=m["plan_id"],
        subscriber_address=m["subscriber_address"],
        next_payment_due=as_utc(m["next_payment_due"]),
        is_active=m["is_active"],
        created_at=as_utc(m["created_at"]),
        last_payment_at=as_utc(m["last_payment_at"]),
    )


def _parse_interval(interval) -> PlanInterval:
    try:
        return PlanInterval(str(interval).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid interval: {interval!r}. Expected monthly or yearly")


def next_due_for_interval(reference: datetime, interval: Union[str, PlanInterval]) -> datetime:
    months = 12 if _parse_interval(interval) is PlanInterval.YEARLY else 1
    return add_months(reference, months)


def subscription_link(plan_id: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/subscribe/{plan_id}"


def create_billing_plan(
    *,
    plan_id: Optional[str],
    name: Optional[str],
    amount: Optional[int],
    interval: Optional[str],
    recipient_wallet: Optional[str],
    creator_address: Optional[str],
    description: Optional[str],
    tier: Union[str, PlanTier] = PlanTier.FREE,
    now: Optional[datetime] = None,
) -> Tuple[BillingPlan, str]:
    """
    Publish a plan for `creator_address`.

    Returns:
        (plan, subscription_link)

    Raises:
        ValidationError: Missing fields, bad interval or amount, duplicate plan_id
        LimitExceededError: Creator already has as many active plans as the tier allows
    """
    if not plan_id or not name or not amount or not interval or not recipient_wallet or not creator_address or not description:
        raise ValidationError("Missing required fields")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer in minor units")
    plan_interval = _parse_interval(interval)
    plan_tier = parse_tier(tier)
    creator = creator_address.strip().lower()
    moment = _now(now)

    try:
        with get_db_session() as session:
            active_count = session.execute(
                select(func.count()).select_from(billing_plans)
                .where(billing_plans.c.creator_address == creator)
                .where(billing_plans.c.is_active.is_(True))
            ).scalar() or 0
            enforce_limit(plan_tier, active_count, LimitKind.SUBSCRIPTIONS)

            exists = session.execute(
                select(billing_plans.c.plan_id).where(billing_plans.c.plan_id == plan_id)
            ).first()
            if exists:
                raise ValidationError(f"Plan id already exists: {plan_id}")

            values = {
                "id": str(uuid.uuid4()),
                "plan_id": plan_id,
                "creator_address": creator,
                "name": name,
                "description": description,
                "amount": amount,
                "interval": plan_interval.value,
                "recipient_wallet": recipient_wallet.strip().lower(),
                "is_active": True,
                "contract_address": settings.SUBSCRIPTION_CONTRACT_ADDRESS,
                "created_at": moment,
                "updated_at": moment,
            }
            session.execute(insert(billing_plans).values(**values))
            append_activity(
                session,
                "plan_created",
                plan_id=plan_id,
                actor_address=creator,
                target_address=creator,
                description=f"Created billing plan: {name}",
                details={"plan_name": name, "amount": amount, "interval": plan_interval.value},
                now=moment,
            )
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to create plan: {e}")

    log_event("info", "[plans] created", address=creator, event_type="plan_created", extra={"plan_id": plan_id})
    values.pop("id")
    return BillingPlan(**values), subscription_link(plan_id)


def list_billing_plans(
    *,
    creator_address: Optional[str] = None,
    plan_id: Optional[str] = None,
    public: bool = False,
) -> List[BillingPlan]:
    """
    Active plans: one by id, all public ones, or a creator's own (newest first).
    """
    query = select(billing_plans).where(billing_plans.c.is_active.is_(True))
    if plan_id:
        query = query.where(billing_plans.c.plan_id == plan_id)
    elif public:
        pass
    elif creator_address:
        query = query.where(billing_plans.c.creator_address == creator_address.strip().lower())
    else:
        raise ValidationError("Creator address, plan ID, or public=true is required")

    try:
        with get_db_session() as session:
            rows = session.execute(query.order_by(billing_plans.c.created_at.desc())).fetchall()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to fetch plans: {e}")
    if plan_id and not rows:
        raise NotFoundOrForbiddenError("Plan not found or inactive")
    return [_row_to_plan(r) for r in rows]


def deactivate_billing_plan(plan_id: Optional[str], creator_address: Optional[str], *, now: Optional[datetime] = None) -> None:
    if not plan_id or not creator_address:
        raise ValidationError("Plan ID and creator address are required")
    creator = creator_address.strip().lower()
    moment = _now(now)

    try:
        with get_db_session() as session:
            result = session.execute(
                update(billing_plans)
                .where(billing_plans.c.plan_id == plan_id)
                .where(billing_plans.c.creator_address == creator)
                .values(is_active=False, updated_at=moment)
            )
            if not result.rowcount:
                raise NotFoundOrForbiddenError("Plan not found or access denied")
            append_activity(
                session,
                "plan_deactivated",
                plan_id=plan_id,
                actor_address=creator,
                target_address=creator,
                description=f"Deactivated billing plan: {plan_id}",
                now=moment,
            )
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to deactivate plan: {e}")


def subscribe_to_plan(plan_id: Optional[str], subscriber_address: Optional[str], *, now: Optional[datetime] = None) -> PlanSubscription:
    """
    Attach a subscriber to an active plan. A previously cancelled link is reactivated.
    """
    if not plan_id or not subscriber_address:
        raise ValidationError("Plan ID and subscriber address are required")
    subscriber = subscriber_address.strip().lower()
    moment = _now(now)

    try:
        with get_db_session() as session:
            plan_row = session.execute(
                select(billing_plans)
                .where(billing_plans.c.plan_id == plan_id)
                .where(billing_plans.c.is_active.is_(True))
            ).first()
            if plan_row is None:
                raise NotFoundOrForbiddenError("Plan not found or inactive")
            plan = _row_to_plan(plan_row)
            next_due = next_due_for_interval(moment, plan.interval)

            link = (plan_subscriptions.c.plan_id == plan_id) & (plan_subscriptions.c.subscriber_address == subscriber)
            existing = session.execute(select(plan_subscriptions).where(link)).first()
            if existing is not None and existing._mapping["is_active"]:
                raise ValidationError("Already subscribed to this plan")

            if existing is not None:
                sub_id = existing._mapping["id"]
                session.execute(
                    update(plan_subscriptions).where(link).values(is_active=True, next_payment_due=next_due, last_payment_at=moment)
                )
            else:
                sub_id = str(uuid.uuid4())
                session.execute(
                    insert(plan_subscriptions).values(
                        id=sub_id,
                        plan_id=plan_id,
                        subscriber_address=subscriber,
                        next_payment_due=next_due,
                        is_active=True,
                        created_at=moment,
                        last_payment_at=moment,
                    )
                )
            append_activity(
                session,
                "subscription_created",
                plan_id=plan_id,
                plan_subscription_id=sub_id,
                actor_address=subscriber,
                target_address=plan.creator_address,
                description=f"Subscribed to plan: {plan.name}",
                details={"next_payment_due": next_due.isoformat()},
                now=moment,
            )
            row = session.execute(select(plan_subscriptions).where(link)).first()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to subscribe to plan: {e}")

    return _row_to_plan_subscription(row)


def record_plan_payment(plan_id: Optional[str], subscriber_address: Optional[str], *, tx_hash: Optional[str] = None, now: Optional[datetime] = None) -> PlanSubscription:
    """
    Mark a due plan subscription paid; the next due date is one interval after `now`.

    Raises ValidationError when the payment is not due yet.
    """
    if not plan_id or not subscriber_address:
        raise ValidationError("Plan ID and subscriber address are required")
    subscriber = subscriber_address.strip().lower()
    moment = _now(now)
    link = (plan_subscriptions.c.plan_id == plan_id) & (plan_subscriptions.c.subscriber_address == subscriber)

    try:
        with get_db_session() as session:
            row = session.execute(
                select(plan_subscriptions, billing_plans.c.interval, billing_plans.c.amount, billing_plans.c.creator_address)
                .join(billing_plans, billing_plans.c.plan_id == plan_subscriptions.c.plan_id)
                .where(link)
                .where(plan_subscriptions.c.is_active.is_(True))
            ).first()
            if row is None:
                raise NotFoundOrForbiddenError("Subscription not found or access denied")
            m = row._mapping
            if moment < as_utc(m["next_payment_due"]):
                raise ValidationError("Payment not due yet")
            next_due = next_due_for_interval(moment, m["interval"])
            session.execute(
                update(plan_subscriptions).where(link).values(last_payment_at=moment, next_payment_due=next_due)
            )
            append_activity(
                session,
                "payment_success",
                plan_id=plan_id,
                plan_subscription_id=m["id"],
                actor_address=subscriber,
                target_address=m["creator_address"],
                description=f"Payment processed for plan: {plan_id}",
                details={"amount": m["amount"], "tx_hash": tx_hash},
                now=moment,
            )
            updated = session.execute(select(plan_subscriptions).where(link)).first()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to record plan payment: {e}")

    return _row_to_plan_subscription(updated)


def cancel_plan_subscription(plan_id: Optional[str], subscriber_address: Optional[str], *, now: Optional[datetime] = None) -> None:
    if not plan_id or not subscriber_address:
        raise ValidationError("Plan ID and subscriber address are required")
    subscriber = subscriber_address.strip().lower()
    moment = _now(now)

    try:
        with get_db_session() as session:
            result = session.execute(
                update(plan_subscriptions)
                .where(plan_subscriptions.c.plan_id == plan_id)
                .where(plan_subscriptions.c.subscriber_address == subscriber)
                .where(plan_subscriptions.c.is_active.is_(True))
                .values(is_active=False)
            )
            if not result.rowcount:
                raise NotFoundOrForbiddenError("Subscription not found or access denied")
            append_activity(
                session,
                "subscription_cancelled",
                plan_id=plan_id,
                actor_address=subscriber,
                target_address=subscriber,
                description=f"Cancelled subscription to plan: {plan_id}",
                now=moment,
            )
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to cancel plan subscription: {e}")


def list_plan_subscriptions(*, subscriber_address: Optional[str] = None, plan_id: Optional[str] = None) -> List[PlanSubscription]:
    query = select(plan_subscriptions).order_by(plan_subscriptions.c.created_at.desc())
    if subscriber_address:
        query = query.where(plan_subscriptions.c.subscriber_address == subscriber_address.strip().lower())
    if plan_id:
        query = query.where(plan_subscriptions.c.plan_id == plan_id)
    try:
        with get_db_session() as session:
            rows = session.execute(query).fetchall()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to fetch plan subscriptions: {e}")
    return [_row_to_plan_subscription(r) for r in rows]


def fetch_client_rows(creator_address: Optional[str] = None) -> List[PlanSubscriptionRow]:
    """plan_subscriptions inner-joined with billing_plans, optionally for one creator."""
    query = (
        select(
            plan_subscriptions.c.subscriber_address,
            plan_subscriptions.c.is_active,
            plan_subscriptions.c.created_at,
            plan_subscriptions.c.last_payment_at,
            plan_subscriptions.c.plan_id,
            billing_plans.c.creator_address,
            billing_plans.c.amount,
        )
        .join(billing_plans, billing_plans.c.plan_id == plan_subscriptions.c.plan_id)
    )
    if creator_address:
        query = query.where(billing_plans.c.creator_address == creator_address.strip().lower())

    try:
        with get_db_session() as session:
            rows = session.execute(query).fetchall()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to fetch clients: {e}")

    return [
        PlanSubscriptionRow(
            subscriber_address=r.subscriber_address,
            is_active=r.is_active,
            created_at=as_utc(r.created_at),
            last_payment_at=as_utc(r.last_payment_at),
            plan_id=r.plan_id,
            creator_address=r.creator_address,
            amount=r.amount,
        )
        for r in rows
    ]
