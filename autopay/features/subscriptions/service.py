"""
autopay/features/subscriptions/service.py

Subscription store gateway.

Handles:
- Subscription creation with the first scheduled charge
- Owner-scoped status updates (wrong owner and missing row look the same)
- Per-subscriber listing
- Activity feed reads and appends
- Charge bookkeeping for the recurring payments job

Every operation validates its input before touching the store.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from autopay.core.config import settings
from autopay.core.database import (
    activity_log,
    as_utc,
    billing_plans,
    get_db_session,
    payment_logs,
    subscriptions,
)
from autopay.core.errors import InternalError, NotFoundOrForbiddenError, ValidationError
from autopay.core.logging import log_event
from autopay.features.schedule.service import advance_schedule, compute_next_payment_date, parse_frequency
from autopay.models.billing_plan import ActivityLogEntry
from autopay.models.subscription import PaymentLog, Subscription, SubscriptionStatus


def _row_to_subscription(row) -> Subscription:
    m = row._mapping
    return Subscription(
        id=m["id"],
        user_address=m["user_address"],
        recipient_address=m["recipient_address"],
        token_amount=m["token_amount"],
        token_symbol=m["token_symbol"],
        frequency=m["frequency"],
        next_payment_date=as_utc(m["next_payment_date"]),
        status=m["status"],
        created_at=as_utc(m["created_at"]),
        updated_at=as_utc(m["updated_at"]),
    )


def _row_to_activity(row) -> ActivityLogEntry:
    m = row._mapping
    return ActivityLogEntry(
        id=m["id"],
        event_type=m["event_type"],
        plan_id=m["plan_id"],
        plan_subscription_id=m["plan_subscription_id"],
        actor_address=m["actor_address"],
        target_address=m["target_address"],
        description=m["description"],
        details=m["details"],
        created_at=as_utc(m["created_at"]),
    )


def _parse_status(status: Any) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(str(status).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid status: {status!r}. Expected one of active, paused, cancelled")


def create_subscription(
    user_address: Optional[str],
    recipient_address: Optional[str],
    token_amount: Optional[int],
    token_symbol: Optional[str],
    frequency: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Create an active subscription whose first charge is one period from now.

    Raises:
        ValidationError: Any field missing/falsy, non-positive amount or unknown frequency
        InternalError: Store failure
    """
    if not user_address or not recipient_address or not token_amount or not token_symbol or not frequency:
        raise ValidationError("Missing required fields")
    if isinstance(token_amount, bool) or not isinstance(token_amount, int) or token_amount <= 0:
        raise ValidationError("token_amount must be a positive integer in minor units")
    freq = parse_frequency(frequency)

    created_at = as_utc(now) if now else datetime.now(timezone.utc)
    values = {
        "id": str(uuid.uuid4()),
        "user_address": user_address.strip().lower(),
        "recipient_address": recipient_address.strip().lower(),
        "token_amount": token_amount,
        "token_symbol": token_symbol.strip(),
        "frequency": freq.value,
        "next_payment_date": compute_next_payment_date(created_at, freq),
        "status": SubscriptionStatus.ACTIVE.value,
        "created_at": created_at,
        "updated_at": created_at,
    }

    try:
        with get_db_session() as session:
            session.execute(insert(subscriptions).values(**values))
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to create subscription: {e}")

    log_event(
        "info",
        "[subscriptions] created",
        address=values["user_address"],
        subscription_id=values["id"],
        event_type="subscription_created",
        extra={"frequency": freq.value, "next_payment_date": values["next_payment_date"].isoformat()},
    )
    return Subscription(**values)


def update_subscription_status(
    subscription_id: Optional[str],
    user_address: Optional[str],
    status: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Change a subscription's status on behalf of its owner.

    The update is filtered by id AND owner in one statement, so a wrong owner
    and a missing row both surface as NotFoundOrForbiddenError.
    """
    if not subscription_id or not user_address or not status:
        raise ValidationError("Missing required fields")
    new_status = _parse_status(status)
    owner = user_address.strip().lower()
    updated_at = as_utc(now) if now else datetime.now(timezone.utc)

    owned = (subscriptions.c.id == subscription_id) & (subscriptions.c.user_address == owner)
    try:
        with get_db_session() as session:
            result = session.execute(
                update(subscriptions)
                .where(owned)
                .values(status=new_status.value, updated_at=updated_at)
            )
            if not result.rowcount:
                raise NotFoundOrForbiddenError("Subscription not found or access denied")
            row = session.execute(select(subscriptions).where(owned)).first()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to update subscription: {e}")

    log_event(
        "info",
        "[subscriptions] status updated",
        address=owner,
        subscription_id=subscription_id,
        event_type="subscription_status_changed",
        extra={"status": new_status.value},
    )
    return _row_to_subscription(row)


def list_subscriptions_for_user(user_address: Any) -> List[Subscription]:
    """All subscriptions owned by `user_address`, newest first."""
    if not user_address or not isinstance(user_address, str):
        raise ValidationError("user_address is required")

    try:
        with get_db_session() as session:
            rows = session.execute(
                select(subscriptions)
                .where(subscriptions.c.user_address == user_address.strip().lower())
                .order_by(subscriptions.c.created_at.desc())
            ).fetchall()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to fetch subscriptions: {e}")
    return [_row_to_subscription(r) for r in rows]


def get_subscription(subscription_id: str) -> Optional[Subscription]:
    try:
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.id == subscription_id)
            ).first()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to fetch subscription: {e}")
    return _row_to_subscription(row) if row else None


def list_activity(creator_address: Optional[str] = None, limit: Optional[int] = None) -> List[ActivityLogEntry]:
    """
    Most recent activity entries, newest first.

    With `creator_address`, only entries for plans that creator owns. A
    creator with no plans gets an empty list without the feed being queried.
    """
    cap = limit or settings.ACTIVITY_FEED_LIMIT
    query = select(activity_log).order_by(activity_log.c.created_at.desc()).limit(cap)

    try:
        with get_db_session() as session:
            if creator_address:
                plan_ids = session.execute(
                    select(billing_plans.c.plan_id)
                    .where(billing_plans.c.creator_address == creator_address.strip().lower())
                ).scalars().all()
                if not plan_ids:
                    return []
                query = query.where(activity_log.c.plan_id.in_(plan_ids))
            rows = session.execute(query).fetchall()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to fetch activity: {e}")
    return [_row_to_activity(r) for r in rows]


def append_activity(
    session,
    event_type: str,
    *,
    plan_id: Optional[str] = None,
    plan_subscription_id: Optional[str] = None,
    actor_address: Optional[str] = None,
    target_address: Optional[str] = None,
    description: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> str:
    """Append a feed entry inside the caller's session. Entries are never updated."""
    entry_id = str(uuid.uuid4())
    session.execute(
        insert(activity_log).values(
            id=entry_id,
            event_type=event_type,
            plan_id=plan_id,
            plan_subscription_id=plan_subscription_id,
            actor_address=actor_address,
            target_address=target_address,
            description=description,
            details=details,
            created_at=as_utc(now) if now else datetime.now(timezone.utc),
        )
    )
    return entry_id


def get_due_subscriptions(now: Optional[datetime] = None) -> List[Subscription]:
    """Active subscriptions whose next charge instant has passed."""
    moment = as_utc(now) if now else datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            rows = session.execute(
                select(subscriptions)
                .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
                .where(subscriptions.c.next_payment_date < moment)
                .order_by(subscriptions.c.next_payment_date.asc())
            ).fetchall()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to fetch due subscriptions: {e}")
    return [_row_to_subscription(r) for r in rows]


def _insert_payment_log(session, subscription: Subscription, status: str, *, tx_hash=None, error_message=None, now=None) -> PaymentLog:
    values = {
        "id": str(uuid.uuid4()),
        "subscription_id": subscription.id,
        "transaction_hash": tx_hash,
        "status": status,
        "error_message": error_message[:500] if error_message else None,
        "amount": subscription.token_amount,
        "token_symbol": subscription.token_symbol,
        "created_at": as_utc(now) if now else datetime.now(timezone.utc),
    }
    session.execute(insert(payment_logs).values(**values))
    return PaymentLog(**values)


def record_charge(subscription_id: str, *, tx_hash: str, now: Optional[datetime] = None) -> Subscription:
    """
    Log a settled charge and advance the schedule by one period.

    A subscription paused or cancelled while its transfer was in flight keeps
    the success entry but its schedule is left untouched.
    """
    moment = as_utc(now) if now else datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.id == subscription_id)
            ).first()
            if row is None:
                raise NotFoundOrForbiddenError("Subscription not found or access denied")
            current = _row_to_subscription(row)
            _insert_payment_log(session, current, "success", tx_hash=tx_hash, now=moment)
            if current.status is not SubscriptionStatus.ACTIVE:
                next_date = None
            else:
                next_date = advance_schedule(
                    current.next_payment_date,
                    current.frequency,
                    status=current.status,
                    now=moment,
                )
                session.execute(
                    update(subscriptions)
                    .where(subscriptions.c.id == subscription_id)
                    .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
                    .values(next_payment_date=next_date, updated_at=moment)
                )
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to record charge: {e}")

    if next_date is None:
        log_event(
            "warning",
            "[subscriptions] charge settled on inactive subscription",
            address=current.user_address,
            subscription_id=subscription_id,
            event_type="payment_success",
            extra={"tx_hash": tx_hash, "status": current.status.value},
        )
        return current

    log_event(
        "info",
        "[subscriptions] charge recorded",
        address=current.user_address,
        subscription_id=subscription_id,
        event_type="payment_success",
        extra={"tx_hash": tx_hash, "next_payment_date": next_date.isoformat()},
    )
    return current.model_copy(update={"next_payment_date": next_date, "updated_at": moment})


def record_failed_charge(subscription_id: str, error_message: str, *, now: Optional[datetime] = None) -> Optional[PaymentLog]:
    try:
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.id == subscription_id)
            ).first()
            if row is None:
                return None
            entry = _insert_payment_log(session, _row_to_subscription(row), "failed", error_message=error_message, now=now)
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to record failed charge: {e}")

    log_event(
        "warning",
        "[subscriptions] charge failed",
        subscription_id=subscription_id,
        event_type="payment_failed",
        error_code="charge_failed",
        extra={"error_message": error_message},
    )
    return entry


def list_payment_logs(subscription_id: str) -> List[PaymentLog]:
    try:
        with get_db_session() as session:
            rows = session.execute(
                select(payment_logs)
                .where(payment_logs.c.subscription_id == subscription_id)
                .order_by(payment_logs.c.created_at.desc())
            ).fetchall()
    except SQLAlchemyError as e:
        raise InternalError(f"Failed to fetch payment logs: {e}")
    return [
        PaymentLog(**{**dict(r._mapping), "created_at": as_utc(r._mapping["created_at"])})
        for r in rows
    ]
