"""Recurring payments job: charges every due subscription once per run."""
from datetime import datetime, timezone
import logging

from sqlalchemy.exc import SQLAlchemyError

from autopay.core.database import as_utc
from autopay.core.errors import AppError
from autopay.features.ledger.provider import LedgerError, LedgerProvider
from autopay.features.subscriptions.service import (
    get_due_subscriptions,
    get_subscription,
    record_charge,
    record_failed_charge,
)
from autopay.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger("autopay.workers.payments")


def _still_active(sub: Subscription) -> bool:
    current = get_subscription(sub.id)
    return current is not None and current.status is SubscriptionStatus.ACTIVE


def _charge_one(ledger: LedgerProvider, sub: Subscription, moment: datetime) -> str:
    """Charge one subscription. Returns "processed", "failed" or "skipped"."""
    # the owner may have paused or cancelled since the due scan
    if not _still_active(sub):
        logger.info("[payments] skipped, no longer active", extra={"subscription_id": sub.id})
        return "skipped"

    try:
        receipt = ledger.transfer(sub.token_symbol, sub.recipient_address, sub.token_amount).wait()
    except LedgerError as e:
        record_failed_charge(sub.id, str(e) or e.__class__.__name__, now=moment)
        return "failed"

    try:
        record_charge(sub.id, tx_hash=receipt.tx_hash, now=moment)
    except (AppError, SQLAlchemyError) as e:
        # funds moved; the receipt hash is the only trace left
        logger.error(
            f"[payments] transfer settled but not recorded: {e}",
            extra={"subscription_id": sub.id, "tx_hash": receipt.tx_hash},
        )
    return "processed"


def process_due_payments(ledger: LedgerProvider, *, now: datetime | None = None) -> dict:
    """
    Transfer each due subscription's amount to its recipient and record the outcome.

    One subscription's failure, ledger or store, never stops the batch.
    """
    moment = as_utc(now) if now else datetime.now(timezone.utc)
    due = get_due_subscriptions(moment)
    counts = {"processed": 0, "failed": 0, "skipped": 0}

    for sub in due:
        try:
            outcome = _charge_one(ledger, sub, moment)
        except (AppError, SQLAlchemyError) as e:
            logger.error(f"[payments] charge aborted: {e}", extra={"subscription_id": sub.id})
            outcome = "failed"
        counts[outcome] += 1

    logger.info("[payments] batch complete", extra={"due": len(due), **counts})
    return {"due": len(due), **counts}


if __name__ == "__main__":
    from autopay.core.logging import configure_logging
    from autopay.core.config import settings
    from autopay.features.ledger.web3_provider import get_ledger

    configure_logging(settings.ENV)
    result = process_due_payments(get_ledger())
    print(result)
