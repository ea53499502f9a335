"""
autopay/features/payments/plan_state.py

On-chain plan state snapshots.

The chain is the source of truth for a wallet's plan tier. Snapshots are
fetched on demand and replaced wholesale on every refresh; nothing updates
them incrementally.
"""

from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Optional
import logging

from pydantic import BaseModel, ConfigDict

from autopay.features.entitlements.service import PlanTier, limits_for, tier_for_state
from autopay.features.ledger.provider import LedgerError, LedgerProvider


logger = logging.getLogger("autopay")

SECONDS_PER_DAY = 86400


class PlanStateSnapshot(BaseModel):
    """Versioned, time-stamped view of one wallet's on-chain subscription."""
    model_config = ConfigDict(frozen=True)

    address: str
    tier: PlanTier
    is_active: bool
    expiry: Optional[datetime] = None
    days_remaining: int = 0
    version: int = 0
    fetched_at: Optional[datetime] = None

    def to_response(self) -> dict:
        return {
            "address": self.address,
            "tier": self.tier.value,
            "isActive": self.is_active,
            "expiryDate": self.expiry.isoformat() if self.expiry else None,
            "daysRemaining": self.days_remaining,
            "version": self.version,
            "fetchedAt": self.fetched_at.isoformat() if self.fetched_at else None,
            "planLimits": limits_for(self.tier).as_dict(),
        }


def days_from_expiry(expiry_ts: int, now: datetime) -> int:
    if expiry_ts <= 0:
        return 0
    return max(0, (expiry_ts - int(now.timestamp())) // SECONDS_PER_DAY)


class PlanStateCache:
    """Holds the latest snapshot per wallet address."""

    def __init__(self, ledger: LedgerProvider, clock: Optional[Callable[[], datetime]] = None):
        self.ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._snapshots: Dict[str, PlanStateSnapshot] = {}
        self._lock = Lock()

    def current(self, address: str) -> PlanStateSnapshot:
        key = address.lower()
        with self._lock:
            snapshot = self._snapshots.get(key)
        if snapshot is None:
            return PlanStateSnapshot(address=key, tier=PlanTier.FREE, is_active=False)
        return snapshot

    def clear(self, address: str) -> None:
        with self._lock:
            self._snapshots.pop(address.lower(), None)

    def refresh(self, address: str) -> PlanStateSnapshot:
        """
        Re-read active/expiry/days-remaining from the ledger and replace the snapshot.

        A failed days-remaining read falls back to the expiry timestamp.
        A failed active or expiry read propagates; the previous snapshot stays.
        """
        key = address.lower()
        now = self._clock()

        active = self.ledger.is_active(address)
        expiry_ts = int(self.ledger.get_expiry(address))
        try:
            days = int(self.ledger.get_days_remaining(address))
        except LedgerError as e:
            logger.warning(
                "[plan_state] getDaysRemaining failed, deriving from expiry",
                extra={"address": key, "error_message": str(e)},
            )
            days = days_from_expiry(expiry_ts, now)

        with self._lock:
            previous = self._snapshots.get(key)
            snapshot = PlanStateSnapshot(
                address=key,
                tier=tier_for_state(active),
                is_active=active,
                expiry=datetime.fromtimestamp(expiry_ts, timezone.utc) if expiry_ts > 0 else None,
                days_remaining=days,
                version=(previous.version if previous else 0) + 1,
                fetched_at=now,
            )
            self._snapshots[key] = snapshot

        logger.info(
            "[plan_state] refreshed",
            extra={"address": key, "tier": snapshot.tier.value, "version": snapshot.version},
        )
        return snapshot
