"""
Plan tier API routes.

- GET  /api/plan-tier: Refresh a wallet's on-chain plan state and limits
- POST /api/plan-tier/subscribe: Pay for N months of the pro tier
"""
from threading import Lock
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from autopay.core.errors import InternalError, ValidationError
from autopay.features.ledger.provider import LedgerError
from autopay.features.ledger.web3_provider import get_ledger
from autopay.features.payments.plan_state import PlanStateCache, PlanStateSnapshot
from autopay.features.payments.workflow import authorize_subscription


router = APIRouter(tags=["plan-tier"])

_plan_state: Optional[PlanStateCache] = None
_plan_state_lock = Lock()


def get_plan_state() -> PlanStateCache:
    """Process-wide snapshot cache bound to the configured ledger."""
    global _plan_state
    with _plan_state_lock:
        if _plan_state is None:
            _plan_state = PlanStateCache(get_ledger())
        return _plan_state


class SubscribeTierRequest(BaseModel):
    address: Optional[str] = None
    months: int = 1


def refresh_plan_state(address: str) -> PlanStateSnapshot:
    """Fresh on-chain snapshot for `address`; ledger failures become InternalError."""
    try:
        return get_plan_state().refresh(address)
    except LedgerError as e:
        raise InternalError(f"Failed to read plan state: {e}")


@router.get("/plan-tier")
def plan_tier_route(address: Optional[str] = Query(None)):
    if not address:
        raise ValidationError("address is required")
    return refresh_plan_state(address).to_response()


@router.post("/plan-tier/subscribe")
def subscribe_tier_route(body: SubscribeTierRequest):
    cache = get_plan_state()
    result = authorize_subscription(
        cache.ledger,
        cache,
        address=body.address,
        contract_address=getattr(cache.ledger, "contract_address", None),
        months=body.months,
    )
    return result.to_response()
