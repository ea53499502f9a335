"""
autopay/features/payments/workflow.py

Payment authorization workflow for plan-tier subscriptions.

One instance drives one subscribe attempt through:

    IDLE -> PRICE_QUOTED -> BALANCE_CHECKED -> ALLOWANCE_CHECKED
         -> [ALLOWANCE_RAISING] -> SUBMITTED -> CONFIRMED

with a FAILED exit from any stage. Reads are side-effect free; only the
allowance raise and the subscribe call mutate the ledger, and each is waited
on until inclusion before the next stage starts. Nothing is retried: a
failed attempt is re-initiated by the caller from IDLE.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Iterator, List, Optional
from weakref import WeakValueDictionary
import logging

from autopay.core.errors import (
    AppError,
    AuthorizationDeniedError,
    ConfigurationError,
    InsufficientFundsError,
    InternalError,
    ValidationError,
)
from autopay.features.ledger.provider import (
    LedgerError,
    LedgerProvider,
    LedgerRejectedError,
    TransactionReceipt,
)
from autopay.features.payments.plan_state import PlanStateCache, PlanStateSnapshot


logger = logging.getLogger("autopay")

USDC_DECIMALS = 6


class WorkflowState(str, Enum):
    IDLE = "idle"
    PRICE_QUOTED = "price_quoted"
    BALANCE_CHECKED = "balance_checked"
    ALLOWANCE_CHECKED = "allowance_checked"
    ALLOWANCE_RAISING = "allowance_raising"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class AuthorizationResult:
    address: str
    units: int
    price_per_unit: int
    total_cost: int
    approval_receipt: Optional[TransactionReceipt]
    subscribe_receipt: TransactionReceipt
    snapshot: PlanStateSnapshot
    transitions: List[WorkflowState] = field(default_factory=list)

    def to_response(self) -> dict:
        return {
            "address": self.address,
            "months": self.units,
            "pricePerMonth": str(self.price_per_unit),
            "totalCost": str(self.total_cost),
            "approvalTx": self.approval_receipt.tx_hash if self.approval_receipt else None,
            "subscribeTx": self.subscribe_receipt.tx_hash,
            "transitions": [s.value for s in self.transitions],
            "plan": self.snapshot.to_response(),
        }


def format_units(amount: int, decimals: int = USDC_DECIMALS) -> str:
    """Render minor units as a decimal string without going through float."""
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10 ** decimals)
    return f"{sign}{whole}.{frac:0{decimals}d}"


# Per-address serialization of workflow instances; an entry lives only while some attempt holds it
_address_locks: WeakValueDictionary[str, Lock] = WeakValueDictionary()
_registry_lock = Lock()


@contextmanager
def address_lock(address: str) -> Iterator[None]:
    key = address.lower()
    with _registry_lock:
        lock = _address_locks.get(key)
        if lock is None:
            lock = Lock()
            _address_locks[key] = lock
    with lock:
        yield


class PaymentAuthorizationWorkflow:
    """Drives one subscribe attempt against a ledger."""

    def __init__(
        self,
        ledger: LedgerProvider,
        plan_state: PlanStateCache,
        *,
        address: Optional[str],
        contract_address: Optional[str],
    ):
        self.ledger = ledger
        self.plan_state = plan_state
        self.address = address
        self.contract_address = contract_address
        self.state = WorkflowState.IDLE
        self.failure_reason: Optional[str] = None
        self.transitions: List[WorkflowState] = [WorkflowState.IDLE]

    def _advance(self, state: WorkflowState) -> None:
        self.state = state
        self.transitions.append(state)
        logger.info(
            f"[workflow] {state.value}",
            extra={"address": self.address, "stage": state.value},
        )

    def _fail(self, exc: AppError) -> AppError:
        failed_in = self.state
        self.failure_reason = exc.message
        self.state = WorkflowState.FAILED
        self.transitions.append(WorkflowState.FAILED)
        log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            log_level,
            f"[workflow] failed during {failed_in.value}: {exc.message}",
            extra={"address": self.address, "stage": failed_in.value, "error_code": exc.code},
        )
        return exc

    def _check_wiring(self) -> None:
        if not self.address or not self.contract_address:
            raise ConfigurationError("Wallet not connected or contract not deployed")
        signer = getattr(self.ledger, "signer_address", None)
        if signer and signer.lower() != self.address.lower():
            raise ConfigurationError("Wallet address mismatch. Reconnect the wallet.")

    def run(self, units_requested: int) -> AuthorizationResult:
        """
        Execute the workflow to completion.

        Raises:
            ConfigurationError: Missing wallet or contract wiring
            ValidationError: units_requested is not a positive integer
            InsufficientFundsError: Balance below total cost (nothing submitted)
            AuthorizationDeniedError: Approval or charge rejected/failed
            InternalError: Ledger unreachable or otherwise failing
        """
        if self.state is not WorkflowState.IDLE:
            raise ValidationError("Workflow already ran; start a new attempt")
        try:
            self._check_wiring()
            if isinstance(units_requested, bool) or not isinstance(units_requested, int) or units_requested <= 0:
                raise ValidationError("months must be a positive integer")
        except AppError as e:
            raise self._fail(e)

        with address_lock(self.address):
            return self._run_locked(units_requested)

    def _run_locked(self, units: int) -> AuthorizationResult:
        address = self.address
        spender = self.contract_address
        approval_receipt: Optional[TransactionReceipt] = None

        try:
            price = int(self.ledger.price_per_month())
            total_cost = price * units
            self._advance(WorkflowState.PRICE_QUOTED)

            balance = int(self.ledger.balance_of(address))
            if balance < total_cost:
                raise InsufficientFundsError(
                    f"Insufficient USDC balance. Need {format_units(total_cost)} USDC, have {format_units(balance)} USDC"
                )
            self._advance(WorkflowState.BALANCE_CHECKED)

            allowance = int(self.ledger.allowance(address, spender))
            self._advance(WorkflowState.ALLOWANCE_CHECKED)

            if allowance < total_cost:
                self._advance(WorkflowState.ALLOWANCE_RAISING)
                approval_receipt = self._raise_allowance(spender, total_cost)

            try:
                handle = self.ledger.subscribe(units)
                self._advance(WorkflowState.SUBMITTED)
                receipt = handle.wait()
            except LedgerRejectedError as e:
                raise AuthorizationDeniedError(f"Subscription charge rejected: {e}")
            self._advance(WorkflowState.CONFIRMED)
        except AppError as e:
            raise self._fail(e)
        except LedgerError as e:
            raise self._fail(InternalError(f"Ledger call failed: {e}"))

        # Tier is only ever taken from the chain, after confirmation
        try:
            snapshot = self.plan_state.refresh(address)
        except LedgerError as e:
            raise InternalError(f"Subscription confirmed but state refresh failed: {e}")

        return AuthorizationResult(
            address=address,
            units=units,
            price_per_unit=price,
            total_cost=total_cost,
            approval_receipt=approval_receipt,
            subscribe_receipt=receipt,
            snapshot=snapshot,
            transitions=list(self.transitions),
        )

    def _raise_allowance(self, spender: str, total_cost: int) -> TransactionReceipt:
        try:
            receipt = self.ledger.approve(spender, total_cost).wait()
            raised = int(self.ledger.allowance(self.address, spender))
        except LedgerError as e:
            raise AuthorizationDeniedError(f"Approval failed: {e}")
        if raised < total_cost:
            raise AuthorizationDeniedError("Approval failed - allowance not updated correctly")
        return receipt


def authorize_subscription(
    ledger: LedgerProvider,
    plan_state: PlanStateCache,
    *,
    address: Optional[str],
    contract_address: Optional[str],
    months: int,
) -> AuthorizationResult:
    """Run a fresh workflow instance for one subscribe attempt."""
    workflow = PaymentAuthorizationWorkflow(
        ledger,
        plan_state,
        address=address,
        contract_address=contract_address,
    )
    return workflow.run(months)
