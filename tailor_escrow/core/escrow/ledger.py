import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from tailor_escrow.core.common.money import (
    AmountLike,
    covers_with_tolerance,
    exceeds_with_tolerance,
    to_amount,
)
from tailor_escrow.core.errors import (
    EscrowAlreadyInitializedError,
    EscrowNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerConcurrencyError,
    LedgerInvariantError,
    OutOfOrderReleaseError,
    OverpaymentError,
    PaymentReferenceConflictError,
    ProviderConfirmationMissingError,
    RefundAmountRequiredError,
    StageMismatchError,
)
from tailor_escrow.core.escrow.calculator import (
    calculate_escrow_breakdown,
    stage_allocation,
    stage_paid,
    stage_releasable,
)
from tailor_escrow.core.escrow.models import (
    PAYABLE_STAGES,
    REFUND_RESOLUTION_TYPES,
    STAGE_SEQUENCE,
    EscrowBreakdown,
    EscrowHistoryEntry,
    EscrowReconciliationReport,
    EscrowSplitPolicy,
    EscrowStage,
    EscrowState,
    EscrowTransactionType,
    LedgerResolutionType,
)
from tailor_escrow.core.escrow.repository import EscrowRepository
from tailor_escrow.core.events import EventPublisher, build_event, publish_event

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")

LedgerMutation = Callable[[EscrowState], Optional[tuple[EscrowState, list[EscrowHistoryEntry]]]]
StageFundedHandler = Callable[..., None]


class EscrowLedger:
    """Authoritative money ledger for a single order's escrow.

    Every mutation follows the same shape: read the current state, validate the request
    against it, build the next state plus its history entries, and commit both through a
    compare-and-set on ``version``. A lost race re-reads and re-validates, which is what
    makes duplicate releases and replayed resolutions collapse into no-ops.
    """

    def __init__(
        self,
        *,
        repository: EscrowRepository,
        event_publisher: Optional[EventPublisher] = None,
        max_conflict_retries: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._event_publisher = event_publisher
        self._max_conflict_retries = max(0, max_conflict_retries)
        self._clock = clock or _utc_now
        self._stage_funded_handlers: list[StageFundedHandler] = []

    def on_stage_funded(self, handler: StageFundedHandler) -> None:
        """Register ``handler(order_id=..., stage=...)`` for fully captured FITTING or FINAL shares.

        Handlers run after the payment commits. A failing handler is logged and never undoes
        the payment.
        """
        self._stage_funded_handlers.append(handler)

    def initialize(
        self,
        *,
        order_id: str,
        total_amount: AmountLike,
        split_policy: Optional[EscrowSplitPolicy] = None,
    ) -> EscrowState:
        breakdown = calculate_escrow_breakdown(total_amount, split_policy)
        existing = self._repository.get_state(order_id=order_id)
        if existing is not None:
            return self._existing_or_conflict(existing, breakdown)

        now = self._clock()
        state = EscrowState(
            order_id=order_id,
            policy_id=breakdown.policy_id,
            total_amount=breakdown.total_amount,
            stage="DEPOSIT",
            deposit_amount=breakdown.deposit_amount,
            fitting_amount=breakdown.fitting_amount,
            final_amount=breakdown.final_amount,
            balance=breakdown.total_amount,
            version=1,
            created_at=now,
            updated_at=now,
        )
        if not self._repository.create_state(state):
            existing = self._repository.get_state(order_id=order_id)
            if existing is None:
                raise LedgerConcurrencyError("LEDGER_CONCURRENT_UPDATE: initialize")
            return self._existing_or_conflict(existing, breakdown)

        logger.info(
            "Escrow initialized. OrderID=%s Total=%s Policy=%s",
            order_id,
            breakdown.total_amount,
            breakdown.policy_id,
        )
        return state

    def get_state(self, *, order_id: str) -> EscrowState:
        return self._require_state(order_id)

    def record_payment(
        self,
        *,
        order_id: str,
        stage: EscrowStage,
        amount: AmountLike,
        provider_reference: str,
    ) -> EscrowState:
        paid_amount = _positive_amount(amount, field="payment amount")
        reference = (provider_reference or "").strip()
        if not reference:
            raise ProviderConfirmationMissingError(
                "PROVIDER_CONFIRMATION_MISSING: provider reference is required"
            )

        funded: list[EscrowStage] = []

        def _apply(state: EscrowState):
            funded.clear()
            duplicate = _find_entry(state, transaction_type="PAYMENT", reference_id=reference)
            if duplicate is not None:
                if duplicate.stage == stage and duplicate.amount == paid_amount:
                    return None
                raise PaymentReferenceConflictError(
                    "PAYMENT_REFERENCE_CONFLICT: reference already recorded with other data"
                )
            if state.stage != stage:
                raise StageMismatchError(
                    f"STAGE_MISMATCH: payment for {stage} but ledger is at {state.stage}"
                )
            new_paid = stage_paid(state, stage) + paid_amount
            allocation = stage_releasable(state, stage)
            if exceeds_with_tolerance(new_paid, allocation):
                raise OverpaymentError(
                    f"OVERPAYMENT: {stage} paid {new_paid} exceeds allocation {allocation}"
                )

            updated = state.model_copy(deep=True)
            _set_stage_paid(updated, stage, new_paid)
            entries = [
                self._entry(
                    state=state,
                    transaction_type="PAYMENT",
                    stage=stage,
                    to_stage=state.stage,
                    amount=paid_amount,
                    reference_id=reference,
                    notes=f"{stage} payment captured",
                )
            ]
            fully_captured = covers_with_tolerance(new_paid, stage_releasable(updated, stage))
            if stage == "DEPOSIT" and fully_captured:
                entries.append(
                    self._release_into(
                        updated,
                        stage="DEPOSIT",
                        reference_id=reference,
                        notes="Deposit captured, order confirmed to tailor",
                    )
                )
            elif fully_captured:
                funded.append(stage)
            return updated, entries

        state = self._mutate(order_id, _apply)
        if not funded or not self._stage_funded_handlers:
            return state
        for handler in self._stage_funded_handlers:
            try:
                handler(order_id=order_id, stage=funded[0])
            except Exception:
                logger.exception(
                    "Stage funded handler failed. OrderID=%s Stage=%s", order_id, funded[0]
                )
        return self._require_state(order_id)

    def release_stage(
        self,
        *,
        order_id: str,
        stage: EscrowStage,
        triggering_approval_id: str,
        notes: Optional[str] = None,
    ) -> EscrowState:
        if stage not in PAYABLE_STAGES:
            raise OutOfOrderReleaseError(f"OUT_OF_ORDER_RELEASE: {stage} is not releasable")

        def _apply(state: EscrowState):
            if _find_entry(state, transaction_type="RELEASE", stage=stage) is not None:
                return None
            if state.stage == "REFUNDED":
                raise OutOfOrderReleaseError("OUT_OF_ORDER_RELEASE: escrow was refunded")
            current_index = STAGE_SEQUENCE.index(state.stage)
            requested_index = STAGE_SEQUENCE.index(stage)
            if requested_index < current_index:
                return None
            if requested_index > current_index:
                raise OutOfOrderReleaseError(
                    f"OUT_OF_ORDER_RELEASE: requested {stage} but ledger is at {state.stage}"
                )
            releasable = stage_releasable(state, stage)
            if not covers_with_tolerance(stage_paid(state, stage), releasable):
                raise ProviderConfirmationMissingError(
                    f"PROVIDER_CONFIRMATION_MISSING: {stage} capture not confirmed"
                )
            updated = state.model_copy(deep=True)
            entry = self._release_into(
                updated,
                stage=stage,
                reference_id=triggering_approval_id,
                notes=notes or f"{stage} released",
            )
            return updated, [entry]

        return self._mutate(order_id, _apply)

    def apply_resolution(
        self,
        *,
        order_id: str,
        resolution_type: LedgerResolutionType,
        amount: Optional[AmountLike],
        dispute_id: str,
        notes: Optional[str] = None,
    ) -> EscrowState:
        is_refund = resolution_type in REFUND_RESOLUTION_TYPES
        refund = _ZERO
        if is_refund:
            if amount is None:
                raise RefundAmountRequiredError(
                    f"REFUND_AMOUNT_REQUIRED: {resolution_type} needs a refund amount"
                )
            refund = _positive_amount(amount, field="refund amount")

        def _apply(state: EscrowState):
            if _find_resolution_entry(state, dispute_id) is not None:
                return None
            if not is_refund:
                entry = self._entry(
                    state=state,
                    transaction_type="RESOLUTION_NOTE",
                    stage=state.stage,
                    to_stage=state.stage,
                    amount=_ZERO,
                    reference_id=dispute_id,
                    notes=notes or f"Dispute resolved with {resolution_type}",
                )
                return state.model_copy(deep=True), [entry]

            if refund > state.balance:
                raise InsufficientBalanceError(
                    f"INSUFFICIENT_BALANCE: refund {refund} exceeds balance {state.balance}"
                )
            updated = state.model_copy(deep=True)
            _allocate_refund(updated, refund)
            updated.refunded_amount += refund
            updated.balance -= refund
            if updated.balance == _ZERO and updated.stage != "RELEASED":
                updated.stage = "REFUNDED"
            entry = self._entry(
                state=state,
                transaction_type="REFUND",
                stage=state.stage,
                to_stage=updated.stage,
                amount=refund,
                reference_id=dispute_id,
                notes=notes or f"{resolution_type} via dispute resolution",
            )
            return updated, [entry]

        state = self._mutate(order_id, _apply)
        if is_refund:
            logger.info(
                "Escrow refund applied. OrderID=%s DisputeID=%s Amount=%s Balance=%s",
                order_id,
                dispute_id,
                refund,
                state.balance,
            )
        return state

    def validate_state(self, *, order_id: str) -> EscrowReconciliationReport:
        state = self._require_state(order_id)
        errors = _invariant_violations(state)

        history = state.stage_history
        released = sum(
            (e.amount for e in history if e.transaction_type == "RELEASE"), start=_ZERO
        )
        refunded = sum((e.amount for e in history if e.transaction_type == "REFUND"), start=_ZERO)
        if released != state.released_amount:
            errors.append(f"RELEASE_HISTORY_MISMATCH: {released} != {state.released_amount}")
        if refunded != state.refunded_amount:
            errors.append(f"REFUND_HISTORY_MISMATCH: {refunded} != {state.refunded_amount}")
        for stage in PAYABLE_STAGES:
            paid = sum(
                (
                    e.amount
                    for e in history
                    if e.transaction_type == "PAYMENT" and e.stage == stage
                ),
                start=_ZERO,
            )
            if paid != stage_paid(state, stage):
                errors.append(
                    f"PAYMENT_HISTORY_MISMATCH: {stage} {paid} != {stage_paid(state, stage)}"
                )
        return EscrowReconciliationReport(
            order_id=order_id, is_valid=not errors, errors=errors
        )

    def _mutate(self, order_id: str, apply: LedgerMutation) -> EscrowState:
        for attempt in range(self._max_conflict_retries + 1):
            state = self._require_state(order_id)
            outcome = apply(state)
            if outcome is None:
                return state
            updated, entries = outcome
            updated.version = state.version + 1
            updated.updated_at = self._clock()
            updated.stage_history = list(state.stage_history) + entries

            violations = _invariant_violations(updated)
            if violations:
                raise LedgerInvariantError(f"LEDGER_INVARIANT_VIOLATION: {violations[0]}")

            if self._repository.commit_state(
                state=updated, expected_version=state.version, entries=entries
            ):
                self._publish_releases(updated, entries)
                return updated
            logger.warning(
                "Escrow ledger version conflict. OrderID=%s Version=%s Attempt=%s",
                order_id,
                state.version,
                attempt + 1,
            )
        raise LedgerConcurrencyError("LEDGER_CONCURRENT_UPDATE: retries exhausted")

    def _release_into(
        self,
        updated: EscrowState,
        *,
        stage: EscrowStage,
        reference_id: str,
        notes: str,
    ) -> EscrowHistoryEntry:
        amount = stage_releasable(updated, stage)
        from_stage = updated.stage
        next_stage = STAGE_SEQUENCE[STAGE_SEQUENCE.index(stage) + 1]
        updated.released_amount += amount
        updated.balance -= amount
        updated.stage = next_stage
        return EscrowHistoryEntry(
            entry_id=f"esh_{uuid.uuid4().hex[:12]}",
            order_id=updated.order_id,
            transaction_type="RELEASE",
            stage=stage,
            from_stage=from_stage,
            to_stage=next_stage,
            amount=amount,
            reference_id=reference_id,
            notes=notes,
            recorded_at=self._clock(),
        )

    def _entry(
        self,
        *,
        state: EscrowState,
        transaction_type: EscrowTransactionType,
        stage: EscrowStage,
        to_stage: EscrowStage,
        amount: Decimal,
        reference_id: str,
        notes: Optional[str],
    ) -> EscrowHistoryEntry:
        return EscrowHistoryEntry(
            entry_id=f"esh_{uuid.uuid4().hex[:12]}",
            order_id=state.order_id,
            transaction_type=transaction_type,
            stage=stage,
            from_stage=state.stage,
            to_stage=to_stage,
            amount=amount,
            reference_id=reference_id,
            notes=notes,
            recorded_at=self._clock(),
        )

    def _publish_releases(self, state: EscrowState, entries: list[EscrowHistoryEntry]) -> None:
        for entry in entries:
            if entry.transaction_type != "RELEASE":
                continue
            logger.info(
                "Escrow stage released. OrderID=%s Stage=%s Amount=%s NewStage=%s",
                state.order_id,
                entry.stage,
                entry.amount,
                entry.to_stage,
            )
            publish_event(
                self._event_publisher,
                build_event(
                    event_type="StageReleased",
                    order_id=state.order_id,
                    occurred_at=entry.recorded_at,
                    payload={
                        "stage": entry.stage,
                        "amount": str(entry.amount),
                        "new_stage": entry.to_stage,
                        "reference_id": entry.reference_id,
                        "balance": str(state.balance),
                    },
                ),
            )

    def _existing_or_conflict(
        self, existing: EscrowState, breakdown: EscrowBreakdown
    ) -> EscrowState:
        if (
            existing.total_amount == breakdown.total_amount
            and existing.policy_id == breakdown.policy_id
        ):
            return existing
        raise EscrowAlreadyInitializedError(
            "ESCROW_ALREADY_INITIALIZED: order escrow exists with different terms"
        )

    def _require_state(self, order_id: str) -> EscrowState:
        state = self._repository.get_state(order_id=order_id)
        if state is None:
            raise EscrowNotFoundError("ESCROW_NOT_FOUND")
        return state


def _positive_amount(value: AmountLike, *, field: str) -> Decimal:
    try:
        amount = to_amount(value)
    except ValueError as exc:
        raise InvalidAmountError(f"INVALID_AMOUNT: {field} is not a number") from exc
    if amount <= 0:
        raise InvalidAmountError(f"INVALID_AMOUNT: {field} must be positive")
    return amount


def _set_stage_paid(state: EscrowState, stage: EscrowStage, value: Decimal) -> None:
    if stage == "DEPOSIT":
        state.deposit_paid = value
    elif stage == "FITTING":
        state.fitting_paid = value
    elif stage == "FINAL":
        state.final_paid = value


def _allocate_refund(state: EscrowState, refund: Decimal) -> None:
    # Later stages absorb the refund first so the active stage stays payable.
    released = {
        entry.stage for entry in state.stage_history if entry.transaction_type == "RELEASE"
    }
    remaining = refund
    for stage in reversed(PAYABLE_STAGES):
        if stage in released or remaining <= _ZERO:
            continue
        take = min(stage_releasable(state, stage), remaining)
        if take > _ZERO:
            state.stage_refunds[stage] = state.stage_refunds.get(stage, _ZERO) + take
            remaining -= take
        if stage_releasable(state, stage) == _ZERO and stage not in state.refunded_stages:
            state.refunded_stages.append(stage)
    if remaining > _ZERO:
        raise LedgerInvariantError(
            f"LEDGER_INVARIANT_VIOLATION: refund {refund} not covered by unreleased stages"
        )


def _find_entry(
    state: EscrowState,
    *,
    transaction_type: EscrowTransactionType,
    reference_id: Optional[str] = None,
    stage: Optional[EscrowStage] = None,
) -> Optional[EscrowHistoryEntry]:
    for entry in state.stage_history:
        if entry.transaction_type != transaction_type:
            continue
        if reference_id is not None and entry.reference_id != reference_id:
            continue
        if stage is not None and entry.stage != stage:
            continue
        return entry
    return None


def _find_resolution_entry(state: EscrowState, dispute_id: str) -> Optional[EscrowHistoryEntry]:
    for entry in state.stage_history:
        if entry.transaction_type in {"REFUND", "RESOLUTION_NOTE"} and (
            entry.reference_id == dispute_id
        ):
            return entry
    return None


def _invariant_violations(state: EscrowState) -> list[str]:
    errors: list[str] = []
    allocated = state.deposit_amount + state.fitting_amount + state.final_amount
    if allocated != state.total_amount:
        errors.append(f"ALLOCATION_MISMATCH: {allocated} != {state.total_amount}")
    for stage in PAYABLE_STAGES:
        paid = stage_paid(state, stage)
        if paid < _ZERO or exceeds_with_tolerance(paid, stage_allocation(state, stage)):
            errors.append(f"PAID_OUT_OF_RANGE: {stage} {paid}")
    expected_balance = state.total_amount - state.released_amount - state.refunded_amount
    if state.balance != expected_balance:
        errors.append(f"BALANCE_MISMATCH: {state.balance} != {expected_balance}")
    if state.balance < _ZERO:
        errors.append(f"NEGATIVE_BALANCE: {state.balance}")
    return errors


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
