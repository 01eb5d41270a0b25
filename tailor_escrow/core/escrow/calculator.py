import json
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from tailor_escrow.core.common.money import AmountLike, quantize_amount, to_amount
from tailor_escrow.core.errors import InvalidAmountError, SplitPolicyNotFoundError
from tailor_escrow.core.escrow.models import (
    EscrowBreakdown,
    EscrowSplitPolicy,
    EscrowStage,
    EscrowState,
)

DEFAULT_SPLIT_POLICY = EscrowSplitPolicy()


def calculate_escrow_breakdown(
    total_amount: AmountLike, policy: Optional[EscrowSplitPolicy] = None
) -> EscrowBreakdown:
    """Split an order total into deposit, fitting and final shares.

    Deposit and the cumulative deposit-plus-fitting amount are rounded half-up to the
    currency minor unit and the final share absorbs the remainder, so the three shares
    always sum to the total exactly and none of them is negative.
    """
    resolved_policy = policy or DEFAULT_SPLIT_POLICY
    try:
        total = to_amount(total_amount)
    except ValueError as exc:
        raise InvalidAmountError("INVALID_AMOUNT: total amount is not a number") from exc
    if total <= 0:
        raise InvalidAmountError("INVALID_AMOUNT: total amount must be positive")
    if total < resolved_policy.min_total:
        raise InvalidAmountError(
            f"INVALID_AMOUNT: total below minimum {resolved_policy.min_total}"
        )
    if total > resolved_policy.max_total:
        raise InvalidAmountError(
            f"INVALID_AMOUNT: total above maximum {resolved_policy.max_total}"
        )

    deposit = quantize_amount(total * resolved_policy.deposit_ratio)
    through_fitting = quantize_amount(
        total * (resolved_policy.deposit_ratio + resolved_policy.fitting_ratio)
    )
    fitting = through_fitting - deposit
    final = total - deposit - fitting
    return EscrowBreakdown(
        total_amount=total,
        deposit_amount=deposit,
        fitting_amount=fitting,
        final_amount=final,
        policy_id=resolved_policy.policy_id,
    )


def stage_allocation(state: EscrowState, stage: EscrowStage) -> Decimal:
    if stage == "DEPOSIT":
        return state.deposit_amount
    if stage == "FITTING":
        return state.fitting_amount
    if stage == "FINAL":
        return state.final_amount
    return Decimal("0.00")


def stage_paid(state: EscrowState, stage: EscrowStage) -> Decimal:
    if stage == "DEPOSIT":
        return state.deposit_paid
    if stage == "FITTING":
        return state.fitting_paid
    if stage == "FINAL":
        return state.final_paid
    return Decimal("0.00")


def stage_releasable(state: EscrowState, stage: EscrowStage) -> Decimal:
    refunded = state.stage_refunds.get(stage, Decimal("0.00"))
    return stage_allocation(state, stage) - refunded


def parse_split_policy_catalog(catalog_json: Optional[str]) -> dict[str, EscrowSplitPolicy]:
    normalized_json = (catalog_json or "").strip()
    if not normalized_json:
        return {}
    try:
        raw = json.loads(normalized_json)
    except json.JSONDecodeError:
        return {}
    if not isinstance(raw, dict):
        return {}

    catalog: dict[str, EscrowSplitPolicy] = {}
    for policy_id, definition in raw.items():
        if not isinstance(policy_id, str) or not isinstance(definition, dict):
            continue
        normalized_id = policy_id.strip().upper()
        if not normalized_id:
            continue
        try:
            parsed = EscrowSplitPolicy.model_validate({**definition, "policy_id": normalized_id})
        except PydanticValidationError:
            continue
        catalog[normalized_id] = parsed
    return catalog


def resolve_split_policy(
    *, order_class: Optional[str], catalog: dict[str, EscrowSplitPolicy]
) -> EscrowSplitPolicy:
    if order_class is None:
        return catalog.get(DEFAULT_SPLIT_POLICY.policy_id, DEFAULT_SPLIT_POLICY)
    normalized = order_class.strip().upper()
    if normalized in catalog:
        return catalog[normalized]
    if normalized == DEFAULT_SPLIT_POLICY.policy_id:
        return DEFAULT_SPLIT_POLICY
    raise SplitPolicyNotFoundError(f"SPLIT_POLICY_NOT_FOUND: {normalized}")
