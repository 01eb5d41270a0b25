from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

EscrowStage = Literal["DEPOSIT", "FITTING", "FINAL", "RELEASED", "REFUNDED"]
PayableStage = Literal["DEPOSIT", "FITTING", "FINAL"]
EscrowTransactionType = Literal["PAYMENT", "RELEASE", "REFUND", "RESOLUTION_NOTE"]
LedgerResolutionType = Literal["FULL_REFUND", "PARTIAL_REFUND", "ORDER_COMPLETION", "NO_ACTION"]

STAGE_SEQUENCE: tuple[EscrowStage, ...] = ("DEPOSIT", "FITTING", "FINAL", "RELEASED")
PAYABLE_STAGES: tuple[PayableStage, ...] = ("DEPOSIT", "FITTING", "FINAL")
REFUND_RESOLUTION_TYPES = {"FULL_REFUND", "PARTIAL_REFUND"}


class EscrowSplitPolicy(BaseModel):
    policy_id: str = Field(
        default="STANDARD",
        description="Order-class split policy identifier.",
        examples=["STANDARD"],
    )
    deposit_ratio: Decimal = Field(
        default=Decimal("0.25"), description="Share of total held as deposit.", examples=["0.25"]
    )
    fitting_ratio: Decimal = Field(
        default=Decimal("0.50"),
        description="Share of total released on fitting approval.",
        examples=["0.50"],
    )
    final_ratio: Decimal = Field(
        default=Decimal("0.25"),
        description="Share of total released on delivery approval.",
        examples=["0.25"],
    )
    min_total: Decimal = Field(
        default=Decimal("30.00"), description="Minimum accepted order total.", examples=["30.00"]
    )
    max_total: Decimal = Field(
        default=Decimal("100000.00"),
        description="Maximum accepted order total.",
        examples=["100000.00"],
    )

    @model_validator(mode="after")
    def _validate_ratios(self) -> "EscrowSplitPolicy":
        ratios = (self.deposit_ratio, self.fitting_ratio, self.final_ratio)
        if any(ratio < 0 or ratio > 1 for ratio in ratios):
            raise ValueError("split ratios must be between 0 and 1")
        if sum(ratios) != Decimal("1"):
            raise ValueError("split ratios must sum to 1")
        if self.min_total <= 0 or self.max_total < self.min_total:
            raise ValueError("min_total must be positive and not above max_total")
        return self


class EscrowBreakdown(BaseModel):
    total_amount: Decimal = Field(description="Order total.", examples=["1000.00"])
    deposit_amount: Decimal = Field(description="Deposit share.", examples=["250.00"])
    fitting_amount: Decimal = Field(description="Fitting share.", examples=["500.00"])
    final_amount: Decimal = Field(description="Final share.", examples=["250.00"])
    policy_id: str = Field(description="Split policy applied.", examples=["STANDARD"])


class EscrowHistoryEntry(BaseModel):
    entry_id: str = Field(description="History entry identifier.", examples=["esh_001"])
    order_id: str = Field(description="Order identifier.", examples=["ord_001"])
    transaction_type: EscrowTransactionType = Field(
        description="Ledger transaction type.", examples=["RELEASE"]
    )
    stage: EscrowStage = Field(
        description="Stage the transaction applies to.", examples=["FITTING"]
    )
    from_stage: EscrowStage = Field(description="Ledger stage before.", examples=["FITTING"])
    to_stage: EscrowStage = Field(description="Ledger stage after.", examples=["FINAL"])
    amount: Decimal = Field(description="Amount moved by the entry.", examples=["500.00"])
    reference_id: str = Field(
        description="Provider reference, approval id, or dispute id.", examples=["mapr_001"]
    )
    notes: Optional[str] = Field(
        default=None, description="Free-text audit note.", examples=["Fitting approved"]
    )
    recorded_at: datetime = Field(
        description="UTC timestamp of the entry.", examples=["2026-03-01T10:00:00+00:00"]
    )


class EscrowState(BaseModel):
    order_id: str = Field(description="Order identifier.", examples=["ord_001"])
    policy_id: str = Field(description="Split policy applied.", examples=["STANDARD"])
    total_amount: Decimal = Field(description="Order total.", examples=["1000.00"])
    stage: EscrowStage = Field(description="Current escrow stage.", examples=["DEPOSIT"])
    deposit_amount: Decimal = Field(description="Deposit allocation.", examples=["250.00"])
    fitting_amount: Decimal = Field(description="Fitting allocation.", examples=["500.00"])
    final_amount: Decimal = Field(description="Final allocation.", examples=["250.00"])
    deposit_paid: Decimal = Field(default=Decimal("0.00"), examples=["0.00"])
    fitting_paid: Decimal = Field(default=Decimal("0.00"), examples=["0.00"])
    final_paid: Decimal = Field(default=Decimal("0.00"), examples=["0.00"])
    released_amount: Decimal = Field(
        default=Decimal("0.00"), description="Sum released to the tailor.", examples=["250.00"]
    )
    refunded_amount: Decimal = Field(
        default=Decimal("0.00"), description="Sum refunded to the customer.", examples=["0.00"]
    )
    balance: Decimal = Field(
        description="Total minus released and refunded amounts.", examples=["750.00"]
    )
    stage_refunds: Dict[str, Decimal] = Field(
        default_factory=dict,
        description="Refunded amount per payable stage.",
        examples=[{"FINAL": "250.00"}],
    )
    refunded_stages: List[EscrowStage] = Field(
        default_factory=list,
        description="Stages whose unreleased allocation was fully refunded.",
        examples=[["FINAL"]],
    )
    version: int = Field(default=1, description="Optimistic concurrency version.", examples=[1])
    created_at: datetime = Field(examples=["2026-03-01T10:00:00+00:00"])
    updated_at: datetime = Field(examples=["2026-03-01T10:00:00+00:00"])
    stage_history: List[EscrowHistoryEntry] = Field(
        default_factory=list, description="Append-only ledger history."
    )


class EscrowReconciliationReport(BaseModel):
    order_id: str = Field(description="Order identifier.", examples=["ord_001"])
    is_valid: bool = Field(description="True when every ledger invariant holds.", examples=[True])
    errors: List[str] = Field(
        default_factory=list,
        description="Invariant violations found.",
        examples=[["BALANCE_MISMATCH: 740.00 != 750.00"]],
    )
