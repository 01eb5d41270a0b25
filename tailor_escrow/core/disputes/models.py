from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from tailor_escrow.core.escrow.models import EscrowState

DisputeCategory = Literal[
    "QUALITY_ISSUE",
    "DELIVERY_DELAY",
    "PAYMENT_PROBLEM",
    "COMMUNICATION_ISSUE",
    "MILESTONE_REJECTION",
    "OTHER",
]
DisputeStatus = Literal["OPEN", "IN_PROGRESS", "RESOLVED", "CLOSED", "ESCALATED"]
DisputePriority = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
DisputeResolutionType = Literal["FULL_REFUND", "PARTIAL_REFUND", "ORDER_COMPLETION", "NO_ACTION"]

DISPUTE_CATEGORIES = {
    "QUALITY_ISSUE",
    "DELIVERY_DELAY",
    "PAYMENT_PROBLEM",
    "COMMUNICATION_ISSUE",
    "MILESTONE_REJECTION",
    "OTHER",
}
DISPUTE_PRIORITIES = {"LOW", "MEDIUM", "HIGH", "CRITICAL"}
MIN_TITLE_LENGTH = 5
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
MAX_ADMIN_NOTES_LENGTH = 1000


class DisputeRecord(BaseModel):
    dispute_id: str = Field(description="Dispute identifier.", examples=["dsp_001"])
    order_id: str = Field(description="Order identifier.", examples=["ord_001"])
    milestone_id: Optional[str] = Field(
        default=None, description="Milestone whose rejection opened the dispute.",
        examples=["mil_001"],
    )
    created_by: str = Field(description="Actor that opened the dispute.", examples=["customer_01"])
    category: DisputeCategory = Field(examples=["MILESTONE_REJECTION"])
    title: str = Field(examples=["FITTING_READY milestone rejected"])
    description: str = Field(examples=["Sleeves too long"])
    status: DisputeStatus = Field(default="OPEN", examples=["OPEN"])
    priority: DisputePriority = Field(examples=["HIGH"])
    assigned_admin: Optional[str] = Field(default=None, examples=["admin_01"])
    sla_deadline: datetime = Field(
        description="Resolution deadline derived from priority.",
        examples=["2026-03-03T10:00:00+00:00"],
    )
    sla_warnings_sent: List[int] = Field(
        default_factory=list,
        description="Warning thresholds (hours before deadline) already emitted.",
        examples=[[24]],
    )
    resolution_type: Optional[DisputeResolutionType] = Field(default=None, examples=[None])
    resolution_outcome: Optional[str] = Field(default=None, examples=[None])
    refund_amount: Optional[Decimal] = Field(default=None, examples=[None])
    resolved_by: Optional[str] = Field(default=None, examples=[None])
    resolved_at: Optional[datetime] = Field(default=None, examples=[None])
    escalated_at: Optional[datetime] = Field(default=None, examples=[None])
    closed_at: Optional[datetime] = Field(default=None, examples=[None])
    created_at: datetime = Field(examples=["2026-03-02T10:00:00+00:00"])
    updated_at: datetime = Field(examples=["2026-03-02T10:00:00+00:00"])
    version: int = Field(
        default=1,
        description="Optimistic concurrency token, incremented on every update.",
        examples=[1],
    )


class DisputeResolutionRecord(BaseModel):
    resolution_id: str = Field(description="Resolution identifier.", examples=["dres_001"])
    dispute_id: str = Field(examples=["dsp_001"])
    resolution_type: DisputeResolutionType = Field(examples=["PARTIAL_REFUND"])
    outcome: str = Field(
        description="Human-readable decision summary.", examples=["Refund half of fitting"]
    )
    refund_amount: Optional[Decimal] = Field(default=None, examples=["250.00"])
    reason_code: str = Field(
        description="Machine-readable reason derived from the resolution type.",
        examples=["PARTIAL_REFUND_GRANTED"],
    )
    admin_notes: Optional[str] = Field(default=None, examples=["Customer accepted rework"])
    customer_notified: bool = Field(default=False, examples=[False])
    tailor_notified: bool = Field(default=False, examples=[False])
    payment_processed: bool = Field(
        default=False,
        description="False until the payment layer confirms the refund settled.",
        examples=[False],
    )
    resolved_by: str = Field(examples=["admin_01"])
    resolved_at: datetime = Field(examples=["2026-03-02T12:00:00+00:00"])


class DisputeResolutionResult(BaseModel):
    dispute: DisputeRecord
    resolution: DisputeResolutionRecord
    escrow_state: Optional[EscrowState] = None


class SlaWarningSweepResult(BaseModel):
    processed: int = Field(default=0, examples=[4])
    warnings_emitted: int = Field(default=0, examples=[1])
    warned_dispute_ids: List[str] = Field(default_factory=list, examples=[["dsp_001"]])
