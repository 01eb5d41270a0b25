from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from tailor_escrow.core.disputes.models import DisputeRecord
from tailor_escrow.core.escrow.models import EscrowState, PayableStage

MilestoneStage = Literal[
    "FABRIC_SELECTED",
    "CUTTING_STARTED",
    "INITIAL_ASSEMBLY",
    "FITTING_READY",
    "ADJUSTMENTS_COMPLETE",
    "FINAL_PRESSING",
    "READY_FOR_DELIVERY",
]
MilestoneApprovalStatus = Literal["PENDING", "APPROVED", "REJECTED", "AUTO_APPROVED"]
MilestoneApprovalAction = Literal["APPROVED", "REJECTED", "AUTO_APPROVED"]
EvidenceMimeType = Literal["image/jpeg", "image/png", "image/webp"]

MILESTONE_SEQUENCE: tuple[MilestoneStage, ...] = (
    "FABRIC_SELECTED",
    "CUTTING_STARTED",
    "INITIAL_ASSEMBLY",
    "FITTING_READY",
    "ADJUSTMENTS_COMPLETE",
    "FINAL_PRESSING",
    "READY_FOR_DELIVERY",
)
MILESTONE_RELEASE_STAGES: dict[str, PayableStage] = {
    "FITTING_READY": "FITTING",
    "READY_FOR_DELIVERY": "FINAL",
}
APPROVED_STATUSES = {"APPROVED", "AUTO_APPROVED"}
SUPPORTED_EVIDENCE_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}
MAX_NOTES_LENGTH = 1000
MAX_REJECTION_REASON_LENGTH = 500
DEFAULT_AUTO_APPROVAL_WINDOW_HOURS = 48


class Milestone(BaseModel):
    milestone_id: str = Field(description="Milestone identifier.", examples=["mil_001"])
    order_id: str = Field(description="Order identifier.", examples=["ord_001"])
    stage: MilestoneStage = Field(description="Production stage.", examples=["FITTING_READY"])
    attempt_no: int = Field(
        default=1, description="Submission attempt for this stage.", examples=[1]
    )
    evidence_url: str = Field(
        description="Photo evidence URL.", examples=["https://cdn.example.com/m/001.jpg"]
    )
    evidence_mime_type: EvidenceMimeType = Field(
        default="image/jpeg", description="Declared evidence MIME type.", examples=["image/jpeg"]
    )
    notes: Optional[str] = Field(
        default=None, description="Tailor notes.", examples=["Jacket basted for fitting"]
    )
    verified_at: datetime = Field(
        description="Evidence submission time.", examples=["2026-03-01T10:00:00+00:00"]
    )
    verified_by: str = Field(description="Submitting tailor.", examples=["tailor_01"])
    auto_approval_deadline: datetime = Field(
        description="Time after which the milestone may be auto-approved.",
        examples=["2026-03-03T10:00:00+00:00"],
    )
    approval_status: MilestoneApprovalStatus = Field(
        default="PENDING", description="Customer decision status.", examples=["PENDING"]
    )
    customer_reviewed_at: Optional[datetime] = Field(
        default=None, examples=["2026-03-02T09:00:00+00:00"]
    )
    reviewed_by: Optional[str] = Field(default=None, examples=["customer_01"])
    rejection_reason: Optional[str] = Field(default=None, examples=["Sleeves too long"])
    dispute_id: Optional[str] = Field(
        default=None, description="Dispute opened by a rejection.", examples=["dsp_001"]
    )
    created_at: datetime = Field(examples=["2026-03-01T10:00:00+00:00"])
    updated_at: datetime = Field(examples=["2026-03-01T10:00:00+00:00"])


class MilestoneApprovalRecord(BaseModel):
    approval_id: str = Field(description="Approval audit identifier.", examples=["mapr_001"])
    milestone_id: str = Field(description="Milestone identifier.", examples=["mil_001"])
    order_id: str = Field(description="Order identifier.", examples=["ord_001"])
    actor_id: str = Field(description="Deciding actor.", examples=["customer_01"])
    action: MilestoneApprovalAction = Field(description="Decision.", examples=["APPROVED"])
    comment: Optional[str] = Field(default=None, examples=["Looks great"])
    decided_at: datetime = Field(examples=["2026-03-02T09:00:00+00:00"])


class ApprovalResult(BaseModel):
    milestone: Milestone
    approval: Optional[MilestoneApprovalRecord] = None
    applied: bool = Field(
        default=True, description="False when the call changed nothing.", examples=[True]
    )
    release_stage: Optional[PayableStage] = Field(
        default=None, description="Escrow stage released by the decision.", examples=["FITTING"]
    )
    escrow_state: Optional[EscrowState] = None
    dispute: Optional[DisputeRecord] = Field(
        default=None, description="Dispute opened by a rejection."
    )
    payment_triggered: bool = Field(
        default=False, description="True when an escrow release was committed.", examples=[True]
    )


class MilestoneProgress(BaseModel):
    order_id: str = Field(examples=["ord_001"])
    completed_stages: List[MilestoneStage] = Field(default_factory=list)
    current_stage: Optional[MilestoneStage] = Field(
        default=None, description="Latest submitted stage.", examples=["FITTING_READY"]
    )
    current_status: Optional[MilestoneApprovalStatus] = Field(default=None, examples=["PENDING"])
    next_stage: Optional[MilestoneStage] = Field(
        default=None, description="Stage the tailor may submit next.", examples=[None]
    )
    percent_complete: int = Field(examples=[43])


class AutoApprovalError(BaseModel):
    milestone_id: str = Field(examples=["mil_001"])
    error: str = Field(examples=["PROVIDER_CONFIRMATION_MISSING: FITTING capture not confirmed"])


class AutoApprovalSweepResult(BaseModel):
    processed: int = Field(default=0, examples=[3])
    auto_approved: int = Field(default=0, examples=[2])
    skipped: int = Field(default=0, examples=[0])
    failed: int = Field(default=0, examples=[1])
    approved_milestone_ids: List[str] = Field(default_factory=list, examples=[["mil_001"]])
    errors: List[AutoApprovalError] = Field(default_factory=list)
