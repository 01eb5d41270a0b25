from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from tailor_escrow.core.disputes.models import (
    DisputeCategory,
    DisputePriority,
    DisputeResolutionType,
)
from tailor_escrow.core.escrow.models import PayableStage
from tailor_escrow.core.milestones.models import MilestoneStage


class EscrowInitializeRequest(BaseModel):
    total_amount: Decimal = Field(
        description="Order total to hold in escrow.", examples=["1000.00"]
    )
    order_class: Optional[str] = Field(
        default=None,
        description="Order class selecting a configured split policy; STANDARD when omitted.",
        examples=["STANDARD"],
    )


class PaymentCaptureRequest(BaseModel):
    stage: PayableStage = Field(
        description="Stage the captured funds belong to.", examples=["DEPOSIT"]
    )
    amount: Decimal = Field(description="Captured amount.", examples=["250.00"])
    provider_reference: str = Field(
        description="Payment provider confirmation reference.", examples=["mm_tx_0001"]
    )


class MilestoneSubmitRequest(BaseModel):
    stage: MilestoneStage = Field(examples=["FABRIC_SELECTED"])
    evidence_url: str = Field(
        description="Photo evidence URL.", examples=["https://cdn.example.com/m/001.jpg"]
    )
    submitted_by: str = Field(description="Submitting tailor id.", examples=["tailor_01"])
    notes: Optional[str] = Field(default=None, examples=["Fabric swatch attached"])
    mime_type: str = Field(default="image/jpeg", examples=["image/jpeg"])


class MilestoneApproveRequest(BaseModel):
    actor_id: str = Field(description="Approving customer id.", examples=["customer_01"])
    comment: Optional[str] = Field(default=None, examples=["Looks great"])


class MilestoneRejectRequest(BaseModel):
    actor_id: str = Field(description="Rejecting customer id.", examples=["customer_01"])
    reason: str = Field(description="Rejection reason.", examples=["Sleeves too long"])


class DisputeOpenRequest(BaseModel):
    order_id: str = Field(examples=["ord_001"])
    created_by: str = Field(examples=["customer_01"])
    category: DisputeCategory = Field(examples=["QUALITY_ISSUE"])
    title: str = Field(examples=["Stitching coming apart"])
    description: str = Field(examples=["Seams on the left sleeve opened after one wear"])
    milestone_id: Optional[str] = Field(default=None, examples=[None])
    priority: Optional[DisputePriority] = Field(
        default=None,
        description="Override for the category's suggested priority.",
        examples=[None],
    )


class DisputeAssignRequest(BaseModel):
    admin_id: str = Field(examples=["admin_01"])


class DisputePriorityRequest(BaseModel):
    priority: DisputePriority = Field(examples=["CRITICAL"])
    actor_id: str = Field(examples=["admin_01"])


class DisputeEscalateRequest(BaseModel):
    actor_id: str = Field(examples=["admin_01"])
    reason: Optional[str] = Field(default=None, examples=["Tailor unresponsive"])


class DisputeResolveRequest(BaseModel):
    resolution_type: DisputeResolutionType = Field(examples=["PARTIAL_REFUND"])
    outcome: str = Field(examples=["Refund fitting share, tailor redoes sleeves"])
    resolved_by: str = Field(examples=["admin_01"])
    refund_amount: Optional[Decimal] = Field(default=None, examples=["250.00"])
    admin_notes: Optional[str] = Field(default=None, examples=[None])


class DisputeCloseRequest(BaseModel):
    actor_id: str = Field(examples=["admin_01"])
    reason: Optional[str] = Field(default=None, examples=["Customer withdrew complaint"])
