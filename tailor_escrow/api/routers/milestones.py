from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Path, status

from tailor_escrow.api.request_models import (
    MilestoneApproveRequest,
    MilestoneRejectRequest,
    MilestoneSubmitRequest,
)
from tailor_escrow.api.routers.escrow_runtime import (
    get_approval_state_machine,
    get_milestone_tracker,
)
from tailor_escrow.api.routers.http_errors import raise_escrow_http_exception
from tailor_escrow.core.errors import EscrowEngineError
from tailor_escrow.core.escrow import EscrowState
from tailor_escrow.core.milestones import (
    ApprovalResult,
    ApprovalStateMachine,
    Milestone,
    MilestoneApprovalRecord,
    MilestoneProgress,
    MilestoneTracker,
)

router = APIRouter(tags=["Milestones"])

OrderIdPath = Annotated[
    str,
    Path(description="Order identifier.", examples=["ord_001"]),
]
MilestoneIdPath = Annotated[
    str,
    Path(description="Milestone identifier.", examples=["mil_001"]),
]


@router.post(
    "/orders/{order_id}/milestones",
    response_model=Milestone,
    status_code=status.HTTP_201_CREATED,
    summary="Submit Milestone Evidence",
    description=(
        "Records photo evidence for the next production stage and starts the customer "
        "review window."
    ),
)
def submit_milestone(
    order_id: OrderIdPath,
    payload: MilestoneSubmitRequest,
    tracker: MilestoneTracker = Depends(get_milestone_tracker),
) -> Milestone:
    try:
        return tracker.submit_evidence(
            order_id=order_id,
            stage=payload.stage,
            evidence_url=payload.evidence_url,
            submitted_by=payload.submitted_by,
            notes=payload.notes,
            mime_type=payload.mime_type,
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.get(
    "/orders/{order_id}/milestones",
    response_model=list[Milestone],
    status_code=status.HTTP_200_OK,
    summary="List Order Milestones",
)
def list_milestones(
    order_id: OrderIdPath,
    tracker: MilestoneTracker = Depends(get_milestone_tracker),
) -> list[Milestone]:
    return tracker.list_milestones(order_id=order_id)


@router.get(
    "/orders/{order_id}/milestones/pending",
    response_model=Optional[Milestone],
    status_code=status.HTTP_200_OK,
    summary="Get Milestone Awaiting Customer Review",
)
def get_pending_milestone(
    order_id: OrderIdPath,
    tracker: MilestoneTracker = Depends(get_milestone_tracker),
) -> Optional[Milestone]:
    return tracker.get_pending_for_customer(order_id=order_id)


@router.get(
    "/orders/{order_id}/milestones/progress",
    response_model=MilestoneProgress,
    status_code=status.HTTP_200_OK,
    summary="Get Production Progress",
)
def get_milestone_progress(
    order_id: OrderIdPath,
    tracker: MilestoneTracker = Depends(get_milestone_tracker),
) -> MilestoneProgress:
    return tracker.get_progress(order_id=order_id)


@router.post(
    "/orders/{order_id}/milestones/reconcile-releases",
    response_model=EscrowState,
    status_code=status.HTTP_200_OK,
    summary="Reconcile Milestone Releases",
    description=(
        "Re-issues escrow releases for approved gating milestones whose release did not "
        "complete, for example because the stage capture arrived after the approval."
    ),
)
def reconcile_milestone_releases(
    order_id: OrderIdPath,
    approvals: ApprovalStateMachine = Depends(get_approval_state_machine),
) -> EscrowState:
    try:
        return approvals.reconcile_releases(order_id=order_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.get(
    "/milestones/{milestone_id}",
    response_model=Milestone,
    status_code=status.HTTP_200_OK,
    summary="Get Milestone",
)
def get_milestone(
    milestone_id: MilestoneIdPath,
    tracker: MilestoneTracker = Depends(get_milestone_tracker),
) -> Milestone:
    try:
        return tracker.get_milestone(milestone_id=milestone_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.get(
    "/milestones/{milestone_id}/approvals",
    response_model=list[MilestoneApprovalRecord],
    status_code=status.HTTP_200_OK,
    summary="List Milestone Decisions",
)
def list_milestone_approvals(
    milestone_id: MilestoneIdPath,
    tracker: MilestoneTracker = Depends(get_milestone_tracker),
) -> list[MilestoneApprovalRecord]:
    try:
        return tracker.list_approvals(milestone_id=milestone_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/milestones/{milestone_id}/approve",
    response_model=ApprovalResult,
    status_code=status.HTTP_200_OK,
    summary="Approve Milestone",
    description=(
        "Approves a pending milestone. FITTING_READY releases the fitting share and "
        "READY_FOR_DELIVERY releases the final share."
    ),
)
def approve_milestone(
    milestone_id: MilestoneIdPath,
    payload: MilestoneApproveRequest,
    approvals: ApprovalStateMachine = Depends(get_approval_state_machine),
) -> ApprovalResult:
    try:
        return approvals.approve(
            milestone_id=milestone_id, actor_id=payload.actor_id, comment=payload.comment
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/milestones/{milestone_id}/reject",
    response_model=ApprovalResult,
    status_code=status.HTTP_200_OK,
    summary="Reject Milestone",
    description="Rejects a pending milestone and opens a milestone-rejection dispute.",
)
def reject_milestone(
    milestone_id: MilestoneIdPath,
    payload: MilestoneRejectRequest,
    approvals: ApprovalStateMachine = Depends(get_approval_state_machine),
) -> ApprovalResult:
    try:
        return approvals.reject(
            milestone_id=milestone_id, actor_id=payload.actor_id, reason=payload.reason
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)
