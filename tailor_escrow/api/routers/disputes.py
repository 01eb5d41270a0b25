from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from tailor_escrow.api.request_models import (
    DisputeAssignRequest,
    DisputeCloseRequest,
    DisputeEscalateRequest,
    DisputeOpenRequest,
    DisputePriorityRequest,
    DisputeResolveRequest,
)
from tailor_escrow.api.routers.escrow_runtime import get_dispute_service
from tailor_escrow.api.routers.http_errors import raise_escrow_http_exception
from tailor_escrow.core.disputes import (
    DisputeEscalationService,
    DisputeRecord,
    DisputeResolutionRecord,
    DisputeResolutionResult,
)
from tailor_escrow.core.disputes.models import DisputeStatus
from tailor_escrow.core.errors import EscrowEngineError

router = APIRouter(tags=["Disputes"])

DisputeIdPath = Annotated[
    str,
    Path(description="Dispute identifier.", examples=["dsp_001"]),
]


@router.post(
    "/disputes",
    response_model=DisputeRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Open Dispute",
    description=(
        "Opens a dispute with a category-derived priority and SLA deadline. Opening a "
        "dispute for a milestone that already has one returns the existing dispute."
    ),
)
def open_dispute(
    payload: DisputeOpenRequest,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeRecord:
    try:
        return service.open_dispute(
            order_id=payload.order_id,
            created_by=payload.created_by,
            category=payload.category,
            title=payload.title,
            description=payload.description,
            milestone_id=payload.milestone_id,
            priority=payload.priority,
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.get(
    "/disputes",
    response_model=list[DisputeRecord],
    status_code=status.HTTP_200_OK,
    summary="List Disputes",
)
def list_disputes(
    order_id: Annotated[
        Optional[str], Query(description="Order filter.", examples=["ord_001"])
    ] = None,
    dispute_status: Annotated[
        Optional[DisputeStatus],
        Query(alias="status", description="Status filter.", examples=["OPEN"]),
    ] = None,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> list[DisputeRecord]:
    return service.list_disputes(order_id=order_id, status=dispute_status)


@router.get(
    "/disputes/overdue",
    response_model=list[DisputeRecord],
    status_code=status.HTTP_200_OK,
    summary="List Overdue Disputes",
    description="Active disputes past their SLA deadline, most overdue first.",
)
def list_overdue_disputes(
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> list[DisputeRecord]:
    return service.list_overdue()


@router.get(
    "/disputes/{dispute_id}",
    response_model=DisputeRecord,
    status_code=status.HTTP_200_OK,
    summary="Get Dispute",
)
def get_dispute(
    dispute_id: DisputeIdPath,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeRecord:
    try:
        return service.get_dispute(dispute_id=dispute_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.get(
    "/disputes/{dispute_id}/resolution",
    response_model=DisputeResolutionRecord,
    status_code=status.HTTP_200_OK,
    summary="Get Dispute Resolution",
)
def get_dispute_resolution(
    dispute_id: DisputeIdPath,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeResolutionRecord:
    try:
        return service.get_resolution(dispute_id=dispute_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/disputes/{dispute_id}/assign",
    response_model=DisputeRecord,
    status_code=status.HTTP_200_OK,
    summary="Assign Dispute Admin",
)
def assign_dispute(
    dispute_id: DisputeIdPath,
    payload: DisputeAssignRequest,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeRecord:
    try:
        return service.assign_admin(dispute_id=dispute_id, admin_id=payload.admin_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/disputes/{dispute_id}/priority",
    response_model=DisputeRecord,
    status_code=status.HTTP_200_OK,
    summary="Override Dispute Priority",
)
def update_dispute_priority(
    dispute_id: DisputeIdPath,
    payload: DisputePriorityRequest,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeRecord:
    try:
        return service.update_priority(
            dispute_id=dispute_id, priority=payload.priority, actor_id=payload.actor_id
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/disputes/{dispute_id}/escalate",
    response_model=DisputeRecord,
    status_code=status.HTTP_200_OK,
    summary="Escalate Dispute",
)
def escalate_dispute(
    dispute_id: DisputeIdPath,
    payload: DisputeEscalateRequest,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeRecord:
    try:
        return service.escalate(
            dispute_id=dispute_id, actor_id=payload.actor_id, reason=payload.reason
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/disputes/{dispute_id}/resolve",
    response_model=DisputeResolutionResult,
    status_code=status.HTTP_200_OK,
    summary="Resolve Dispute",
    description=(
        "Resolves an assigned or escalated dispute. Refund resolutions reduce the escrow "
        "balance; completion and no-action resolutions leave it unchanged."
    ),
)
def resolve_dispute(
    dispute_id: DisputeIdPath,
    payload: DisputeResolveRequest,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeResolutionResult:
    try:
        return service.resolve(
            dispute_id=dispute_id,
            resolution_type=payload.resolution_type,
            outcome=payload.outcome,
            resolved_by=payload.resolved_by,
            refund_amount=payload.refund_amount,
            admin_notes=payload.admin_notes,
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/disputes/{dispute_id}/close",
    response_model=DisputeRecord,
    status_code=status.HTTP_200_OK,
    summary="Close Dispute",
)
def close_dispute(
    dispute_id: DisputeIdPath,
    payload: DisputeCloseRequest,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeRecord:
    try:
        return service.close(
            dispute_id=dispute_id, actor_id=payload.actor_id, reason=payload.reason
        )
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/disputes/{dispute_id}/refund-processed",
    response_model=DisputeResolutionRecord,
    status_code=status.HTTP_200_OK,
    summary="Confirm Refund Settlement",
    description="Called by the payment layer once a refund resolution has been paid out.",
)
def mark_refund_processed(
    dispute_id: DisputeIdPath,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeResolutionRecord:
    try:
        return service.mark_refund_processed(dispute_id=dispute_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)


@router.post(
    "/disputes/{dispute_id}/reapply-resolution",
    response_model=DisputeResolutionResult,
    status_code=status.HTTP_200_OK,
    summary="Reapply Dispute Resolution",
    description=(
        "Completes a resolution left without a resolution record. The escrow ledger "
        "applies each dispute's money consequence at most once."
    ),
)
def reapply_dispute_resolution(
    dispute_id: DisputeIdPath,
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> DisputeResolutionResult:
    try:
        return service.reapply_resolution(dispute_id=dispute_id)
    except EscrowEngineError as exc:
        raise_escrow_http_exception(exc)
