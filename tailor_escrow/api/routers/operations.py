import hmac
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from tailor_escrow.api.routers.escrow_config import cron_secret
from tailor_escrow.api.routers.escrow_runtime import (
    get_auto_approval_scheduler,
    get_dispute_service,
)
from tailor_escrow.core.disputes import DisputeEscalationService, SlaWarningSweepResult
from tailor_escrow.core.milestones import AutoApprovalScheduler, AutoApprovalSweepResult

router = APIRouter(tags=["Operations"])

logger = logging.getLogger(__name__)


def require_cron_authorization(
    authorization: Annotated[
        Optional[str],
        Header(
            description="Bearer token matching the configured CRON_SECRET.",
            examples=["Bearer change-me"],
        ),
    ] = None,
) -> None:
    secret = cron_secret()
    if not secret:
        logger.error("CRON_SECRET is not configured; rejecting scheduled job call")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="CRON_UNAUTHORIZED")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not hmac.compare_digest(token.strip(), secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="CRON_UNAUTHORIZED")


@router.post(
    "/internal/cron/auto-approve-milestones",
    response_model=AutoApprovalSweepResult,
    status_code=status.HTTP_200_OK,
    summary="Run Milestone Auto-Approval Sweep",
    description=(
        "Auto-approves pending milestones whose customer review window has expired and "
        "releases the mapped escrow stages. Per-milestone failures are reported, not raised."
    ),
    dependencies=[Depends(require_cron_authorization)],
)
def run_auto_approval_sweep(
    scheduler: AutoApprovalScheduler = Depends(get_auto_approval_scheduler),
) -> AutoApprovalSweepResult:
    return scheduler.run_sweep()


@router.post(
    "/internal/cron/dispute-sla-warnings",
    response_model=SlaWarningSweepResult,
    status_code=status.HTTP_200_OK,
    summary="Run Dispute SLA Warning Sweep",
    description="Emits one SLA warning per threshold (24h, 6h, 1h) for active disputes.",
    dependencies=[Depends(require_cron_authorization)],
)
def run_sla_warning_sweep(
    service: DisputeEscalationService = Depends(get_dispute_service),
) -> SlaWarningSweepResult:
    return service.sla_warning_sweep()


@router.get("/health", status_code=status.HTTP_200_OK, summary="Liveness Check")
def health() -> dict[str, str]:
    return {"status": "ok"}
