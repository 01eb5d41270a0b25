import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from tailor_escrow.core.errors import AlreadyDecidedError, MilestoneValidationError
from tailor_escrow.core.escrow.ledger import EscrowLedger
from tailor_escrow.core.escrow.models import EscrowStage, EscrowState
from tailor_escrow.core.events import EventPublisher, build_event, publish_event
from tailor_escrow.core.milestones.models import (
    APPROVED_STATUSES,
    MAX_REJECTION_REASON_LENGTH,
    MILESTONE_RELEASE_STAGES,
    MILESTONE_SEQUENCE,
    ApprovalResult,
    Milestone,
    MilestoneApprovalAction,
    MilestoneApprovalRecord,
)
from tailor_escrow.core.milestones.tracker import MilestoneTracker

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"


class DisputeOpener(Protocol):
    def open_dispute(
        self,
        *,
        order_id: str,
        created_by: str,
        category: str,
        title: str,
        description: str,
        milestone_id: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Any: ...


class ApprovalStateMachine:
    """Linearises customer and system decisions on a pending milestone.

    PENDING moves to exactly one of APPROVED, REJECTED or AUTO_APPROVED. The repository's
    compare-and-set on ``approval_status`` is the single point of arbitration, so a
    manual decision and an expired-window sweep can never both win.
    """

    def __init__(
        self,
        *,
        tracker: MilestoneTracker,
        ledger: EscrowLedger,
        disputes: Optional[DisputeOpener] = None,
        event_publisher: Optional[EventPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._tracker = tracker
        self._repository = tracker.repository
        self._ledger = ledger
        self._disputes = disputes
        self._event_publisher = event_publisher
        self._clock = clock or _utc_now

    def approve(
        self, *, milestone_id: str, actor_id: str, comment: Optional[str] = None
    ) -> ApprovalResult:
        if not (actor_id or "").strip():
            raise MilestoneValidationError("MILESTONE_ACTOR_REQUIRED")
        milestone = self._require_pending(milestone_id)
        decided, approval = self._decide(
            milestone=milestone,
            action="APPROVED",
            actor_id=actor_id,
            comment=comment,
            decided_at=self._clock(),
        )
        return self._release_for(decided, approval)

    def reject(self, *, milestone_id: str, actor_id: str, reason: str) -> ApprovalResult:
        normalized_reason = (reason or "").strip()
        if not (actor_id or "").strip():
            raise MilestoneValidationError("MILESTONE_ACTOR_REQUIRED")
        if not normalized_reason:
            raise MilestoneValidationError("MILESTONE_REJECTION_REASON_REQUIRED")
        if len(normalized_reason) > MAX_REJECTION_REASON_LENGTH:
            raise MilestoneValidationError(
                f"MILESTONE_REJECTION_REASON_TOO_LONG: max {MAX_REJECTION_REASON_LENGTH}"
            )

        current = self._tracker.get_milestone(milestone_id=milestone_id)
        if (
            current.approval_status == "REJECTED"
            and current.dispute_id is None
            and self._disputes is not None
        ):
            # Rejection committed earlier without its dispute.
            approvals = self._repository.list_approvals(milestone_id=milestone_id)
            repaired, dispute = self._open_rejection_dispute(
                current,
                created_by=current.reviewed_by or actor_id,
                reason=current.rejection_reason or normalized_reason,
            )
            return ApprovalResult(
                milestone=repaired,
                approval=approvals[-1] if approvals else None,
                applied=False,
                dispute=dispute,
            )

        milestone = self._require_pending(milestone_id)
        decided, approval = self._decide(
            milestone=milestone,
            action="REJECTED",
            actor_id=actor_id,
            comment=normalized_reason,
            decided_at=self._clock(),
            rejection_reason=normalized_reason,
        )
        decided, dispute = self._open_rejection_dispute(
            decided, created_by=actor_id, reason=normalized_reason
        )

        return ApprovalResult(
            milestone=decided,
            approval=approval,
            applied=True,
            dispute=dispute,
            payment_triggered=False,
        )

    def auto_approve(
        self, *, milestone_id: str, now: Optional[datetime] = None
    ) -> ApprovalResult:
        evaluated_at = now or self._clock()
        milestone = self._require_pending(milestone_id)
        if evaluated_at < milestone.auto_approval_deadline:
            return ApprovalResult(milestone=milestone, applied=False)

        window_hours = round(
            (milestone.auto_approval_deadline - milestone.verified_at).total_seconds() / 3600
        )
        decided, approval = self._decide(
            milestone=milestone,
            action="AUTO_APPROVED",
            actor_id=SYSTEM_ACTOR_ID,
            comment=f"Automatically approved after {window_hours}-hour deadline",
            decided_at=evaluated_at,
        )
        return self._release_for(decided, approval)

    def reconcile_releases(self, *, order_id: str) -> EscrowState:
        """Re-issue escrow releases for approved gating milestones.

        Releases are idempotent per stage, so this is safe to call repeatedly, for example
        after a late payment capture made an earlier release attempt fail.
        """
        for milestone in self._approved_gating_milestones(order_id):
            self._reissue_release(milestone)
        return self._ledger.get_state(order_id=order_id)

    def release_funded_stage(self, *, order_id: str, stage: EscrowStage) -> None:
        """Release ``stage`` once captured if its gating milestone was already approved.

        Run by the ledger after a payment completes a stage capture.
        """
        for milestone in self._approved_gating_milestones(order_id):
            if MILESTONE_RELEASE_STAGES[milestone.stage] == stage:
                self._reissue_release(milestone)

    def _approved_gating_milestones(self, order_id: str) -> list[Milestone]:
        return sorted(
            (
                milestone
                for milestone in self._repository.list_milestones(order_id=order_id)
                if milestone.approval_status in APPROVED_STATUSES
                and milestone.stage in MILESTONE_RELEASE_STAGES
            ),
            key=lambda milestone: MILESTONE_SEQUENCE.index(milestone.stage),
        )

    def _reissue_release(self, milestone: Milestone) -> EscrowState:
        approvals = self._repository.list_approvals(milestone_id=milestone.milestone_id)
        reference = approvals[-1].approval_id if approvals else milestone.milestone_id
        return self._ledger.release_stage(
            order_id=milestone.order_id,
            stage=MILESTONE_RELEASE_STAGES[milestone.stage],
            triggering_approval_id=reference,
            notes=f"{milestone.stage} release reconciled",
        )

    def _open_rejection_dispute(
        self, milestone: Milestone, *, created_by: str, reason: str
    ) -> tuple[Milestone, Optional[Any]]:
        if self._disputes is None:
            return milestone, None
        dispute = self._disputes.open_dispute(
            order_id=milestone.order_id,
            milestone_id=milestone.milestone_id,
            created_by=created_by,
            category="MILESTONE_REJECTION",
            title=f"{milestone.stage} milestone rejected",
            description=reason,
        )
        self._repository.attach_dispute(
            milestone_id=milestone.milestone_id,
            dispute_id=dispute.dispute_id,
            updated_at=self._clock(),
        )
        return milestone.model_copy(update={"dispute_id": dispute.dispute_id}), dispute

    def _require_pending(self, milestone_id: str) -> Milestone:
        milestone = self._tracker.get_milestone(milestone_id=milestone_id)
        if milestone.approval_status != "PENDING":
            raise AlreadyDecidedError(
                f"MILESTONE_ALREADY_DECIDED: status is {milestone.approval_status}"
            )
        return milestone

    def _decide(
        self,
        *,
        milestone: Milestone,
        action: MilestoneApprovalAction,
        actor_id: str,
        comment: Optional[str],
        decided_at: datetime,
        rejection_reason: Optional[str] = None,
    ) -> tuple[Milestone, MilestoneApprovalRecord]:
        decided = milestone.model_copy(
            update={
                "approval_status": action,
                "customer_reviewed_at": decided_at,
                "reviewed_by": actor_id,
                "rejection_reason": rejection_reason,
                "updated_at": decided_at,
            }
        )
        approval = MilestoneApprovalRecord(
            approval_id=f"mapr_{uuid.uuid4().hex[:12]}",
            milestone_id=milestone.milestone_id,
            order_id=milestone.order_id,
            actor_id=actor_id,
            action=action,
            comment=comment,
            decided_at=decided_at,
        )
        if not self._repository.decide_milestone(milestone=decided, approval=approval):
            current = self._tracker.get_milestone(milestone_id=milestone.milestone_id)
            raise AlreadyDecidedError(
                f"MILESTONE_ALREADY_DECIDED: status is {current.approval_status}"
            )

        logger.info(
            "Milestone decided. OrderID=%s MilestoneID=%s Stage=%s Action=%s Actor=%s",
            decided.order_id,
            decided.milestone_id,
            decided.stage,
            action,
            actor_id,
        )
        publish_event(
            self._event_publisher,
            build_event(
                event_type="MilestoneRejected" if action == "REJECTED" else "MilestoneApproved",
                order_id=decided.order_id,
                occurred_at=decided_at,
                payload={
                    "milestone_id": decided.milestone_id,
                    "stage": decided.stage,
                    "action": action,
                    "actor_id": actor_id,
                    "approval_id": approval.approval_id,
                },
            ),
        )
        return decided, approval

    def _release_for(
        self, milestone: Milestone, approval: MilestoneApprovalRecord
    ) -> ApprovalResult:
        release_stage = MILESTONE_RELEASE_STAGES.get(milestone.stage)
        if release_stage is None:
            return ApprovalResult(milestone=milestone, approval=approval, applied=True)

        state = self._ledger.release_stage(
            order_id=milestone.order_id,
            stage=release_stage,
            triggering_approval_id=approval.approval_id,
            notes=f"{milestone.stage} {approval.action.lower()}",
        )
        payment_triggered = any(
            entry.transaction_type == "RELEASE" and entry.reference_id == approval.approval_id
            for entry in state.stage_history
        )
        return ApprovalResult(
            milestone=milestone,
            approval=approval,
            applied=True,
            release_stage=release_stage,
            escrow_state=state,
            payment_triggered=payment_triggered,
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
