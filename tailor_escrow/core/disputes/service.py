import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from tailor_escrow.core.common.money import AmountLike, to_amount
from tailor_escrow.core.disputes.models import (
    DISPUTE_CATEGORIES,
    DISPUTE_PRIORITIES,
    MAX_ADMIN_NOTES_LENGTH,
    MAX_DESCRIPTION_LENGTH,
    MAX_TITLE_LENGTH,
    MIN_TITLE_LENGTH,
    DisputeCategory,
    DisputePriority,
    DisputeRecord,
    DisputeResolutionRecord,
    DisputeResolutionResult,
    DisputeResolutionType,
    DisputeStatus,
    SlaWarningSweepResult,
)
from tailor_escrow.core.disputes.repository import DisputeRepository
from tailor_escrow.core.disputes.sla import (
    ACTIVE_STATUSES,
    SLA_WARNING_HOURS,
    due_warning_threshold,
    escalated_priority,
    is_overdue,
    sla_deadline,
    suggested_priority,
)
from tailor_escrow.core.errors import (
    DisputeNotFoundError,
    DisputeTransitionError,
    DisputeValidationError,
    EscrowNotFoundError,
    InsufficientBalanceError,
    RefundAmountRequiredError,
)
from tailor_escrow.core.escrow.ledger import EscrowLedger
from tailor_escrow.core.escrow.models import REFUND_RESOLUTION_TYPES
from tailor_escrow.core.events import (
    DomainEventType,
    EventPublisher,
    build_event,
    publish_event,
)

logger = logging.getLogger(__name__)

RESOLVABLE_STATUSES = {"IN_PROGRESS", "ESCALATED"}
CLOSABLE_STATUSES = {"RESOLVED", "ESCALATED"}
ESCALATABLE_STATUSES = {"OPEN", "IN_PROGRESS"}
CONTINUATION_RESOLUTION_TYPES = {"PARTIAL_REFUND", "ORDER_COMPLETION", "NO_ACTION"}

REASON_CODES: dict[str, str] = {
    "FULL_REFUND": "FULL_REFUND_GRANTED",
    "PARTIAL_REFUND": "PARTIAL_REFUND_GRANTED",
    "ORDER_COMPLETION": "ORDER_COMPLETION_REQUIRED",
    "NO_ACTION": "NO_ACTION_REQUIRED",
}


class DisputeEscalationService:
    def __init__(
        self,
        *,
        repository: DisputeRepository,
        ledger: EscrowLedger,
        event_publisher: Optional[EventPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._event_publisher = event_publisher
        self._clock = clock or _utc_now

    def open_dispute(
        self,
        *,
        order_id: str,
        created_by: str,
        category: DisputeCategory,
        title: str,
        description: str,
        milestone_id: Optional[str] = None,
        priority: Optional[DisputePriority] = None,
    ) -> DisputeRecord:
        """Open a dispute with a category-derived priority and SLA deadline.

        At most one dispute exists per milestone: opening again for the same milestone
        returns the existing record.
        """
        if milestone_id is not None:
            existing = self._repository.get_dispute_by_milestone(milestone_id=milestone_id)
            if existing is not None:
                return existing
        self._validate_open(
            order_id=order_id,
            created_by=created_by,
            category=category,
            title=title,
            description=description,
            priority=priority,
        )

        now = self._clock()
        resolved_priority = priority or suggested_priority(category)
        dispute = DisputeRecord(
            dispute_id=f"dsp_{uuid.uuid4().hex[:12]}",
            order_id=order_id,
            milestone_id=milestone_id,
            created_by=created_by,
            category=category,
            title=title.strip(),
            description=description.strip(),
            status="OPEN",
            priority=resolved_priority,
            sla_deadline=sla_deadline(priority=resolved_priority, created_at=now),
            created_at=now,
            updated_at=now,
        )
        if not self._repository.create_dispute_if_absent(dispute):
            existing = (
                self._repository.get_dispute_by_milestone(milestone_id=milestone_id)
                if milestone_id is not None
                else None
            )
            if existing is None:
                raise DisputeTransitionError("DISPUTE_CREATE_CONFLICT")
            return existing

        logger.info(
            "Dispute opened. DisputeID=%s OrderID=%s Category=%s Priority=%s",
            dispute.dispute_id,
            order_id,
            category,
            resolved_priority,
        )
        self._publish(
            "DisputeOpened",
            dispute,
            {
                "category": category,
                "priority": resolved_priority,
                "milestone_id": milestone_id,
                "sla_deadline": dispute.sla_deadline.isoformat(),
            },
        )
        return dispute

    def get_dispute(self, *, dispute_id: str) -> DisputeRecord:
        dispute = self._repository.get_dispute(dispute_id=dispute_id)
        if dispute is None:
            raise DisputeNotFoundError("DISPUTE_NOT_FOUND")
        return dispute

    def list_disputes(
        self, *, order_id: Optional[str] = None, status: Optional[DisputeStatus] = None
    ) -> list[DisputeRecord]:
        return self._repository.list_disputes(order_id=order_id, status=status)

    def get_resolution(self, *, dispute_id: str) -> DisputeResolutionRecord:
        self.get_dispute(dispute_id=dispute_id)
        resolution = self._repository.get_resolution(dispute_id=dispute_id)
        if resolution is None:
            raise DisputeNotFoundError("DISPUTE_RESOLUTION_NOT_FOUND")
        return resolution

    def assign_admin(self, *, dispute_id: str, admin_id: str) -> DisputeRecord:
        if not (admin_id or "").strip():
            raise DisputeValidationError("DISPUTE_ADMIN_REQUIRED")
        dispute = self.get_dispute(dispute_id=dispute_id)
        if dispute.status not in ACTIVE_STATUSES:
            raise DisputeTransitionError(f"DISPUTE_INVALID_TRANSITION: {dispute.status}")
        next_status: DisputeStatus = "IN_PROGRESS" if dispute.status == "OPEN" else dispute.status
        return self._transition(
            dispute,
            {"assigned_admin": admin_id, "status": next_status},
        )

    def update_priority(
        self, *, dispute_id: str, priority: DisputePriority, actor_id: str
    ) -> DisputeRecord:
        if priority not in DISPUTE_PRIORITIES:
            raise DisputeValidationError(f"DISPUTE_PRIORITY_INVALID: {priority}")
        dispute = self.get_dispute(dispute_id=dispute_id)
        if dispute.status not in ACTIVE_STATUSES:
            raise DisputeTransitionError(f"DISPUTE_INVALID_TRANSITION: {dispute.status}")
        updated = self._transition(
            dispute,
            {
                "priority": priority,
                "sla_deadline": sla_deadline(priority=priority, created_at=dispute.created_at),
                "sla_warnings_sent": [],
            },
        )
        logger.info(
            "Dispute priority changed. DisputeID=%s From=%s To=%s Actor=%s",
            dispute_id,
            dispute.priority,
            priority,
            actor_id,
        )
        return updated

    def escalate(
        self, *, dispute_id: str, actor_id: str, reason: Optional[str] = None
    ) -> DisputeRecord:
        dispute = self.get_dispute(dispute_id=dispute_id)
        if dispute.status not in ESCALATABLE_STATUSES:
            raise DisputeTransitionError(f"DISPUTE_INVALID_TRANSITION: {dispute.status}")
        now = self._clock()
        new_priority = escalated_priority(dispute.priority)
        updated = self._transition(
            dispute,
            {
                "status": "ESCALATED",
                "priority": new_priority,
                "sla_deadline": sla_deadline(priority=new_priority, created_at=dispute.created_at),
                "escalated_at": now,
            },
        )
        self._publish(
            "DisputeEscalated",
            updated,
            {"priority": new_priority, "actor_id": actor_id, "reason": reason},
        )
        return updated

    def resolve(
        self,
        *,
        dispute_id: str,
        resolution_type: DisputeResolutionType,
        outcome: str,
        resolved_by: str,
        refund_amount: Optional[AmountLike] = None,
        admin_notes: Optional[str] = None,
    ) -> DisputeResolutionResult:
        """Resolve a dispute and apply its money consequence to the escrow ledger.

        The status flip to RESOLVED is committed first so concurrent resolvers cannot both
        touch the ledger. If the ledger then refuses the resolution, the status flip is
        reverted and the ledger error is raised.
        """
        if resolution_type not in REASON_CODES:
            raise DisputeValidationError(f"DISPUTE_RESOLUTION_TYPE_INVALID: {resolution_type}")
        if not (outcome or "").strip():
            raise DisputeValidationError("DISPUTE_OUTCOME_REQUIRED")
        if not (resolved_by or "").strip():
            raise DisputeValidationError("DISPUTE_RESOLVER_REQUIRED")
        if admin_notes is not None and len(admin_notes) > MAX_ADMIN_NOTES_LENGTH:
            raise DisputeValidationError("DISPUTE_ADMIN_NOTES_TOO_LONG")

        dispute = self.get_dispute(dispute_id=dispute_id)
        if dispute.status == "OPEN":
            raise DisputeTransitionError("ADMIN_ASSIGNMENT_REQUIRED")
        if dispute.status not in RESOLVABLE_STATUSES:
            raise DisputeTransitionError(f"DISPUTE_INVALID_TRANSITION: {dispute.status}")

        amount = self._validated_refund(
            order_id=dispute.order_id,
            resolution_type=resolution_type,
            refund_amount=refund_amount,
        )

        resolved = self._transition(
            dispute,
            {
                "status": "RESOLVED",
                "resolution_type": resolution_type,
                "resolution_outcome": outcome.strip(),
                "refund_amount": amount,
                "resolved_by": resolved_by,
                "resolved_at": self._clock(),
            },
        )

        try:
            escrow_state = self._ledger.apply_resolution(
                order_id=dispute.order_id,
                resolution_type=resolution_type,
                amount=amount,
                dispute_id=dispute_id,
                notes=outcome.strip(),
            )
        except Exception:
            reverted = dispute.model_copy(
                update={"version": resolved.version + 1, "updated_at": self._clock()}
            )
            self._repository.update_dispute(dispute=reverted, expected_version=resolved.version)
            logger.warning(
                "Dispute resolution reverted after ledger failure. DisputeID=%s", dispute_id
            )
            raise

        resolution = self._record_resolution(resolved, admin_notes=admin_notes)

        logger.info(
            "Dispute resolved. DisputeID=%s OrderID=%s Type=%s Refund=%s",
            dispute_id,
            dispute.order_id,
            resolution_type,
            amount,
        )
        self._publish(
            "DisputeResolved",
            resolved,
            {
                "resolution_type": resolution_type,
                "refund_amount": str(amount) if amount is not None else None,
                "resolved_by": resolved_by,
                "balance": str(escrow_state.balance),
            },
        )
        return DisputeResolutionResult(
            dispute=resolved, resolution=resolution, escrow_state=escrow_state
        )

    def reapply_resolution(self, *, dispute_id: str) -> DisputeResolutionResult:
        """Finish a resolution whose dispute was marked RESOLVED but never recorded.

        Covers a resolver that stopped between the status change and the resolution
        record. The ledger call is idempotent on the dispute id, so a refund that already
        reached the ledger is not applied twice. Completed resolutions are returned as is.
        """
        dispute = self.get_dispute(dispute_id=dispute_id)
        if dispute.resolution_type is None or dispute.status not in {"RESOLVED", "CLOSED"}:
            raise DisputeTransitionError(f"DISPUTE_NOT_RESOLVED: {dispute.status}")
        existing = self._repository.get_resolution(dispute_id=dispute_id)
        if existing is not None:
            return DisputeResolutionResult(
                dispute=dispute,
                resolution=existing,
                escrow_state=self._ledger.get_state(order_id=dispute.order_id),
            )

        escrow_state = self._ledger.apply_resolution(
            order_id=dispute.order_id,
            resolution_type=dispute.resolution_type,
            amount=dispute.refund_amount,
            dispute_id=dispute_id,
            notes=dispute.resolution_outcome,
        )
        resolution = self._record_resolution(dispute, admin_notes=None)
        logger.warning(
            "Dispute resolution reapplied. DisputeID=%s OrderID=%s Type=%s",
            dispute_id,
            dispute.order_id,
            dispute.resolution_type,
        )
        return DisputeResolutionResult(
            dispute=dispute, resolution=resolution, escrow_state=escrow_state
        )

    def close(
        self, *, dispute_id: str, actor_id: str, reason: Optional[str] = None
    ) -> DisputeRecord:
        if not (actor_id or "").strip():
            raise DisputeValidationError("DISPUTE_ACTOR_REQUIRED")
        dispute = self.get_dispute(dispute_id=dispute_id)
        if dispute.status not in CLOSABLE_STATUSES:
            raise DisputeTransitionError(f"DISPUTE_INVALID_TRANSITION: {dispute.status}")
        now = self._clock()
        changes: dict = {"status": "CLOSED", "closed_at": now}
        if dispute.resolved_by is None:
            changes["resolved_by"] = actor_id
            changes["resolved_at"] = now
        if dispute.resolution_outcome is None and reason:
            changes["resolution_outcome"] = reason
        return self._transition(dispute, changes)

    def mark_refund_processed(self, *, dispute_id: str) -> DisputeResolutionRecord:
        resolution = self.get_resolution(dispute_id=dispute_id)
        if resolution.payment_processed:
            return resolution
        updated = resolution.model_copy(update={"payment_processed": True})
        self._repository.save_resolution(updated)
        return updated

    def is_dispute_settled(self, *, dispute_id: str) -> bool:
        dispute = self._repository.get_dispute(dispute_id=dispute_id)
        if dispute is None or dispute.status not in {"RESOLVED", "CLOSED"}:
            return False
        if dispute.resolution_type not in CONTINUATION_RESOLUTION_TYPES:
            return False
        try:
            state = self._ledger.get_state(order_id=dispute.order_id)
        except EscrowNotFoundError:
            return True
        return state.stage != "REFUNDED"

    def is_overdue(self, *, dispute_id: str, now: Optional[datetime] = None) -> bool:
        return is_overdue(self.get_dispute(dispute_id=dispute_id), now=now or self._clock())

    def list_overdue(self, *, now: Optional[datetime] = None) -> list[DisputeRecord]:
        evaluated_at = now or self._clock()
        overdue = [
            dispute
            for dispute in self._repository.list_disputes()
            if is_overdue(dispute, now=evaluated_at)
        ]
        return sorted(overdue, key=lambda dispute: dispute.sla_deadline)

    def sla_warning_sweep(self, *, now: Optional[datetime] = None) -> SlaWarningSweepResult:
        evaluated_at = now or self._clock()
        result = SlaWarningSweepResult()
        for dispute in self._repository.list_disputes():
            if dispute.status not in ACTIVE_STATUSES:
                continue
            result.processed += 1
            threshold = due_warning_threshold(dispute, now=evaluated_at)
            if threshold is None:
                continue
            sent = sorted(
                set(dispute.sla_warnings_sent)
                | {hours for hours in SLA_WARNING_HOURS if hours >= threshold},
                reverse=True,
            )
            updated = dispute.model_copy(
                update={
                    "sla_warnings_sent": sent,
                    "updated_at": evaluated_at,
                    "version": dispute.version + 1,
                }
            )
            if not self._repository.update_dispute(
                dispute=updated, expected_version=dispute.version
            ):
                continue
            result.warnings_emitted += 1
            result.warned_dispute_ids.append(dispute.dispute_id)
            self._publish(
                "SlaWarning",
                updated,
                {
                    "hours_before_deadline": threshold,
                    "priority": dispute.priority,
                    "assigned_admin": dispute.assigned_admin,
                    "sla_deadline": dispute.sla_deadline.isoformat(),
                },
            )
        return result

    def _validated_refund(
        self,
        *,
        order_id: str,
        resolution_type: DisputeResolutionType,
        refund_amount: Optional[AmountLike],
    ) -> Optional[Decimal]:
        if resolution_type not in REFUND_RESOLUTION_TYPES:
            if refund_amount is not None:
                raise DisputeValidationError(
                    f"DISPUTE_REFUND_NOT_ALLOWED: {resolution_type} carries no refund"
                )
            return None
        if refund_amount is None:
            raise RefundAmountRequiredError(
                f"REFUND_AMOUNT_REQUIRED: {resolution_type} needs a refund amount"
            )
        try:
            amount = to_amount(refund_amount)
        except ValueError as exc:
            raise RefundAmountRequiredError("REFUND_AMOUNT_REQUIRED: not a number") from exc
        if amount <= 0:
            raise RefundAmountRequiredError("REFUND_AMOUNT_REQUIRED: must be positive")
        balance = self._ledger.get_state(order_id=order_id).balance
        if amount > balance:
            raise InsufficientBalanceError(
                f"INSUFFICIENT_BALANCE: refund {amount} exceeds balance {balance}"
            )
        return amount

    def _record_resolution(
        self, dispute: DisputeRecord, *, admin_notes: Optional[str]
    ) -> DisputeResolutionRecord:
        resolution = DisputeResolutionRecord(
            resolution_id=f"dres_{uuid.uuid4().hex[:12]}",
            dispute_id=dispute.dispute_id,
            resolution_type=dispute.resolution_type,
            outcome=dispute.resolution_outcome,
            refund_amount=dispute.refund_amount,
            reason_code=REASON_CODES[dispute.resolution_type],
            admin_notes=admin_notes,
            payment_processed=dispute.resolution_type not in REFUND_RESOLUTION_TYPES,
            resolved_by=dispute.resolved_by,
            resolved_at=dispute.resolved_at,
        )
        self._repository.save_resolution(resolution)
        return resolution

    def _transition(self, dispute: DisputeRecord, changes: dict) -> DisputeRecord:
        updated = dispute.model_copy(
            update={**changes, "updated_at": self._clock(), "version": dispute.version + 1}
        )
        if not self._repository.update_dispute(dispute=updated, expected_version=dispute.version):
            raise DisputeTransitionError("DISPUTE_CONCURRENT_UPDATE")
        return updated

    def _publish(
        self, event_type: DomainEventType, dispute: DisputeRecord, payload: dict
    ) -> None:
        publish_event(
            self._event_publisher,
            build_event(
                event_type=event_type,
                order_id=dispute.order_id,
                payload={"dispute_id": dispute.dispute_id, **payload},
            ),
        )

    def _validate_open(
        self,
        *,
        order_id: str,
        created_by: str,
        category: str,
        title: str,
        description: str,
        priority: Optional[str],
    ) -> None:
        if not (order_id or "").strip():
            raise DisputeValidationError("DISPUTE_ORDER_ID_REQUIRED")
        if not (created_by or "").strip():
            raise DisputeValidationError("DISPUTE_CREATOR_REQUIRED")
        if category not in DISPUTE_CATEGORIES:
            raise DisputeValidationError(f"DISPUTE_CATEGORY_INVALID: {category}")
        if priority is not None and priority not in DISPUTE_PRIORITIES:
            raise DisputeValidationError(f"DISPUTE_PRIORITY_INVALID: {priority}")
        normalized_title = (title or "").strip()
        if not MIN_TITLE_LENGTH <= len(normalized_title) <= MAX_TITLE_LENGTH:
            raise DisputeValidationError(
                f"DISPUTE_TITLE_LENGTH: {MIN_TITLE_LENGTH}-{MAX_TITLE_LENGTH} characters"
            )
        normalized_description = (description or "").strip()
        if not normalized_description:
            raise DisputeValidationError("DISPUTE_DESCRIPTION_REQUIRED")
        if len(normalized_description) > MAX_DESCRIPTION_LENGTH:
            raise DisputeValidationError(
                f"DISPUTE_DESCRIPTION_TOO_LONG: max {MAX_DESCRIPTION_LENGTH} characters"
            )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
