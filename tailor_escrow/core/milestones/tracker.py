import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from tailor_escrow.core.errors import (
    MilestoneAlreadySubmittedError,
    MilestoneNotFoundError,
    MilestoneValidationError,
    OutOfSequenceError,
)
from tailor_escrow.core.events import EventPublisher, build_event, publish_event
from tailor_escrow.core.milestones.models import (
    APPROVED_STATUSES,
    DEFAULT_AUTO_APPROVAL_WINDOW_HOURS,
    MAX_NOTES_LENGTH,
    MILESTONE_SEQUENCE,
    SUPPORTED_EVIDENCE_MIME_TYPES,
    Milestone,
    MilestoneApprovalRecord,
    MilestoneProgress,
    MilestoneStage,
)
from tailor_escrow.core.milestones.repository import MilestoneRepository

logger = logging.getLogger(__name__)

_EVIDENCE_URL_PATTERN = re.compile(r"^https?://\S+$", re.IGNORECASE)


class DisputeSettlementReader(Protocol):
    def is_dispute_settled(self, *, dispute_id: str) -> bool: ...


class MilestoneTracker:
    def __init__(
        self,
        *,
        repository: MilestoneRepository,
        event_publisher: Optional[EventPublisher] = None,
        dispute_reader: Optional[DisputeSettlementReader] = None,
        auto_approval_window_hours: int = DEFAULT_AUTO_APPROVAL_WINDOW_HOURS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if auto_approval_window_hours <= 0:
            raise ValueError("auto_approval_window_hours must be positive")
        self._repository = repository
        self._event_publisher = event_publisher
        self._dispute_reader = dispute_reader
        self._window = timedelta(hours=auto_approval_window_hours)
        self._clock = clock or _utc_now

    @property
    def repository(self) -> MilestoneRepository:
        return self._repository

    def submit_evidence(
        self,
        *,
        order_id: str,
        stage: MilestoneStage,
        evidence_url: str,
        submitted_by: str,
        notes: Optional[str] = None,
        mime_type: str = "image/jpeg",
    ) -> Milestone:
        """Record photo evidence for a production stage and open the review window.

        Stages are strictly sequential: the preceding stage must be approved (manually or
        automatically) before the next one can be submitted. A stage already pending or
        approved cannot be submitted twice. A rejected stage can be resubmitted once the
        dispute raised by the rejection is settled with a continuation outcome.
        """
        self._validate_submission(
            order_id=order_id,
            stage=stage,
            evidence_url=evidence_url,
            submitted_by=submitted_by,
            notes=notes,
            mime_type=mime_type,
        )

        latest = _latest_by_stage(self._repository.list_milestones(order_id=order_id))
        stage_index = MILESTONE_SEQUENCE.index(stage)
        if stage_index > 0:
            previous_stage = MILESTONE_SEQUENCE[stage_index - 1]
            previous = latest.get(previous_stage)
            if previous is None or previous.approval_status not in APPROVED_STATUSES:
                raise OutOfSequenceError(
                    f"MILESTONE_OUT_OF_SEQUENCE: {previous_stage} must be approved first"
                )

        attempt_no = 1
        existing = latest.get(stage)
        if existing is not None:
            if existing.approval_status != "REJECTED":
                raise MilestoneAlreadySubmittedError(
                    f"MILESTONE_ALREADY_SUBMITTED: {stage} is {existing.approval_status}"
                )
            if not self._rejection_settled(existing):
                raise MilestoneAlreadySubmittedError(
                    f"MILESTONE_REJECTION_UNSETTLED: {stage} awaits dispute resolution"
                )
            attempt_no = existing.attempt_no + 1

        now = self._clock()
        milestone = Milestone(
            milestone_id=f"mil_{uuid.uuid4().hex[:12]}",
            order_id=order_id,
            stage=stage,
            attempt_no=attempt_no,
            evidence_url=evidence_url.strip(),
            evidence_mime_type=mime_type,
            notes=notes,
            verified_at=now,
            verified_by=submitted_by,
            auto_approval_deadline=now + self._window,
            approval_status="PENDING",
            created_at=now,
            updated_at=now,
        )
        if not self._repository.create_milestone_if_absent(milestone):
            raise MilestoneAlreadySubmittedError(
                f"MILESTONE_ALREADY_SUBMITTED: {stage} submitted concurrently"
            )

        logger.info(
            "Milestone submitted. OrderID=%s Stage=%s MilestoneID=%s Attempt=%s",
            order_id,
            stage,
            milestone.milestone_id,
            attempt_no,
        )
        publish_event(
            self._event_publisher,
            build_event(
                event_type="MilestoneSubmitted",
                order_id=order_id,
                occurred_at=now,
                payload={
                    "milestone_id": milestone.milestone_id,
                    "stage": stage,
                    "evidence_url": milestone.evidence_url,
                    "auto_approval_deadline": milestone.auto_approval_deadline.isoformat(),
                },
            ),
        )
        return milestone

    def get_milestone(self, *, milestone_id: str) -> Milestone:
        milestone = self._repository.get_milestone(milestone_id=milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError("MILESTONE_NOT_FOUND")
        return milestone

    def list_milestones(self, *, order_id: str) -> list[Milestone]:
        return self._repository.list_milestones(order_id=order_id)

    def list_approvals(self, *, milestone_id: str) -> list[MilestoneApprovalRecord]:
        self.get_milestone(milestone_id=milestone_id)
        return self._repository.list_approvals(milestone_id=milestone_id)

    def get_pending_for_customer(self, *, order_id: str) -> Optional[Milestone]:
        pending = [
            milestone
            for milestone in self._repository.list_milestones(order_id=order_id)
            if milestone.approval_status == "PENDING"
        ]
        if not pending:
            return None
        return min(pending, key=lambda milestone: MILESTONE_SEQUENCE.index(milestone.stage))

    def get_progress(self, *, order_id: str) -> MilestoneProgress:
        latest = _latest_by_stage(self._repository.list_milestones(order_id=order_id))
        completed = [
            stage
            for stage in MILESTONE_SEQUENCE
            if stage in latest and latest[stage].approval_status in APPROVED_STATUSES
        ]
        current = None
        for stage in reversed(MILESTONE_SEQUENCE):
            if stage in latest:
                current = latest[stage]
                break

        next_stage: Optional[MilestoneStage] = None
        if current is None:
            next_stage = MILESTONE_SEQUENCE[0]
        elif current.approval_status in APPROVED_STATUSES:
            index = MILESTONE_SEQUENCE.index(current.stage)
            if index + 1 < len(MILESTONE_SEQUENCE):
                next_stage = MILESTONE_SEQUENCE[index + 1]

        return MilestoneProgress(
            order_id=order_id,
            completed_stages=completed,
            current_stage=current.stage if current is not None else None,
            current_status=current.approval_status if current is not None else None,
            next_stage=next_stage,
            percent_complete=round(len(completed) * 100 / len(MILESTONE_SEQUENCE)),
        )

    def _rejection_settled(self, milestone: Milestone) -> bool:
        if milestone.dispute_id is None or self._dispute_reader is None:
            return False
        return self._dispute_reader.is_dispute_settled(dispute_id=milestone.dispute_id)

    def _validate_submission(
        self,
        *,
        order_id: str,
        stage: str,
        evidence_url: str,
        submitted_by: str,
        notes: Optional[str],
        mime_type: str,
    ) -> None:
        if not (order_id or "").strip():
            raise MilestoneValidationError("MILESTONE_ORDER_ID_REQUIRED")
        if stage not in MILESTONE_SEQUENCE:
            raise MilestoneValidationError(f"MILESTONE_STAGE_INVALID: {stage}")
        if not (submitted_by or "").strip():
            raise MilestoneValidationError("MILESTONE_SUBMITTER_REQUIRED")
        if not _EVIDENCE_URL_PATTERN.match((evidence_url or "").strip()):
            raise MilestoneValidationError("MILESTONE_EVIDENCE_URL_INVALID")
        if mime_type not in SUPPORTED_EVIDENCE_MIME_TYPES:
            raise MilestoneValidationError(f"MILESTONE_EVIDENCE_TYPE_UNSUPPORTED: {mime_type}")
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise MilestoneValidationError(
                f"MILESTONE_NOTES_TOO_LONG: max {MAX_NOTES_LENGTH} characters"
            )


def _latest_by_stage(milestones: list[Milestone]) -> dict[str, Milestone]:
    latest: dict[str, Milestone] = {}
    for milestone in milestones:
        current = latest.get(milestone.stage)
        if current is None or milestone.attempt_no > current.attempt_no:
            latest[milestone.stage] = milestone
    return latest


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
