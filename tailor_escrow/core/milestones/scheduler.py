import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from tailor_escrow.core.errors import AlreadyDecidedError
from tailor_escrow.core.milestones.approvals import ApprovalStateMachine
from tailor_escrow.core.milestones.models import AutoApprovalError, AutoApprovalSweepResult
from tailor_escrow.core.milestones.repository import MilestoneRepository

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_BATCH_SIZE = 100


class AutoApprovalScheduler:
    def __init__(
        self,
        *,
        repository: MilestoneRepository,
        state_machine: ApprovalStateMachine,
        batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._state_machine = state_machine
        self._batch_size = max(1, batch_size)
        self._clock = clock or _utc_now

    def run_sweep(self, *, now: Optional[datetime] = None) -> AutoApprovalSweepResult:
        """Auto-approve every pending milestone whose review window has expired.

        One milestone failing never aborts the sweep. A milestone decided by a customer
        between the query and the decision is counted as skipped.
        """
        evaluated_at = now or self._clock()
        due = self._repository.list_due_for_auto_approval(
            now=evaluated_at, limit=self._batch_size
        )
        result = AutoApprovalSweepResult()
        for milestone in due:
            result.processed += 1
            try:
                outcome = self._state_machine.auto_approve(
                    milestone_id=milestone.milestone_id, now=evaluated_at
                )
            except AlreadyDecidedError:
                result.skipped += 1
                continue
            except Exception as exc:
                result.failed += 1
                result.errors.append(
                    AutoApprovalError(milestone_id=milestone.milestone_id, error=str(exc))
                )
                logger.exception(
                    "Auto-approval failed. MilestoneID=%s OrderID=%s",
                    milestone.milestone_id,
                    milestone.order_id,
                )
                continue
            if outcome.applied:
                result.auto_approved += 1
                result.approved_milestone_ids.append(milestone.milestone_id)
            else:
                result.skipped += 1

        logger.info(
            "Auto-approval sweep finished.",
            extra={
                "extra_fields": {
                    "processed": result.processed,
                    "auto_approved": result.auto_approved,
                    "skipped": result.skipped,
                    "failed": result.failed,
                }
            },
        )
        return result


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
