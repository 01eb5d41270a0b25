from copy import deepcopy
from datetime import datetime
from threading import Lock
from typing import Optional

from tailor_escrow.core.milestones.models import Milestone, MilestoneApprovalRecord
from tailor_escrow.core.milestones.repository import MilestoneRepository


class InMemoryMilestoneRepository(MilestoneRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._milestones: dict[str, Milestone] = {}
        self._approvals: dict[str, list[MilestoneApprovalRecord]] = {}

    def create_milestone_if_absent(self, milestone: Milestone) -> bool:
        with self._lock:
            for existing in self._milestones.values():
                if (
                    existing.order_id == milestone.order_id
                    and existing.stage == milestone.stage
                    and existing.approval_status != "REJECTED"
                ):
                    return False
            self._milestones[milestone.milestone_id] = deepcopy(milestone)
            return True

    def get_milestone(self, *, milestone_id: str) -> Optional[Milestone]:
        with self._lock:
            milestone = self._milestones.get(milestone_id)
            return deepcopy(milestone) if milestone is not None else None

    def list_milestones(self, *, order_id: str) -> list[Milestone]:
        with self._lock:
            rows = [
                deepcopy(milestone)
                for milestone in self._milestones.values()
                if milestone.order_id == order_id
            ]
        return sorted(rows, key=lambda milestone: (milestone.created_at, milestone.attempt_no))

    def list_due_for_auto_approval(self, *, now: datetime, limit: int) -> list[Milestone]:
        with self._lock:
            due = [
                deepcopy(milestone)
                for milestone in self._milestones.values()
                if milestone.approval_status == "PENDING"
                and milestone.auto_approval_deadline <= now
            ]
        due.sort(key=lambda milestone: milestone.auto_approval_deadline)
        return due[:limit]

    def decide_milestone(
        self, *, milestone: Milestone, approval: MilestoneApprovalRecord
    ) -> bool:
        with self._lock:
            current = self._milestones.get(milestone.milestone_id)
            if current is None or current.approval_status != "PENDING":
                return False
            self._milestones[milestone.milestone_id] = deepcopy(milestone)
            self._approvals.setdefault(milestone.milestone_id, []).append(deepcopy(approval))
            return True

    def attach_dispute(self, *, milestone_id: str, dispute_id: str, updated_at: datetime) -> None:
        with self._lock:
            current = self._milestones.get(milestone_id)
            if current is None:
                return
            self._milestones[milestone_id] = current.model_copy(
                update={"dispute_id": dispute_id, "updated_at": updated_at}
            )

    def list_approvals(self, *, milestone_id: str) -> list[MilestoneApprovalRecord]:
        with self._lock:
            return deepcopy(self._approvals.get(milestone_id, []))
