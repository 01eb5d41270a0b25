from datetime import datetime
from typing import Optional, Protocol

from tailor_escrow.core.milestones.models import Milestone, MilestoneApprovalRecord


class MilestoneRepository(Protocol):
    def create_milestone_if_absent(self, milestone: Milestone) -> bool: ...

    def get_milestone(self, *, milestone_id: str) -> Optional[Milestone]: ...

    def list_milestones(self, *, order_id: str) -> list[Milestone]: ...

    def list_due_for_auto_approval(self, *, now: datetime, limit: int) -> list[Milestone]: ...

    def decide_milestone(
        self, *, milestone: Milestone, approval: MilestoneApprovalRecord
    ) -> bool: ...

    def attach_dispute(
        self, *, milestone_id: str, dispute_id: str, updated_at: datetime
    ) -> None: ...

    def list_approvals(self, *, milestone_id: str) -> list[MilestoneApprovalRecord]: ...
