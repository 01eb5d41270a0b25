from tailor_escrow.core.milestones.approvals import SYSTEM_ACTOR_ID, ApprovalStateMachine
from tailor_escrow.core.milestones.models import (
    MILESTONE_RELEASE_STAGES,
    MILESTONE_SEQUENCE,
    ApprovalResult,
    AutoApprovalSweepResult,
    Milestone,
    MilestoneApprovalRecord,
    MilestoneProgress,
)
from tailor_escrow.core.milestones.repository import MilestoneRepository
from tailor_escrow.core.milestones.scheduler import AutoApprovalScheduler
from tailor_escrow.core.milestones.tracker import MilestoneTracker

__all__ = [
    "MILESTONE_RELEASE_STAGES",
    "MILESTONE_SEQUENCE",
    "SYSTEM_ACTOR_ID",
    "ApprovalResult",
    "ApprovalStateMachine",
    "AutoApprovalScheduler",
    "AutoApprovalSweepResult",
    "Milestone",
    "MilestoneApprovalRecord",
    "MilestoneProgress",
    "MilestoneRepository",
    "MilestoneTracker",
]
