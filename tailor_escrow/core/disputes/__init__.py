from tailor_escrow.core.disputes.models import (
    DisputeRecord,
    DisputeResolutionRecord,
    DisputeResolutionResult,
    SlaWarningSweepResult,
)
from tailor_escrow.core.disputes.repository import DisputeRepository
from tailor_escrow.core.disputes.service import DisputeEscalationService
from tailor_escrow.core.disputes.sla import SLA_HOURS, is_overdue, suggested_priority

__all__ = [
    "SLA_HOURS",
    "DisputeEscalationService",
    "DisputeRecord",
    "DisputeRepository",
    "DisputeResolutionRecord",
    "DisputeResolutionResult",
    "SlaWarningSweepResult",
    "is_overdue",
    "suggested_priority",
]
