from datetime import datetime, timedelta
from typing import Optional

from tailor_escrow.core.disputes.models import (
    DisputeCategory,
    DisputePriority,
    DisputeRecord,
)

SLA_HOURS: dict[str, int] = {
    "CRITICAL": 4,
    "HIGH": 24,
    "MEDIUM": 48,
    "LOW": 72,
}

CATEGORY_DEFAULT_PRIORITY: dict[str, DisputePriority] = {
    "QUALITY_ISSUE": "HIGH",
    "DELIVERY_DELAY": "MEDIUM",
    "PAYMENT_PROBLEM": "HIGH",
    "COMMUNICATION_ISSUE": "MEDIUM",
    "MILESTONE_REJECTION": "HIGH",
    "OTHER": "MEDIUM",
}

# Hours before the deadline at which a warning is emitted, largest first.
SLA_WARNING_HOURS: tuple[int, ...] = (24, 6, 1)

ACTIVE_STATUSES = {"OPEN", "IN_PROGRESS", "ESCALATED"}
OVERDUE_STATUSES = {"OPEN", "IN_PROGRESS"}


def suggested_priority(category: DisputeCategory) -> DisputePriority:
    return CATEGORY_DEFAULT_PRIORITY.get(category, "MEDIUM")


def sla_deadline(*, priority: DisputePriority, created_at: datetime) -> datetime:
    return created_at + timedelta(hours=SLA_HOURS[priority])


def is_overdue(dispute: DisputeRecord, *, now: datetime) -> bool:
    return dispute.status in OVERDUE_STATUSES and now > dispute.sla_deadline


def due_warning_threshold(dispute: DisputeRecord, *, now: datetime) -> Optional[int]:
    """Return the tightest unsent warning threshold the dispute has crossed, if any."""
    if dispute.status not in ACTIVE_STATUSES or now > dispute.sla_deadline:
        return None
    remaining = dispute.sla_deadline - now
    crossed = [
        hours
        for hours in SLA_WARNING_HOURS
        if remaining <= timedelta(hours=hours) and hours not in dispute.sla_warnings_sent
    ]
    if not crossed:
        return None
    return min(crossed)


ESCALATED_PRIORITY: dict[str, DisputePriority] = {
    "LOW": "MEDIUM",
    "MEDIUM": "HIGH",
    "HIGH": "CRITICAL",
    "CRITICAL": "CRITICAL",
}


def escalated_priority(priority: DisputePriority) -> DisputePriority:
    return ESCALATED_PRIORITY.get(priority, "HIGH")
