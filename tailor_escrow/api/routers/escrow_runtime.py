from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from tailor_escrow.api.routers.escrow_config import (
    EscrowRepositories,
    auto_approval_sweep_batch_size,
    auto_approval_window_hours,
    build_repositories,
    ledger_max_conflict_retries,
    split_policy_catalog,
)
from tailor_escrow.core.disputes import DisputeEscalationService
from tailor_escrow.core.escrow import EscrowLedger, EscrowSplitPolicy
from tailor_escrow.core.events import EventPublisher, LoggingEventPublisher
from tailor_escrow.core.milestones import (
    ApprovalStateMachine,
    AutoApprovalScheduler,
    MilestoneTracker,
)


@dataclass(frozen=True)
class EscrowServices:
    ledger: EscrowLedger
    tracker: MilestoneTracker
    approvals: ApprovalStateMachine
    scheduler: AutoApprovalScheduler
    disputes: DisputeEscalationService
    event_publisher: EventPublisher
    split_policies: dict[str, EscrowSplitPolicy]


_SERVICES: Optional[EscrowServices] = None


def build_escrow_services(
    *,
    repositories: Optional[EscrowRepositories] = None,
    event_publisher: Optional[EventPublisher] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> EscrowServices:
    stores = repositories or build_repositories()
    publisher = event_publisher or LoggingEventPublisher()
    ledger = EscrowLedger(
        repository=stores.escrow,
        event_publisher=publisher,
        max_conflict_retries=ledger_max_conflict_retries(),
        clock=clock,
    )
    disputes = DisputeEscalationService(
        repository=stores.disputes,
        ledger=ledger,
        event_publisher=publisher,
        clock=clock,
    )
    tracker = MilestoneTracker(
        repository=stores.milestones,
        event_publisher=publisher,
        dispute_reader=disputes,
        auto_approval_window_hours=auto_approval_window_hours(),
        clock=clock,
    )
    approvals = ApprovalStateMachine(
        tracker=tracker,
        ledger=ledger,
        disputes=disputes,
        event_publisher=publisher,
        clock=clock,
    )
    ledger.on_stage_funded(approvals.release_funded_stage)
    scheduler = AutoApprovalScheduler(
        repository=stores.milestones,
        state_machine=approvals,
        batch_size=auto_approval_sweep_batch_size(),
        clock=clock,
    )
    return EscrowServices(
        ledger=ledger,
        tracker=tracker,
        approvals=approvals,
        scheduler=scheduler,
        disputes=disputes,
        event_publisher=publisher,
        split_policies=split_policy_catalog(),
    )


def get_escrow_services() -> EscrowServices:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_escrow_services()
    return _SERVICES


def get_escrow_ledger() -> EscrowLedger:
    return get_escrow_services().ledger


def get_milestone_tracker() -> MilestoneTracker:
    return get_escrow_services().tracker


def get_approval_state_machine() -> ApprovalStateMachine:
    return get_escrow_services().approvals


def get_auto_approval_scheduler() -> AutoApprovalScheduler:
    return get_escrow_services().scheduler


def get_dispute_service() -> DisputeEscalationService:
    return get_escrow_services().disputes


def get_split_policies() -> dict[str, EscrowSplitPolicy]:
    return get_escrow_services().split_policies


def reset_escrow_services_for_tests(
    *,
    event_publisher: Optional[EventPublisher] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> EscrowServices:
    global _SERVICES
    _SERVICES = build_escrow_services(event_publisher=event_publisher, clock=clock)
    return _SERVICES
