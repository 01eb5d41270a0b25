from datetime import timedelta
from decimal import Decimal

from tailor_escrow.api.routers.escrow_config import EscrowRepositories
from tailor_escrow.api.routers.escrow_runtime import build_escrow_services
from tailor_escrow.infrastructure.disputes import InMemoryDisputeRepository
from tailor_escrow.infrastructure.escrow import InMemoryEscrowRepository
from tailor_escrow.infrastructure.milestones import InMemoryMilestoneRepository


def _submit(services, stage, order_id="ord_001"):
    return services.tracker.submit_evidence(
        order_id=order_id,
        stage=stage,
        evidence_url=f"https://cdn.example.com/{order_id}/{stage.lower()}.jpg",
        submitted_by="tailor_01",
    )


def test_sweep_auto_approves_expired_milestones(services, clock, event_publisher):
    milestone = _submit(services, "FABRIC_SELECTED")

    result = services.scheduler.run_sweep(now=clock() + timedelta(hours=49))

    assert result.processed == 1
    assert result.auto_approved == 1
    assert result.failed == 0
    assert result.approved_milestone_ids == [milestone.milestone_id]
    stored = services.tracker.get_milestone(milestone_id=milestone.milestone_id)
    assert stored.approval_status == "AUTO_APPROVED"
    approved_events = event_publisher.events(event_type="MilestoneApproved")
    assert approved_events[-1].payload["action"] == "AUTO_APPROVED"


def test_sweep_leaves_milestones_inside_review_window(services, clock):
    milestone = _submit(services, "FABRIC_SELECTED")

    result = services.scheduler.run_sweep(now=clock() + timedelta(hours=47))

    assert result.processed == 0
    assert result.auto_approved == 0
    stored = services.tracker.get_milestone(milestone_id=milestone.milestone_id)
    assert stored.approval_status == "PENDING"


def test_sweep_uses_clock_when_no_time_given(services, clock):
    _submit(services, "FABRIC_SELECTED")
    clock.advance(hours=48, minutes=1)

    result = services.scheduler.run_sweep()

    assert result.auto_approved == 1


def test_one_failing_milestone_does_not_abort_sweep(services, approve_through, clock):
    services.ledger.initialize(order_id="ord_a", total_amount="1000")
    services.ledger.record_payment(
        order_id="ord_a", stage="DEPOSIT", amount="250", provider_reference="mm_a_dep"
    )
    approve_through(order_id="ord_a", stage="FITTING_READY")
    fitting = _submit(services, "FITTING_READY", order_id="ord_a")
    fabric = _submit(services, "FABRIC_SELECTED", order_id="ord_b")

    result = services.scheduler.run_sweep(now=clock() + timedelta(hours=49))

    assert result.processed == 2
    assert result.auto_approved == 1
    assert result.failed == 1
    assert result.approved_milestone_ids == [fabric.milestone_id]
    assert result.errors[0].milestone_id == fitting.milestone_id
    assert result.errors[0].error.startswith("PROVIDER_CONFIRMATION_MISSING")


class _StaleDueMilestoneRepository(InMemoryMilestoneRepository):
    def list_due_for_auto_approval(self, *, now, limit):
        return self.list_milestones(order_id="ord_001")[:limit]


def test_milestone_decided_by_customer_mid_sweep_is_skipped(clock, event_publisher):
    services = build_escrow_services(
        repositories=EscrowRepositories(
            escrow=InMemoryEscrowRepository(),
            milestones=_StaleDueMilestoneRepository(),
            disputes=InMemoryDisputeRepository(),
        ),
        event_publisher=event_publisher,
        clock=clock,
    )
    milestone = _submit(services, "FABRIC_SELECTED")
    services.approvals.approve(milestone_id=milestone.milestone_id, actor_id="customer_01")

    result = services.scheduler.run_sweep(now=clock() + timedelta(hours=49))

    assert result.processed == 1
    assert result.skipped == 1
    assert result.auto_approved == 0
    assert result.failed == 0
    stored = services.tracker.get_milestone(milestone_id=milestone.milestone_id)
    assert stored.approval_status == "APPROVED"


def test_late_capture_releases_auto_approved_fitting(
    services, approve_through, clock, event_publisher
):
    services.ledger.initialize(order_id="ord_001", total_amount="1000")
    services.ledger.record_payment(
        order_id="ord_001", stage="DEPOSIT", amount="250", provider_reference="mm_dep_1"
    )
    approve_through(order_id="ord_001", stage="FITTING_READY")
    fitting = _submit(services, "FITTING_READY")

    first = services.scheduler.run_sweep(now=clock() + timedelta(hours=49))
    assert first.failed == 1
    assert first.errors[0].error.startswith("PROVIDER_CONFIRMATION_MISSING")
    stored = services.tracker.get_milestone(milestone_id=fitting.milestone_id)
    assert stored.approval_status == "AUTO_APPROVED"
    assert services.ledger.get_state(order_id="ord_001").stage == "FITTING"

    state = services.ledger.record_payment(
        order_id="ord_001", stage="FITTING", amount="500", provider_reference="mm_fit_1"
    )

    assert state.stage == "FINAL"
    released = event_publisher.events(event_type="StageReleased")
    assert [event.payload["stage"] for event in released] == ["DEPOSIT", "FITTING"]
    assert services.scheduler.run_sweep(now=clock() + timedelta(hours=50)).processed == 0


class _RecordingFailingHandler:
    def __init__(self) -> None:
        self.calls = []

    def __call__(self, *, order_id, stage) -> None:
        self.calls.append((order_id, stage))
        raise RuntimeError("release worker unavailable")


def test_failing_stage_funded_handler_keeps_payment(services):
    handler = _RecordingFailingHandler()
    services.ledger.on_stage_funded(handler)
    services.ledger.initialize(order_id="ord_001", total_amount="1000")
    services.ledger.record_payment(
        order_id="ord_001", stage="DEPOSIT", amount="250", provider_reference="mm_dep_1"
    )

    state = services.ledger.record_payment(
        order_id="ord_001", stage="FITTING", amount="500", provider_reference="mm_fit_1"
    )

    assert handler.calls == [("ord_001", "FITTING")]
    assert state.stage == "FITTING"
    assert state.fitting_paid == Decimal("500.00")
