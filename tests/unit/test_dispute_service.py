from datetime import timedelta
from decimal import Decimal

from tailor_escrow.api.routers.escrow_config import EscrowRepositories
from tailor_escrow.api.routers.escrow_runtime import build_escrow_services
from tailor_escrow.core.disputes import SLA_HOURS, suggested_priority
from tailor_escrow.core.errors import (
    DisputeNotFoundError,
    DisputeTransitionError,
    DisputeValidationError,
    EscrowNotFoundError,
    InsufficientBalanceError,
    RefundAmountRequiredError,
)
from tailor_escrow.infrastructure.disputes import InMemoryDisputeRepository
from tailor_escrow.infrastructure.escrow import InMemoryEscrowRepository
from tailor_escrow.infrastructure.milestones import InMemoryMilestoneRepository


def _fund_deposit(services, order_id="ord_001"):
    services.ledger.initialize(order_id=order_id, total_amount="1000")
    services.ledger.record_payment(
        order_id=order_id, stage="DEPOSIT", amount="250", provider_reference="mm_dep_1"
    )


def _open(services, order_id="ord_001", **overrides):
    payload = {
        "order_id": order_id,
        "created_by": "customer_01",
        "category": "QUALITY_ISSUE",
        "title": "Stitching coming apart",
        "description": "Seams on the left sleeve opened after one wear",
    }
    payload.update(overrides)
    return services.disputes.open_dispute(**payload)


def _in_progress(services, **overrides):
    dispute = _open(services, **overrides)
    return services.disputes.assign_admin(dispute_id=dispute.dispute_id, admin_id="admin_01")


def test_sla_hours_and_category_priorities():
    assert SLA_HOURS == {"CRITICAL": 4, "HIGH": 24, "MEDIUM": 48, "LOW": 72}
    assert suggested_priority("MILESTONE_REJECTION") == "HIGH"
    assert suggested_priority("PAYMENT_PROBLEM") == "HIGH"
    assert suggested_priority("DELIVERY_DELAY") == "MEDIUM"
    assert suggested_priority("OTHER") == "MEDIUM"


def test_open_dispute_derives_priority_and_deadline(services, clock, event_publisher):
    dispute = _open(services, category="DELIVERY_DELAY", title="Suit is late")

    assert dispute.dispute_id.startswith("dsp_")
    assert dispute.status == "OPEN"
    assert dispute.priority == "MEDIUM"
    assert dispute.sla_deadline == clock() + timedelta(hours=48)
    assert event_publisher.events(event_type="DisputeOpened")[0].payload["priority"] == "MEDIUM"

    override = _open(services, priority="CRITICAL")
    assert override.priority == "CRITICAL"
    assert override.sla_deadline == clock() + timedelta(hours=4)


def test_one_dispute_per_milestone(services):
    first = _open(services, milestone_id="mil_001")
    second = _open(services, milestone_id="mil_001", title="Another complaint")

    assert second.dispute_id == first.dispute_id
    assert len(services.disputes.list_disputes(order_id="ord_001")) == 1


def test_open_dispute_validation(services):
    cases = [
        ({"title": "Bad"}, "DISPUTE_TITLE_LENGTH"),
        ({"title": "x" * 201}, "DISPUTE_TITLE_LENGTH"),
        ({"description": " "}, "DISPUTE_DESCRIPTION_REQUIRED"),
        ({"description": "x" * 2001}, "DISPUTE_DESCRIPTION_TOO_LONG"),
        ({"category": "BILLING"}, "DISPUTE_CATEGORY_INVALID"),
        ({"priority": "URGENT"}, "DISPUTE_PRIORITY_INVALID"),
        ({"created_by": ""}, "DISPUTE_CREATOR_REQUIRED"),
    ]
    for overrides, code in cases:
        try:
            _open(services, **overrides)
        except DisputeValidationError as exc:
            assert str(exc).startswith(code)
        else:
            raise AssertionError(f"Expected DisputeValidationError {code}")


def test_resolution_requires_admin_assignment(services):
    _fund_deposit(services)
    dispute = _open(services)

    try:
        services.disputes.resolve(
            dispute_id=dispute.dispute_id,
            resolution_type="NO_ACTION",
            outcome="Nothing to do",
            resolved_by="admin_01",
        )
    except DisputeTransitionError as exc:
        assert str(exc) == "ADMIN_ASSIGNMENT_REQUIRED"
    else:
        raise AssertionError("Expected DisputeTransitionError for unassigned dispute")


def test_refund_resolution_moves_money_and_awaits_payment_confirmation(
    services, event_publisher
):
    _fund_deposit(services)
    dispute = _in_progress(services)
    assert dispute.status == "IN_PROGRESS"
    assert dispute.assigned_admin == "admin_01"

    result = services.disputes.resolve(
        dispute_id=dispute.dispute_id,
        resolution_type="FULL_REFUND",
        outcome="Garment unusable",
        resolved_by="admin_01",
        refund_amount="500",
    )

    assert result.dispute.status == "RESOLVED"
    assert result.dispute.refund_amount == Decimal("500.00")
    assert result.resolution.reason_code == "FULL_REFUND_GRANTED"
    assert result.resolution.payment_processed is False
    assert result.escrow_state.balance == Decimal("250.00")
    assert result.escrow_state.refunded_amount == Decimal("500.00")
    assert len(event_publisher.events(event_type="DisputeResolved")) == 1

    processed = services.disputes.mark_refund_processed(dispute_id=dispute.dispute_id)
    assert processed.payment_processed is True
    stored = services.disputes.get_resolution(dispute_id=dispute.dispute_id)
    assert stored.payment_processed is True


def test_continuation_resolution_leaves_balance_untouched(services):
    _fund_deposit(services)
    dispute = _in_progress(services)

    result = services.disputes.resolve(
        dispute_id=dispute.dispute_id,
        resolution_type="ORDER_COMPLETION",
        outcome="Tailor to redo the sleeves",
        resolved_by="admin_01",
    )

    assert result.resolution.payment_processed is True
    assert result.resolution.refund_amount is None
    assert result.escrow_state.balance == Decimal("750.00")
    assert result.escrow_state.stage_history[-1].transaction_type == "RESOLUTION_NOTE"


def test_refund_amount_rules(services):
    _fund_deposit(services)
    dispute = _in_progress(services)

    try:
        services.disputes.resolve(
            dispute_id=dispute.dispute_id,
            resolution_type="PARTIAL_REFUND",
            outcome="Half back",
            resolved_by="admin_01",
        )
    except RefundAmountRequiredError:
        pass
    else:
        raise AssertionError("Expected RefundAmountRequiredError")

    try:
        services.disputes.resolve(
            dispute_id=dispute.dispute_id,
            resolution_type="PARTIAL_REFUND",
            outcome="Too much back",
            resolved_by="admin_01",
            refund_amount="900",
        )
    except InsufficientBalanceError:
        pass
    else:
        raise AssertionError("Expected InsufficientBalanceError")

    try:
        services.disputes.resolve(
            dispute_id=dispute.dispute_id,
            resolution_type="NO_ACTION",
            outcome="Nothing owed",
            resolved_by="admin_01",
            refund_amount="10",
        )
    except DisputeValidationError as exc:
        assert str(exc).startswith("DISPUTE_REFUND_NOT_ALLOWED")
    else:
        raise AssertionError("Expected DisputeValidationError for refund on NO_ACTION")

    assert services.disputes.get_dispute(dispute_id=dispute.dispute_id).status == "IN_PROGRESS"


def test_ledger_failure_reverts_resolution(services):
    dispute = _in_progress(services, order_id="ord_unfunded")

    try:
        services.disputes.resolve(
            dispute_id=dispute.dispute_id,
            resolution_type="NO_ACTION",
            outcome="Nothing owed",
            resolved_by="admin_01",
        )
    except EscrowNotFoundError as exc:
        assert str(exc) == "ESCROW_NOT_FOUND"
    else:
        raise AssertionError("Expected ledger error for order without escrow")

    stored = services.disputes.get_dispute(dispute_id=dispute.dispute_id)
    assert stored.status == "IN_PROGRESS"
    assert stored.resolution_type is None


def test_resolving_twice_is_rejected(services):
    _fund_deposit(services)
    dispute = _in_progress(services)
    services.disputes.resolve(
        dispute_id=dispute.dispute_id,
        resolution_type="PARTIAL_REFUND",
        outcome="Partial refund",
        resolved_by="admin_01",
        refund_amount="100",
    )

    try:
        services.disputes.resolve(
            dispute_id=dispute.dispute_id,
            resolution_type="PARTIAL_REFUND",
            outcome="Partial refund",
            resolved_by="admin_01",
            refund_amount="100",
        )
    except DisputeTransitionError as exc:
        assert "RESOLVED" in str(exc)
    else:
        raise AssertionError("Expected DisputeTransitionError on second resolution")
    assert services.ledger.get_state(order_id="ord_001").refunded_amount == Decimal("100.00")


def test_escalation_raises_priority_and_tightens_deadline(services, clock, event_publisher):
    dispute = _in_progress(services, category="DELIVERY_DELAY", title="Suit is late")
    clock.advance(hours=2)

    escalated = services.disputes.escalate(
        dispute_id=dispute.dispute_id, actor_id="admin_01", reason="Tailor unresponsive"
    )

    assert escalated.status == "ESCALATED"
    assert escalated.priority == "HIGH"
    assert escalated.sla_deadline == dispute.created_at + timedelta(hours=24)
    assert escalated.escalated_at == clock()
    assert len(event_publisher.events(event_type="DisputeEscalated")) == 1

    try:
        services.disputes.escalate(dispute_id=dispute.dispute_id, actor_id="admin_01")
    except DisputeTransitionError:
        pass
    else:
        raise AssertionError("Expected escalated dispute to refuse another escalation")


def test_priority_change_recomputes_deadline_from_creation(services, clock):
    dispute = _open(services)
    clock.advance(hours=5)

    updated = services.disputes.update_priority(
        dispute_id=dispute.dispute_id, priority="LOW", actor_id="admin_01"
    )

    assert updated.priority == "LOW"
    assert updated.sla_deadline == dispute.created_at + timedelta(hours=72)


def test_close_requires_resolved_or_escalated(services):
    _fund_deposit(services)
    dispute = _in_progress(services)

    try:
        services.disputes.close(dispute_id=dispute.dispute_id, actor_id="admin_01")
    except DisputeTransitionError:
        pass
    else:
        raise AssertionError("Expected in-progress dispute to refuse closing")

    services.disputes.resolve(
        dispute_id=dispute.dispute_id,
        resolution_type="NO_ACTION",
        outcome="Customer satisfied",
        resolved_by="admin_01",
    )
    closed = services.disputes.close(dispute_id=dispute.dispute_id, actor_id="admin_01")

    assert closed.status == "CLOSED"
    assert closed.closed_at is not None
    assert closed.resolved_by == "admin_01"


def test_unknown_dispute_raises_not_found(services):
    try:
        services.disputes.get_dispute(dispute_id="dsp_missing")
    except DisputeNotFoundError as exc:
        assert str(exc) == "DISPUTE_NOT_FOUND"
    else:
        raise AssertionError("Expected DisputeNotFoundError")


def test_overdue_detection(services, clock):
    high = _open(services)
    medium = _open(services, category="DELIVERY_DELAY", title="Suit is late")

    assert services.disputes.is_overdue(dispute_id=high.dispute_id) is False

    later = clock() + timedelta(hours=25)
    assert services.disputes.is_overdue(dispute_id=high.dispute_id, now=later) is True
    assert services.disputes.is_overdue(dispute_id=medium.dispute_id, now=later) is False
    assert [d.dispute_id for d in services.disputes.list_overdue(now=later)] == [high.dispute_id]


def test_sla_warning_sweep_emits_each_threshold_once(services, clock, event_publisher):
    dispute = _open(services, category="DELIVERY_DELAY", title="Suit is late")

    quiet = services.disputes.sla_warning_sweep(now=clock() + timedelta(hours=23))
    assert quiet.processed == 1
    assert quiet.warnings_emitted == 0

    day_before = services.disputes.sla_warning_sweep(now=clock() + timedelta(hours=25))
    assert day_before.warnings_emitted == 1
    assert day_before.warned_dispute_ids == [dispute.dispute_id]

    repeat = services.disputes.sla_warning_sweep(now=clock() + timedelta(hours=26))
    assert repeat.warnings_emitted == 0

    # Thresholds skipped between sweeps are folded into the tightest one.
    final_hour = services.disputes.sla_warning_sweep(
        now=clock() + timedelta(hours=47, minutes=30)
    )
    assert final_hour.warnings_emitted == 1
    stored = services.disputes.get_dispute(dispute_id=dispute.dispute_id)
    assert stored.sla_warnings_sent == [24, 6, 1]

    past_deadline = services.disputes.sla_warning_sweep(now=clock() + timedelta(hours=49))
    assert past_deadline.warnings_emitted == 0

    warnings = event_publisher.events(event_type="SlaWarning")
    assert [event.payload["hours_before_deadline"] for event in warnings] == [24, 1]


def test_escalated_dispute_is_not_overdue(services, clock):
    dispute = _in_progress(services)
    escalated = services.disputes.escalate(
        dispute_id=dispute.dispute_id, actor_id="admin_01", reason="Needs senior review"
    )

    later = escalated.sla_deadline + timedelta(hours=1)
    assert services.disputes.is_overdue(dispute_id=dispute.dispute_id, now=later) is False
    assert services.disputes.list_overdue(now=later) == []


def _services_with_disputes(repository, clock, event_publisher):
    return build_escrow_services(
        repositories=EscrowRepositories(
            escrow=InMemoryEscrowRepository(),
            milestones=InMemoryMilestoneRepository(),
            disputes=repository,
        ),
        event_publisher=event_publisher,
        clock=clock,
    )


class _InterleavingDisputeRepository(InMemoryDisputeRepository):
    """Runs ``interleave`` once, right before the next dispute update is stored."""

    def __init__(self) -> None:
        super().__init__()
        self.interleave = None

    def update_dispute(self, *, dispute, expected_version):
        pending, self.interleave = self.interleave, None
        if pending is not None:
            pending()
        return super().update_dispute(dispute=dispute, expected_version=expected_version)


def test_stale_dispute_update_does_not_overwrite_concurrent_change(clock, event_publisher):
    repository = _InterleavingDisputeRepository()
    services = _services_with_disputes(repository, clock, event_publisher)
    dispute = _in_progress(services)
    assert dispute.version == 2

    repository.interleave = lambda: services.disputes.assign_admin(
        dispute_id=dispute.dispute_id, admin_id="admin_02"
    )
    try:
        services.disputes.update_priority(
            dispute_id=dispute.dispute_id, priority="LOW", actor_id="admin_01"
        )
    except DisputeTransitionError as exc:
        assert str(exc) == "DISPUTE_CONCURRENT_UPDATE"
    else:
        raise AssertionError("Expected stale priority update to be refused")

    stored = services.disputes.get_dispute(dispute_id=dispute.dispute_id)
    assert stored.assigned_admin == "admin_02"
    assert stored.priority == "HIGH"
    assert stored.version == 3
    stale = dispute.model_copy(update={"priority": "LOW", "version": 3})
    assert repository.update_dispute(dispute=stale, expected_version=2) is False


class _FlakyResolutionRepository(InMemoryDisputeRepository):
    def __init__(self) -> None:
        super().__init__()
        self.failures = 0

    def save_resolution(self, resolution) -> None:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("resolution store unavailable")
        super().save_resolution(resolution)


def test_reapply_resolution_records_without_refunding_twice(clock, event_publisher):
    repository = _FlakyResolutionRepository()
    services = _services_with_disputes(repository, clock, event_publisher)
    _fund_deposit(services)
    dispute = _in_progress(services)

    repository.failures = 1
    try:
        services.disputes.resolve(
            dispute_id=dispute.dispute_id,
            resolution_type="FULL_REFUND",
            outcome="Garment unusable",
            resolved_by="admin_01",
            refund_amount="500",
        )
    except ConnectionError:
        pass
    else:
        raise AssertionError("Expected resolution store failure")

    stored = services.disputes.get_dispute(dispute_id=dispute.dispute_id)
    assert stored.status == "RESOLVED"
    assert repository.get_resolution(dispute_id=dispute.dispute_id) is None
    assert services.ledger.get_state(order_id="ord_001").refunded_amount == Decimal("500.00")

    result = services.disputes.reapply_resolution(dispute_id=dispute.dispute_id)

    assert result.resolution.resolution_type == "FULL_REFUND"
    assert result.resolution.refund_amount == Decimal("500.00")
    assert result.resolution.payment_processed is False
    assert result.resolution.resolved_by == "admin_01"
    assert result.escrow_state.refunded_amount == Decimal("500.00")
    assert result.escrow_state.balance == Decimal("250.00")

    again = services.disputes.reapply_resolution(dispute_id=dispute.dispute_id)
    assert again.resolution.resolution_id == result.resolution.resolution_id
    assert again.escrow_state.version == result.escrow_state.version


def test_reapply_resolution_requires_resolved_dispute(services):
    dispute = _in_progress(services)

    try:
        services.disputes.reapply_resolution(dispute_id=dispute.dispute_id)
    except DisputeTransitionError as exc:
        assert str(exc) == "DISPUTE_NOT_RESOLVED: IN_PROGRESS"
    else:
        raise AssertionError("Expected unresolved dispute to be refused")
