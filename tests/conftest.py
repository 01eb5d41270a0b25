"""
FILE: tests/conftest.py
Shared fixtures for escrow, milestone and dispute tests.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tailor_escrow.api.routers.escrow_config import EscrowRepositories
from tailor_escrow.api.routers.escrow_runtime import EscrowServices, build_escrow_services
from tailor_escrow.core.events import InMemoryEventPublisher
from tailor_escrow.core.milestones import MILESTONE_SEQUENCE
from tailor_escrow.infrastructure.disputes import InMemoryDisputeRepository
from tailor_escrow.infrastructure.escrow import InMemoryEscrowRepository
from tailor_escrow.infrastructure.milestones import InMemoryMilestoneRepository

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _has_marker(item: pytest.Item, name: str) -> bool:
    return item.get_closest_marker(name) is not None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if _has_marker(item, "unit") or _has_marker(item, "integration"):
            continue

        path = Path(str(item.fspath)).as_posix().lower()
        if "/tests/api/" in path or "/tests/infrastructure/" in path:
            item.add_marker(pytest.mark.integration)
            continue
        item.add_marker(pytest.mark.unit)


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def event_publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def services(clock, event_publisher) -> EscrowServices:
    return build_escrow_services(
        repositories=EscrowRepositories(
            escrow=InMemoryEscrowRepository(),
            milestones=InMemoryMilestoneRepository(),
            disputes=InMemoryDisputeRepository(),
        ),
        event_publisher=event_publisher,
        clock=clock,
    )


@pytest.fixture(autouse=True)
def escrow_runtime_env(monkeypatch: pytest.MonkeyPatch):
    """Pin runtime settings so tests do not pick up the caller's environment."""

    for name in (
        "APP_PERSISTENCE_PROFILE",
        "AUTO_APPROVAL_SWEEP_ENABLED",
        "CRON_SECRET",
        "ESCROW_POSTGRES_DSN",
        "ESCROW_SPLIT_POLICY_CATALOG_JSON",
        "MILESTONE_AUTO_APPROVAL_WINDOW_HOURS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ESCROW_STORE_BACKEND", "IN_MEMORY")


@pytest.fixture
def approve_through(services):
    """Submit and approve every milestone before ``stage`` for an order."""

    def _approve_through(*, order_id: str, stage: str) -> None:
        for current in MILESTONE_SEQUENCE[: MILESTONE_SEQUENCE.index(stage)]:
            milestone = services.tracker.submit_evidence(
                order_id=order_id,
                stage=current,
                evidence_url=f"https://cdn.example.com/{order_id}/{current.lower()}.jpg",
                submitted_by="tailor_01",
            )
            services.approvals.approve(
                milestone_id=milestone.milestone_id, actor_id="customer_01"
            )

    return _approve_through
