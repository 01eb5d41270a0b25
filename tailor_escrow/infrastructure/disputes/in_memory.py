from copy import deepcopy
from threading import Lock
from typing import Optional

from tailor_escrow.core.disputes.models import (
    DisputeRecord,
    DisputeResolutionRecord,
    DisputeStatus,
)
from tailor_escrow.core.disputes.repository import DisputeRepository


class InMemoryDisputeRepository(DisputeRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._disputes: dict[str, DisputeRecord] = {}
        self._by_milestone: dict[str, str] = {}
        self._resolutions: dict[str, DisputeResolutionRecord] = {}

    def create_dispute_if_absent(self, dispute: DisputeRecord) -> bool:
        with self._lock:
            if dispute.dispute_id in self._disputes:
                return False
            if dispute.milestone_id is not None and dispute.milestone_id in self._by_milestone:
                return False
            self._disputes[dispute.dispute_id] = deepcopy(dispute)
            if dispute.milestone_id is not None:
                self._by_milestone[dispute.milestone_id] = dispute.dispute_id
            return True

    def get_dispute(self, *, dispute_id: str) -> Optional[DisputeRecord]:
        with self._lock:
            dispute = self._disputes.get(dispute_id)
            return deepcopy(dispute) if dispute is not None else None

    def get_dispute_by_milestone(self, *, milestone_id: str) -> Optional[DisputeRecord]:
        with self._lock:
            dispute_id = self._by_milestone.get(milestone_id)
            if dispute_id is None:
                return None
            return deepcopy(self._disputes[dispute_id])

    def list_disputes(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[DisputeStatus] = None,
    ) -> list[DisputeRecord]:
        with self._lock:
            rows = [
                deepcopy(dispute)
                for dispute in self._disputes.values()
                if (order_id is None or dispute.order_id == order_id)
                and (status is None or dispute.status == status)
            ]
        return sorted(rows, key=lambda dispute: dispute.created_at)

    def update_dispute(self, *, dispute: DisputeRecord, expected_version: int) -> bool:
        with self._lock:
            current = self._disputes.get(dispute.dispute_id)
            if current is None or current.version != expected_version:
                return False
            self._disputes[dispute.dispute_id] = deepcopy(dispute)
            return True

    def save_resolution(self, resolution: DisputeResolutionRecord) -> None:
        with self._lock:
            self._resolutions[resolution.dispute_id] = deepcopy(resolution)

    def get_resolution(self, *, dispute_id: str) -> Optional[DisputeResolutionRecord]:
        with self._lock:
            resolution = self._resolutions.get(dispute_id)
            return deepcopy(resolution) if resolution is not None else None
