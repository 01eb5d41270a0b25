from typing import Optional, Protocol

from tailor_escrow.core.disputes.models import (
    DisputeRecord,
    DisputeResolutionRecord,
    DisputeStatus,
)


class DisputeRepository(Protocol):
    def create_dispute_if_absent(self, dispute: DisputeRecord) -> bool: ...

    def get_dispute(self, *, dispute_id: str) -> Optional[DisputeRecord]: ...

    def get_dispute_by_milestone(self, *, milestone_id: str) -> Optional[DisputeRecord]: ...

    def list_disputes(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[DisputeStatus] = None,
    ) -> list[DisputeRecord]: ...

    def update_dispute(self, *, dispute: DisputeRecord, expected_version: int) -> bool: ...
    def save_resolution(self, resolution: DisputeResolutionRecord) -> None: ...

    def get_resolution(self, *, dispute_id: str) -> Optional[DisputeResolutionRecord]: ...
