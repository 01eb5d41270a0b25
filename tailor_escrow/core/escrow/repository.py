from typing import Optional, Protocol

from tailor_escrow.core.escrow.models import EscrowHistoryEntry, EscrowState


class EscrowRepository(Protocol):
    def create_state(self, state: EscrowState) -> bool: ...

    def get_state(self, *, order_id: str) -> Optional[EscrowState]: ...

    def commit_state(
        self,
        *,
        state: EscrowState,
        expected_version: int,
        entries: list[EscrowHistoryEntry],
    ) -> bool: ...

    def list_history(self, *, order_id: str) -> list[EscrowHistoryEntry]: ...
