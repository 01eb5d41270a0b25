from copy import deepcopy
from threading import Lock
from typing import Optional

from tailor_escrow.core.escrow.models import EscrowHistoryEntry, EscrowState
from tailor_escrow.core.escrow.repository import EscrowRepository


class InMemoryEscrowRepository(EscrowRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._states: dict[str, EscrowState] = {}
        self._history: dict[str, list[EscrowHistoryEntry]] = {}

    def create_state(self, state: EscrowState) -> bool:
        with self._lock:
            if state.order_id in self._states:
                return False
            self._states[state.order_id] = deepcopy(state.model_copy(update={"stage_history": []}))
            self._history[state.order_id] = deepcopy(list(state.stage_history))
            return True

    def get_state(self, *, order_id: str) -> Optional[EscrowState]:
        with self._lock:
            state = self._states.get(order_id)
            if state is None:
                return None
            return deepcopy(
                state.model_copy(update={"stage_history": list(self._history[order_id])})
            )

    def commit_state(
        self,
        *,
        state: EscrowState,
        expected_version: int,
        entries: list[EscrowHistoryEntry],
    ) -> bool:
        with self._lock:
            current = self._states.get(state.order_id)
            if current is None or current.version != expected_version:
                return False
            self._states[state.order_id] = deepcopy(state.model_copy(update={"stage_history": []}))
            self._history[state.order_id].extend(deepcopy(entries))
            return True

    def list_history(self, *, order_id: str) -> list[EscrowHistoryEntry]:
        with self._lock:
            return deepcopy(self._history.get(order_id, []))
