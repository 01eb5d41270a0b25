import json
from contextlib import closing
from datetime import datetime
from importlib.util import find_spec
from typing import Optional

from tailor_escrow.core.escrow.models import EscrowHistoryEntry, EscrowState
from tailor_escrow.infrastructure.postgres_migrations import apply_schema_migrations

_STATE_COLUMNS = """
    order_id,
    policy_id,
    total_amount,
    stage,
    deposit_amount,
    fitting_amount,
    final_amount,
    deposit_paid,
    fitting_paid,
    final_paid,
    released_amount,
    refunded_amount,
    balance,
    stage_refunds_json,
    refunded_stages_json,
    version,
    created_at,
    updated_at
"""

_HISTORY_COLUMNS = """
    entry_id,
    order_id,
    transaction_type,
    stage,
    from_stage,
    to_stage,
    amount,
    reference_id,
    notes,
    recorded_at
"""


class PostgresEscrowRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("ESCROW_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("ESCROW_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def create_state(self, state: EscrowState) -> bool:
        query = f"""
            INSERT INTO escrow_states ({_STATE_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (order_id) DO NOTHING
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(query, _state_params(state))
            if cursor.rowcount != 1:
                connection.rollback()
                return False
            for entry in state.stage_history:
                self._insert_entry(connection=connection, entry=entry)
            connection.commit()
        return True

    def get_state(self, *, order_id: str) -> Optional[EscrowState]:
        state_query = f"SELECT {_STATE_COLUMNS} FROM escrow_states WHERE order_id = %s"
        with closing(self._connect()) as connection:
            row = connection.execute(state_query, (order_id,)).fetchone()
            if row is None:
                return None
            history = self._fetch_history(connection=connection, order_id=order_id)
        return _to_state(row, history)

    def commit_state(
        self,
        *,
        state: EscrowState,
        expected_version: int,
        entries: list[EscrowHistoryEntry],
    ) -> bool:
        query = """
            UPDATE escrow_states SET
                stage=%s,
                deposit_paid=%s,
                fitting_paid=%s,
                final_paid=%s,
                released_amount=%s,
                refunded_amount=%s,
                balance=%s,
                stage_refunds_json=%s,
                refunded_stages_json=%s,
                version=%s,
                updated_at=%s
            WHERE order_id = %s AND version = %s
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                query,
                (
                    state.stage,
                    state.deposit_paid,
                    state.fitting_paid,
                    state.final_paid,
                    state.released_amount,
                    state.refunded_amount,
                    state.balance,
                    _json_dump({key: str(value) for key, value in state.stage_refunds.items()}),
                    _json_dump(list(state.refunded_stages)),
                    state.version,
                    state.updated_at.isoformat(),
                    state.order_id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                return False
            for entry in entries:
                self._insert_entry(connection=connection, entry=entry)
            connection.commit()
        return True

    def list_history(self, *, order_id: str) -> list[EscrowHistoryEntry]:
        with closing(self._connect()) as connection:
            return self._fetch_history(connection=connection, order_id=order_id)

    def _fetch_history(self, *, connection, order_id: str) -> list[EscrowHistoryEntry]:
        query = f"""
            SELECT {_HISTORY_COLUMNS}
            FROM escrow_history
            WHERE order_id = %s
            ORDER BY entry_seq ASC
        """
        rows = connection.execute(query, (order_id,)).fetchall()
        return [_to_entry(row) for row in rows]

    def _insert_entry(self, *, connection, entry: EscrowHistoryEntry) -> None:
        query = f"""
            INSERT INTO escrow_history ({_HISTORY_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        connection.execute(
            query,
            (
                entry.entry_id,
                entry.order_id,
                entry.transaction_type,
                entry.stage,
                entry.from_stage,
                entry.to_stage,
                entry.amount,
                entry.reference_id,
                entry.notes,
                entry.recorded_at.isoformat(),
            ),
        )

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_schema_migrations(connection=connection, namespace="escrow")


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _json_dump(value) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _state_params(state: EscrowState) -> tuple:
    return (
        state.order_id,
        state.policy_id,
        state.total_amount,
        state.stage,
        state.deposit_amount,
        state.fitting_amount,
        state.final_amount,
        state.deposit_paid,
        state.fitting_paid,
        state.final_paid,
        state.released_amount,
        state.refunded_amount,
        state.balance,
        _json_dump({key: str(value) for key, value in state.stage_refunds.items()}),
        _json_dump(list(state.refunded_stages)),
        state.version,
        state.created_at.isoformat(),
        state.updated_at.isoformat(),
    )


def _to_state(row, history: list[EscrowHistoryEntry]) -> EscrowState:
    return EscrowState(
        order_id=row["order_id"],
        policy_id=row["policy_id"],
        total_amount=row["total_amount"],
        stage=row["stage"],
        deposit_amount=row["deposit_amount"],
        fitting_amount=row["fitting_amount"],
        final_amount=row["final_amount"],
        deposit_paid=row["deposit_paid"],
        fitting_paid=row["fitting_paid"],
        final_paid=row["final_paid"],
        released_amount=row["released_amount"],
        refunded_amount=row["refunded_amount"],
        balance=row["balance"],
        stage_refunds=json.loads(row["stage_refunds_json"]),
        refunded_stages=json.loads(row["refunded_stages_json"]),
        version=int(row["version"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        stage_history=history,
    )


def _to_entry(row) -> EscrowHistoryEntry:
    return EscrowHistoryEntry(
        entry_id=row["entry_id"],
        order_id=row["order_id"],
        transaction_type=row["transaction_type"],
        stage=row["stage"],
        from_stage=row["from_stage"],
        to_stage=row["to_stage"],
        amount=row["amount"],
        reference_id=row["reference_id"],
        notes=row["notes"],
        recorded_at=datetime.fromisoformat(row["recorded_at"]),
    )
