import json
from contextlib import closing
from datetime import datetime
from importlib.util import find_spec
from typing import Optional

from tailor_escrow.core.disputes.models import (
    DisputeRecord,
    DisputeResolutionRecord,
    DisputeStatus,
)
from tailor_escrow.infrastructure.postgres_migrations import apply_schema_migrations

_DISPUTE_COLUMNS = """
    dispute_id,
    order_id,
    milestone_id,
    created_by,
    category,
    title,
    description,
    status,
    priority,
    assigned_admin,
    sla_deadline,
    sla_warnings_sent_json,
    resolution_type,
    resolution_outcome,
    refund_amount,
    resolved_by,
    resolved_at,
    escalated_at,
    closed_at,
    created_at,
    updated_at,
    version
"""

_RESOLUTION_COLUMNS = """
    dispute_id,
    resolution_id,
    resolution_type,
    outcome,
    refund_amount,
    reason_code,
    admin_notes,
    customer_notified,
    tailor_notified,
    payment_processed,
    resolved_by,
    resolved_at
"""


class PostgresDisputeRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("DISPUTE_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("DISPUTE_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def create_dispute_if_absent(self, dispute: DisputeRecord) -> bool:
        query = f"""
            INSERT INTO disputes ({_DISPUTE_COLUMNS})
            VALUES (
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
            )
            ON CONFLICT DO NOTHING
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(query, _dispute_params(dispute))
            created = cursor.rowcount == 1
            connection.commit()
        return created

    def get_dispute(self, *, dispute_id: str) -> Optional[DisputeRecord]:
        query = f"SELECT {_DISPUTE_COLUMNS} FROM disputes WHERE dispute_id = %s"
        with closing(self._connect()) as connection:
            row = connection.execute(query, (dispute_id,)).fetchone()
        return _to_dispute(row) if row is not None else None

    def get_dispute_by_milestone(self, *, milestone_id: str) -> Optional[DisputeRecord]:
        query = f"SELECT {_DISPUTE_COLUMNS} FROM disputes WHERE milestone_id = %s"
        with closing(self._connect()) as connection:
            row = connection.execute(query, (milestone_id,)).fetchone()
        return _to_dispute(row) if row is not None else None

    def list_disputes(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[DisputeStatus] = None,
    ) -> list[DisputeRecord]:
        filters = []
        params: list = []
        if order_id is not None:
            filters.append("order_id = %s")
            params.append(order_id)
        if status is not None:
            filters.append("status = %s")
            params.append(status)
        where_clause = f"WHERE {' AND '.join(filters)}" if filters else ""
        query = f"""
            SELECT {_DISPUTE_COLUMNS}
            FROM disputes
            {where_clause}
            ORDER BY created_at ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, tuple(params)).fetchall()
        return [_to_dispute(row) for row in rows]

    def update_dispute(self, *, dispute: DisputeRecord, expected_version: int) -> bool:
        query = """
            UPDATE disputes SET
                status=%s,
                priority=%s,
                assigned_admin=%s,
                sla_deadline=%s,
                sla_warnings_sent_json=%s,
                resolution_type=%s,
                resolution_outcome=%s,
                refund_amount=%s,
                resolved_by=%s,
                resolved_at=%s,
                escalated_at=%s,
                closed_at=%s,
                updated_at=%s,
                version=%s
            WHERE dispute_id = %s AND version = %s
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                query,
                (
                    dispute.status,
                    dispute.priority,
                    dispute.assigned_admin,
                    dispute.sla_deadline.isoformat(),
                    json.dumps(dispute.sla_warnings_sent),
                    dispute.resolution_type,
                    dispute.resolution_outcome,
                    dispute.refund_amount,
                    dispute.resolved_by,
                    _optional_iso(dispute.resolved_at),
                    _optional_iso(dispute.escalated_at),
                    _optional_iso(dispute.closed_at),
                    dispute.updated_at.isoformat(),
                    dispute.version,
                    dispute.dispute_id,
                    expected_version,
                ),
            )
            updated = cursor.rowcount == 1
            connection.commit()
        return updated

    def save_resolution(self, resolution: DisputeResolutionRecord) -> None:
        query = f"""
            INSERT INTO dispute_resolutions ({_RESOLUTION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (dispute_id) DO UPDATE SET
                resolution_id=excluded.resolution_id,
                resolution_type=excluded.resolution_type,
                outcome=excluded.outcome,
                refund_amount=excluded.refund_amount,
                reason_code=excluded.reason_code,
                admin_notes=excluded.admin_notes,
                customer_notified=excluded.customer_notified,
                tailor_notified=excluded.tailor_notified,
                payment_processed=excluded.payment_processed,
                resolved_by=excluded.resolved_by,
                resolved_at=excluded.resolved_at
        """
        with closing(self._connect()) as connection:
            connection.execute(
                query,
                (
                    resolution.dispute_id,
                    resolution.resolution_id,
                    resolution.resolution_type,
                    resolution.outcome,
                    resolution.refund_amount,
                    resolution.reason_code,
                    resolution.admin_notes,
                    resolution.customer_notified,
                    resolution.tailor_notified,
                    resolution.payment_processed,
                    resolution.resolved_by,
                    resolution.resolved_at.isoformat(),
                ),
            )
            connection.commit()

    def get_resolution(self, *, dispute_id: str) -> Optional[DisputeResolutionRecord]:
        query = f"SELECT {_RESOLUTION_COLUMNS} FROM dispute_resolutions WHERE dispute_id = %s"
        with closing(self._connect()) as connection:
            row = connection.execute(query, (dispute_id,)).fetchone()
        if row is None:
            return None
        return DisputeResolutionRecord(
            resolution_id=row["resolution_id"],
            dispute_id=row["dispute_id"],
            resolution_type=row["resolution_type"],
            outcome=row["outcome"],
            refund_amount=row["refund_amount"],
            reason_code=row["reason_code"],
            admin_notes=row["admin_notes"],
            customer_notified=bool(row["customer_notified"]),
            tailor_notified=bool(row["tailor_notified"]),
            payment_processed=bool(row["payment_processed"]),
            resolved_by=row["resolved_by"],
            resolved_at=datetime.fromisoformat(row["resolved_at"]),
        )

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_schema_migrations(connection=connection, namespace="disputes")


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _dispute_params(dispute: DisputeRecord) -> tuple:
    return (
        dispute.dispute_id,
        dispute.order_id,
        dispute.milestone_id,
        dispute.created_by,
        dispute.category,
        dispute.title,
        dispute.description,
        dispute.status,
        dispute.priority,
        dispute.assigned_admin,
        dispute.sla_deadline.isoformat(),
        json.dumps(dispute.sla_warnings_sent),
        dispute.resolution_type,
        dispute.resolution_outcome,
        dispute.refund_amount,
        dispute.resolved_by,
        _optional_iso(dispute.resolved_at),
        _optional_iso(dispute.escalated_at),
        _optional_iso(dispute.closed_at),
        dispute.created_at.isoformat(),
        dispute.updated_at.isoformat(),
        dispute.version,
    )


def _to_dispute(row) -> DisputeRecord:
    return DisputeRecord(
        dispute_id=row["dispute_id"],
        order_id=row["order_id"],
        milestone_id=row["milestone_id"],
        created_by=row["created_by"],
        category=row["category"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"],
        assigned_admin=row["assigned_admin"],
        sla_deadline=datetime.fromisoformat(row["sla_deadline"]),
        sla_warnings_sent=json.loads(row["sla_warnings_sent_json"] or "[]"),
        resolution_type=row["resolution_type"],
        resolution_outcome=row["resolution_outcome"],
        refund_amount=row["refund_amount"],
        resolved_by=row["resolved_by"],
        resolved_at=_optional_datetime(row["resolved_at"]),
        escalated_at=_optional_datetime(row["escalated_at"]),
        closed_at=_optional_datetime(row["closed_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        version=int(row["version"]),
    )
