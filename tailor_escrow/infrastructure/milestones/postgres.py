from contextlib import closing
from datetime import datetime, timezone
from importlib.util import find_spec
from typing import Optional

from tailor_escrow.core.milestones.models import Milestone, MilestoneApprovalRecord
from tailor_escrow.infrastructure.postgres_migrations import apply_schema_migrations

_MILESTONE_COLUMNS = """
    milestone_id,
    order_id,
    stage,
    attempt_no,
    evidence_url,
    evidence_mime_type,
    notes,
    verified_at,
    verified_by,
    auto_approval_deadline,
    approval_status,
    customer_reviewed_at,
    reviewed_by,
    rejection_reason,
    dispute_id,
    created_at,
    updated_at
"""


class PostgresMilestoneRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("MILESTONE_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("MILESTONE_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def create_milestone_if_absent(self, milestone: Milestone) -> bool:
        query = f"""
            INSERT INTO milestones ({_MILESTONE_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                query,
                (
                    milestone.milestone_id,
                    milestone.order_id,
                    milestone.stage,
                    milestone.attempt_no,
                    milestone.evidence_url,
                    milestone.evidence_mime_type,
                    milestone.notes,
                    _utc_iso(milestone.verified_at),
                    milestone.verified_by,
                    _utc_iso(milestone.auto_approval_deadline),
                    milestone.approval_status,
                    _optional_iso(milestone.customer_reviewed_at),
                    milestone.reviewed_by,
                    milestone.rejection_reason,
                    milestone.dispute_id,
                    _utc_iso(milestone.created_at),
                    _utc_iso(milestone.updated_at),
                ),
            )
            created = cursor.rowcount == 1
            connection.commit()
        return created

    def get_milestone(self, *, milestone_id: str) -> Optional[Milestone]:
        query = f"SELECT {_MILESTONE_COLUMNS} FROM milestones WHERE milestone_id = %s"
        with closing(self._connect()) as connection:
            row = connection.execute(query, (milestone_id,)).fetchone()
        return _to_milestone(row) if row is not None else None

    def list_milestones(self, *, order_id: str) -> list[Milestone]:
        query = f"""
            SELECT {_MILESTONE_COLUMNS}
            FROM milestones
            WHERE order_id = %s
            ORDER BY created_at ASC, attempt_no ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (order_id,)).fetchall()
        return [_to_milestone(row) for row in rows]

    def list_due_for_auto_approval(self, *, now: datetime, limit: int) -> list[Milestone]:
        query = f"""
            SELECT {_MILESTONE_COLUMNS}
            FROM milestones
            WHERE approval_status = 'PENDING' AND auto_approval_deadline <= %s
            ORDER BY auto_approval_deadline ASC
            LIMIT %s
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (_utc_iso(now), limit)).fetchall()
        return [_to_milestone(row) for row in rows]

    def decide_milestone(
        self, *, milestone: Milestone, approval: MilestoneApprovalRecord
    ) -> bool:
        update_query = """
            UPDATE milestones SET
                approval_status=%s,
                customer_reviewed_at=%s,
                reviewed_by=%s,
                rejection_reason=%s,
                updated_at=%s
            WHERE milestone_id = %s AND approval_status = 'PENDING'
        """
        insert_query = """
            INSERT INTO milestone_approvals (
                approval_id,
                milestone_id,
                order_id,
                actor_id,
                action,
                comment,
                decided_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                update_query,
                (
                    milestone.approval_status,
                    _optional_iso(milestone.customer_reviewed_at),
                    milestone.reviewed_by,
                    milestone.rejection_reason,
                    _utc_iso(milestone.updated_at),
                    milestone.milestone_id,
                ),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                return False
            connection.execute(
                insert_query,
                (
                    approval.approval_id,
                    approval.milestone_id,
                    approval.order_id,
                    approval.actor_id,
                    approval.action,
                    approval.comment,
                    _utc_iso(approval.decided_at),
                ),
            )
            connection.commit()
        return True

    def attach_dispute(self, *, milestone_id: str, dispute_id: str, updated_at: datetime) -> None:
        query = """
            UPDATE milestones SET dispute_id=%s, updated_at=%s
            WHERE milestone_id = %s
        """
        with closing(self._connect()) as connection:
            connection.execute(query, (dispute_id, _utc_iso(updated_at), milestone_id))
            connection.commit()

    def list_approvals(self, *, milestone_id: str) -> list[MilestoneApprovalRecord]:
        query = """
            SELECT
                approval_id,
                milestone_id,
                order_id,
                actor_id,
                action,
                comment,
                decided_at
            FROM milestone_approvals
            WHERE milestone_id = %s
            ORDER BY decided_at ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (milestone_id,)).fetchall()
        return [
            MilestoneApprovalRecord(
                approval_id=row["approval_id"],
                milestone_id=row["milestone_id"],
                order_id=row["order_id"],
                actor_id=row["actor_id"],
                action=row["action"],
                comment=row["comment"],
                decided_at=datetime.fromisoformat(row["decided_at"]),
            )
            for row in rows
        ]

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_schema_migrations(connection=connection, namespace="milestones")


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _utc_iso(value: datetime) -> str:
    # Stored as text, so a single offset keeps deadline comparisons ordered.
    return value.astimezone(timezone.utc).isoformat()


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return _utc_iso(value)


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _to_milestone(row) -> Milestone:
    return Milestone(
        milestone_id=row["milestone_id"],
        order_id=row["order_id"],
        stage=row["stage"],
        attempt_no=int(row["attempt_no"]),
        evidence_url=row["evidence_url"],
        evidence_mime_type=row["evidence_mime_type"],
        notes=row["notes"],
        verified_at=datetime.fromisoformat(row["verified_at"]),
        verified_by=row["verified_by"],
        auto_approval_deadline=datetime.fromisoformat(row["auto_approval_deadline"]),
        approval_status=row["approval_status"],
        customer_reviewed_at=_optional_datetime(row["customer_reviewed_at"]),
        reviewed_by=row["reviewed_by"],
        rejection_reason=row["rejection_reason"],
        dispute_id=row["dispute_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
