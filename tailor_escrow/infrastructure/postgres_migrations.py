from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

MIGRATIONS_ROOT = Path(__file__).with_name("postgres_migrations")


@dataclass(frozen=True)
class SchemaMigration:
    namespace: str
    version: str
    sql_path: Path
    checksum: str

    @property
    def key(self) -> str:
        return f"{self.namespace}:{self.version}"


def apply_schema_migrations(*, connection: Any, namespace: str) -> list[str]:
    """Apply pending SQL scripts for one storage namespace.

    Scripts live in ``postgres_migrations/<namespace>/NNNN_name.sql`` and are applied in
    version order under a per-namespace advisory lock. An applied script whose checksum no
    longer matches the file on disk stops startup. Returns the versions applied now.
    """
    lock_key = _advisory_lock_key(namespace)
    connection.execute("SELECT pg_advisory_lock(%s::bigint)", (lock_key,))
    try:
        applied = _apply_pending(connection=connection, namespace=namespace)
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.execute("SELECT pg_advisory_unlock(%s::bigint)", (lock_key,))
    return applied


def load_schema_migrations(namespace: str) -> list[SchemaMigration]:
    namespace_path = MIGRATIONS_ROOT / namespace
    if not namespace_path.is_dir():
        raise RuntimeError(f"SCHEMA_MIGRATIONS_NAMESPACE_NOT_FOUND:{namespace}")
    migrations = []
    for sql_path in sorted(namespace_path.glob("*.sql")):
        sql = sql_path.read_text(encoding="utf-8")
        migrations.append(
            SchemaMigration(
                namespace=namespace,
                version=sql_path.stem.split("_", maxsplit=1)[0],
                sql_path=sql_path,
                checksum=hashlib.sha256(sql.encode("utf-8")).hexdigest(),
            )
        )
    return migrations


def _apply_pending(*, connection: Any, namespace: str) -> list[str]:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS escrow_schema_migrations (
            migration_key TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )
    rows = connection.execute(
        """
        SELECT migration_key, checksum
        FROM escrow_schema_migrations
        WHERE namespace = %s
        """,
        (namespace,),
    ).fetchall()
    recorded = {str(row["migration_key"]): str(row["checksum"]) for row in rows}

    applied_now: list[str] = []
    for migration in load_schema_migrations(namespace):
        checksum = recorded.get(migration.key)
        if checksum is not None:
            if checksum != migration.checksum:
                raise RuntimeError(f"SCHEMA_MIGRATION_CHECKSUM_MISMATCH:{migration.key}")
            continue
        for statement in _split_statements(migration.sql_path.read_text(encoding="utf-8")):
            connection.execute(statement)
        connection.execute(
            """
            INSERT INTO escrow_schema_migrations (
                migration_key,
                namespace,
                checksum,
                applied_at
            ) VALUES (%s, %s, %s, %s)
            """,
            (
                migration.key,
                namespace,
                migration.checksum,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        applied_now.append(migration.version)
    connection.commit()
    return applied_now


def _split_statements(sql: str) -> list[str]:
    return [statement.strip() for statement in sql.split(";") if statement.strip()]


def _advisory_lock_key(namespace: str) -> int:
    digest = hashlib.sha256(f"tailor_escrow:{namespace}".encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)
