from tailor_escrow.infrastructure.postgres_migrations import (
    apply_schema_migrations,
    load_schema_migrations,
)


class _FakeCursor:
    def __init__(self, rows=None):
        self._rows = rows or []

    def fetchall(self):
        return list(self._rows)


class _FakeMigrationConnection:
    def __init__(self, recorded=None):
        self.recorded = dict(recorded or {})
        self.statements = []
        self.commits = 0
        self.rollbacks = 0

    def execute(self, query, args=None):
        sql = " ".join(str(query).split())
        self.statements.append(sql)
        if "FROM escrow_schema_migrations" in sql:
            rows = [
                {"migration_key": key, "checksum": checksum}
                for key, checksum in self.recorded.items()
            ]
            return _FakeCursor(rows)
        if sql.startswith("INSERT INTO escrow_schema_migrations"):
            self.recorded[args[0]] = args[2]
        return _FakeCursor()

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


def test_each_namespace_ships_an_initial_migration():
    for namespace in ("escrow", "milestones", "disputes"):
        migrations = load_schema_migrations(namespace)
        assert [migration.version for migration in migrations] == ["0001"]
        assert migrations[0].key == f"{namespace}:0001"


def test_unknown_namespace_is_rejected():
    try:
        load_schema_migrations("payouts")
    except RuntimeError as exc:
        assert str(exc) == "SCHEMA_MIGRATIONS_NAMESPACE_NOT_FOUND:payouts"
    else:
        raise AssertionError("Expected RuntimeError for unknown namespace")


def test_apply_runs_pending_scripts_once_under_advisory_lock():
    connection = _FakeMigrationConnection()

    assert apply_schema_migrations(connection=connection, namespace="escrow") == ["0001"]
    assert connection.statements[0].startswith("SELECT pg_advisory_lock")
    assert connection.statements[-1].startswith("SELECT pg_advisory_unlock")
    assert any("CREATE TABLE IF NOT EXISTS escrow_states" in sql for sql in connection.statements)
    assert "escrow:0001" in connection.recorded
    assert connection.commits == 1

    assert apply_schema_migrations(connection=connection, namespace="escrow") == []


def test_checksum_drift_stops_startup():
    connection = _FakeMigrationConnection(recorded={"disputes:0001": "stale"})

    try:
        apply_schema_migrations(connection=connection, namespace="disputes")
    except RuntimeError as exc:
        assert str(exc) == "SCHEMA_MIGRATION_CHECKSUM_MISMATCH:disputes:0001"
    else:
        raise AssertionError("Expected RuntimeError for checksum mismatch")
    assert connection.rollbacks == 1
    assert connection.statements[-1].startswith("SELECT pg_advisory_unlock")
