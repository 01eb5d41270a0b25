import argparse
import logging
import os
from importlib.util import find_spec
from typing import Optional, Sequence

from tailor_escrow.infrastructure.postgres_migrations import apply_schema_migrations

logger = logging.getLogger(__name__)

NAMESPACES = ("escrow", "milestones", "disputes")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Apply forward-only PostgreSQL migrations for the escrow stores."
    )
    parser.add_argument(
        "--target",
        choices=[*NAMESPACES, "all"],
        default="all",
        help="Migration target namespace.",
    )
    parser.add_argument(
        "--dsn",
        default=os.getenv("ESCROW_POSTGRES_DSN", "").strip(),
        help="PostgreSQL DSN shared by the escrow, milestone and dispute stores.",
    )
    args = parser.parse_args(argv)

    if not args.dsn:
        raise RuntimeError("POSTGRES_MIGRATION_DSN_REQUIRED")
    if find_spec("psycopg") is None:
        raise RuntimeError("POSTGRES_MIGRATION_DRIVER_MISSING")
    psycopg, dict_row = _import_psycopg()

    for namespace in _resolve_targets(args.target):
        with psycopg.connect(args.dsn, row_factory=dict_row) as connection:
            applied = apply_schema_migrations(connection=connection, namespace=namespace)
        logger.info("Applied migrations. Namespace=%s Versions=%s", namespace, applied)
        print(f"Applied migrations for namespace={namespace}: {applied or 'up to date'}")
    return 0


def _resolve_targets(target: str) -> list[str]:
    if target == "all":
        return list(NAMESPACES)
    return [target]


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


if __name__ == "__main__":
    raise SystemExit(main())
