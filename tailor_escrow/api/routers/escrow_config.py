import os
import warnings
from dataclasses import dataclass
from typing import cast

from tailor_escrow.core.disputes.repository import DisputeRepository
from tailor_escrow.core.escrow.calculator import parse_split_policy_catalog
from tailor_escrow.core.escrow.models import EscrowSplitPolicy
from tailor_escrow.core.escrow.repository import EscrowRepository
from tailor_escrow.core.milestones.models import DEFAULT_AUTO_APPROVAL_WINDOW_HOURS
from tailor_escrow.core.milestones.repository import MilestoneRepository
from tailor_escrow.core.milestones.scheduler import DEFAULT_SWEEP_BATCH_SIZE
from tailor_escrow.infrastructure.disputes import (
    InMemoryDisputeRepository,
    PostgresDisputeRepository,
)
from tailor_escrow.infrastructure.escrow import InMemoryEscrowRepository, PostgresEscrowRepository
from tailor_escrow.infrastructure.milestones import (
    InMemoryMilestoneRepository,
    PostgresMilestoneRepository,
)

DEFAULT_SWEEP_INTERVAL_SECONDS = 900
DEFAULT_LEDGER_MAX_CONFLICT_RETRIES = 3


@dataclass(frozen=True)
class EscrowRepositories:
    escrow: EscrowRepository
    milestones: MilestoneRepository
    disputes: DisputeRepository


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= 1 else default


def env_non_negative_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def escrow_store_backend_name() -> str:
    backend = os.getenv("ESCROW_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend == "POSTGRES":
        return "POSTGRES"
    warnings.warn(
        "ESCROW_STORE_BACKEND runtime backend IN_MEMORY is for local use only; use POSTGRES.",
        DeprecationWarning,
        stacklevel=2,
    )
    return "IN_MEMORY"


def escrow_postgres_dsn() -> str:
    return os.getenv("ESCROW_POSTGRES_DSN", "").strip()


def auto_approval_window_hours() -> int:
    return env_int("MILESTONE_AUTO_APPROVAL_WINDOW_HOURS", DEFAULT_AUTO_APPROVAL_WINDOW_HOURS)


def auto_approval_sweep_enabled() -> bool:
    return env_flag("AUTO_APPROVAL_SWEEP_ENABLED", False)


def auto_approval_sweep_interval_seconds() -> int:
    return env_int("AUTO_APPROVAL_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS)


def auto_approval_sweep_batch_size() -> int:
    return env_int("AUTO_APPROVAL_SWEEP_BATCH_SIZE", DEFAULT_SWEEP_BATCH_SIZE)


def ledger_max_conflict_retries() -> int:
    return env_non_negative_int(
        "ESCROW_LEDGER_MAX_CONFLICT_RETRIES", DEFAULT_LEDGER_MAX_CONFLICT_RETRIES
    )


def split_policy_catalog() -> dict[str, EscrowSplitPolicy]:
    return parse_split_policy_catalog(os.getenv("ESCROW_SPLIT_POLICY_CATALOG_JSON"))


def cron_secret() -> str:
    return os.getenv("CRON_SECRET", "").strip()


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    types: list[type[BaseException]] = [
        ConnectionError,
        OSError,
        TimeoutError,
        TypeError,
        ValueError,
    ]
    try:
        import psycopg
    except ImportError:
        pass
    else:
        types.append(psycopg.Error)
    return tuple(types)


def build_repositories() -> EscrowRepositories:
    backend = escrow_store_backend_name()
    if backend == "POSTGRES":
        dsn = escrow_postgres_dsn()
        if not dsn:
            raise RuntimeError("ESCROW_POSTGRES_DSN_REQUIRED")
        try:
            return EscrowRepositories(
                escrow=cast(EscrowRepository, PostgresEscrowRepository(dsn=dsn)),
                milestones=cast(MilestoneRepository, PostgresMilestoneRepository(dsn=dsn)),
                disputes=cast(DisputeRepository, PostgresDisputeRepository(dsn=dsn)),
            )
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("ESCROW_POSTGRES_CONNECTION_FAILED") from exc
    return EscrowRepositories(
        escrow=InMemoryEscrowRepository(),
        milestones=InMemoryMilestoneRepository(),
        disputes=InMemoryDisputeRepository(),
    )
