"""Escrow ledger package."""

from tailor_escrow.core.escrow.calculator import (
    DEFAULT_SPLIT_POLICY,
    calculate_escrow_breakdown,
    parse_split_policy_catalog,
    resolve_split_policy,
)
from tailor_escrow.core.escrow.ledger import EscrowLedger
from tailor_escrow.core.escrow.models import (
    EscrowBreakdown,
    EscrowHistoryEntry,
    EscrowReconciliationReport,
    EscrowSplitPolicy,
    EscrowState,
)
from tailor_escrow.core.escrow.repository import EscrowRepository

__all__ = [
    "DEFAULT_SPLIT_POLICY",
    "EscrowBreakdown",
    "EscrowHistoryEntry",
    "EscrowLedger",
    "EscrowReconciliationReport",
    "EscrowRepository",
    "EscrowSplitPolicy",
    "EscrowState",
    "calculate_escrow_breakdown",
    "parse_split_policy_catalog",
    "resolve_split_policy",
]
