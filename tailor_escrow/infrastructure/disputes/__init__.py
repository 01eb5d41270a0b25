from tailor_escrow.infrastructure.disputes.in_memory import InMemoryDisputeRepository
from tailor_escrow.infrastructure.disputes.postgres import PostgresDisputeRepository

__all__ = ["InMemoryDisputeRepository", "PostgresDisputeRepository"]
