from tailor_escrow.infrastructure.escrow.in_memory import InMemoryEscrowRepository
from tailor_escrow.infrastructure.escrow.postgres import PostgresEscrowRepository

__all__ = ["InMemoryEscrowRepository", "PostgresEscrowRepository"]
