from tailor_escrow.infrastructure.milestones.in_memory import InMemoryMilestoneRepository
from tailor_escrow.infrastructure.milestones.postgres import PostgresMilestoneRepository

__all__ = ["InMemoryMilestoneRepository", "PostgresMilestoneRepository"]
