from .consolidation_service import ConsolidationService
from .decay_service import DecayService
from .goal_service import GoalService
from .memory_service import MemoryService

__all__ = ["ConsolidationService", "DecayService", "GoalService", "MemoryService"]
