"""Personalization memory for career-assistant conversations.

Keeps a per-user store of facts learned about the user (preferences,
skills, goals, traits), ranks them for prompt context, and maintains
them over time through reinforcement, decay and merging.
"""

from .context_builder import ContextBuilder
from .extraction import ExtractionContext, MemoryExtractor
from .maintenance import MaintenanceJob, MaintenanceReport
from .manager import (
    MemoryManager,
    get_memory_manager,
    initialize_memory_manager,
)
from .models import (
    Analytics,
    ExtractionMethod,
    ExtractionResult,
    Importance,
    MemoryCandidate,
    MemoryCategory,
    MemoryEntry,
    MemorySettings,
    MemoryType,
    Profile,
    RetentionPolicy,
)
from .ranking import RelevanceContext
from .store import UserMemoryStore

__all__ = [
    # Models
    "MemoryEntry",
    "MemoryCandidate",
    "MemoryType",
    "MemoryCategory",
    "Importance",
    "ExtractionMethod",
    "RetentionPolicy",
    "Profile",
    "Analytics",
    "MemorySettings",
    "ExtractionResult",
    "UserMemoryStore",
    "RelevanceContext",
    # Manager
    "MemoryManager",
    "get_memory_manager",
    "initialize_memory_manager",
    # Extraction
    "ExtractionContext",
    "MemoryExtractor",
    # Maintenance
    "MaintenanceJob",
    "MaintenanceReport",
    # Context
    "ContextBuilder",
]
