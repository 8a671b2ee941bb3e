"""Per-user memory aggregate.

UserMemoryStore is the document persisted for each user: the memory
entries plus derived Profile/Analytics and the user's Settings. All
mutation goes through the named methods below; entries themselves are
frozen and replaced, never edited in place. ``analytics.total_memories``
always equals the number of active entries after any mutation.

The aggregate is pure and synchronous. Serialization of concurrent
writers and persistence live in MemoryManager.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from .models import (
    DEFAULT_CONFIDENCE,
    RETENTION_DECAY_MULTIPLIER,
    Analytics,
    DecayState,
    Importance,
    MemoryCandidate,
    MemoryEntry,
    MemorySettings,
    MemorySource,
    MemoryEntryContext,
    MemoryType,
    Profile,
    RelationType,
    VerificationMethod,
)
from .profile import apply_profile_updates, compute_analytics, derive_profile, merge_insights
from .ranking import DEFAULT_RELEVANT_LIMIT, RelevanceContext, select_relevant, text_search
from .similarity import MERGE_THRESHOLD, find_similar, merge_near_duplicates

SORT_BY_CONFIDENCE = "confidence"
SORT_BY_RECENT = "recent"
SORT_BY_REINFORCEMENT = "reinforcement"


class UserMemoryStore(BaseModel):
    """Aggregate root holding one user's memories."""

    user_id: str
    memories: List[MemoryEntry] = Field(default_factory=list)
    profile: Profile = Field(default_factory=Profile)
    analytics: Analytics = Field(default_factory=Analytics)
    settings: MemorySettings = Field(default_factory=MemorySettings)
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    last_updated: datetime = Field(default_factory=datetime.now)

    # -- queries ----------------------------------------------------------

    def active_memories(self) -> List[MemoryEntry]:
        return [m for m in self.memories if m.is_active]

    def get(self, memory_id: str) -> Optional[MemoryEntry]:
        for m in self.memories:
            if m.id == memory_id:
                return m
        return None

    def find_similar(self, candidate: MemoryCandidate) -> Optional[MemoryEntry]:
        """Active memory that asserts the same fact as ``candidate``."""
        return find_similar(
            self.memories, candidate.type, candidate.category, candidate.content
        )

    def get_by_type(
        self,
        mem_type: MemoryType,
        min_confidence: Optional[float] = None,
        importance: Optional[Importance] = None,
        sort_by: str = SORT_BY_REINFORCEMENT,
    ) -> List[MemoryEntry]:
        """Active memories of one type, filtered and sorted.

        ``sort_by`` is "confidence", "recent" (last update) or anything
        else for reinforcement count, all descending.
        """
        memories = [m for m in self.memories if m.type == mem_type and m.is_active]
        if min_confidence is not None:
            memories = [m for m in memories if m.confidence >= min_confidence]
        if importance is not None:
            memories = [m for m in memories if m.importance == importance]

        if sort_by == SORT_BY_CONFIDENCE:
            key = lambda m: m.confidence  # noqa: E731
        elif sort_by == SORT_BY_RECENT:
            key = lambda m: m.updated_at  # noqa: E731
        else:
            key = lambda m: m.decay.reinforcement_count  # noqa: E731
        return sorted(memories, key=key, reverse=True)

    def search(self, query: str, min_confidence: Optional[float] = None) -> List[MemoryEntry]:
        return text_search(self.memories, query, min_confidence)

    def get_relevant(
        self,
        context: RelevanceContext,
        limit: int = DEFAULT_RELEVANT_LIMIT,
        now: Optional[datetime] = None,
    ) -> List[MemoryEntry]:
        """Ranked memories for ``context`` without recording access."""
        return select_relevant(self.memories, context, limit, now)

    # -- mutations --------------------------------------------------------

    def _replace(self, entry: MemoryEntry) -> None:
        self.memories = [entry if m.id == entry.id else m for m in self.memories]

    def _touch(self, now: datetime) -> None:
        self.analytics.total_memories = len(self.active_memories())
        self.last_updated = now

    def add_memory(
        self,
        candidate: MemoryCandidate,
        now: Optional[datetime] = None,
    ) -> Tuple[MemoryEntry, bool]:
        """Store ``candidate`` or reinforce the memory it duplicates.

        Returns:
            Tuple of (resulting entry, created). ``created`` is False
            when an existing memory was reinforced.
        """
        now = now or datetime.now()
        similar = self.find_similar(candidate)
        if similar is not None:
            reinforced = similar.reinforce(candidate.content, candidate.tags, now)
            self._replace(reinforced)
            self._touch(now)
            return reinforced, False

        source = candidate.source or MemorySource()
        entry = MemoryEntry(
            type=candidate.type,
            category=candidate.category,
            content=candidate.content,
            confidence=(
                candidate.confidence if candidate.confidence is not None
                else DEFAULT_CONFIDENCE
            ),
            importance=candidate.importance or Importance.MEDIUM,
            source=source.model_copy(update={"timestamp": now}),
            context=candidate.context or MemoryEntryContext(),
            tags=candidate.tags,
            decay=DecayState(last_reinforced=now),
            created_at=now,
            updated_at=now,
        )
        self.memories = self.memories + [entry]
        self._enforce_capacity(now, keep_id=entry.id)
        self._touch(now)
        return entry, True

    def _enforce_capacity(self, now: datetime, keep_id: Optional[str] = None) -> int:
        """Deactivate the weakest active memories beyond ``max_memories``."""
        active = [m for m in self.active_memories() if m.id != keep_id]
        overflow = len(active) + (1 if keep_id else 0) - self.settings.max_memories
        if overflow <= 0:
            return 0
        weakest = sorted(active, key=lambda m: (m.confidence, m.decay.last_reinforced))
        for m in weakest[:overflow]:
            self._replace(m.deactivated(now))
        return overflow

    def reinforce_memory(
        self,
        memory_id: str,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[MemoryEntry]:
        now = now or datetime.now()
        existing = self.get(memory_id)
        if existing is None:
            return None
        reinforced = existing.reinforce(content, tags, now)
        self._replace(reinforced)
        self._touch(now)
        return reinforced

    def record_access(
        self,
        memory_ids: Iterable[str],
        now: Optional[datetime] = None,
    ) -> List[MemoryEntry]:
        """Bump usage counters for the given ids, returning updated entries."""
        now = now or datetime.now()
        wanted = list(dict.fromkeys(memory_ids))
        updated: Dict[str, MemoryEntry] = {}
        for m in self.memories:
            if m.id in wanted:
                updated[m.id] = m.touched(now)
        self.memories = [updated.get(m.id, m) for m in self.memories]
        return [updated[i] for i in wanted if i in updated]

    def decay_memories(self, now: Optional[datetime] = None) -> int:
        """Run one decay pass over active memories.

        Returns:
            Number of memories deactivated by this pass. The profile is
            recomputed when that number is non-zero.
        """
        now = now or datetime.now()
        multiplier = RETENTION_DECAY_MULTIPLIER[self.settings.memory_retention]
        deactivated = 0
        decayed = []
        for m in self.memories:
            after = m.decayed(now, multiplier)
            if m.is_active and not after.is_active:
                deactivated += 1
            decayed.append(after)
        self.memories = decayed
        if deactivated:
            self.update_profile(now)
        else:
            self._touch(now)
        return deactivated

    def merge_similar(
        self,
        threshold: float = MERGE_THRESHOLD,
        now: Optional[datetime] = None,
    ) -> int:
        """Merge stored near-duplicates; returns the number absorbed."""
        now = now or datetime.now()
        survivors, merged = merge_near_duplicates(
            self.memories,
            threshold=threshold,
            limit=self.settings.max_memories,
            now=now,
        )
        self.memories = survivors
        self._touch(now)
        return merged

    def deactivate_memory(self, memory_id: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        existing = self.get(memory_id)
        if existing is None or not existing.is_active:
            return False
        self._replace(existing.deactivated(now))
        self.update_profile(now)
        return True

    def verify_memory(
        self,
        memory_id: str,
        method: VerificationMethod = VerificationMethod.USER_CONFIRMED,
        now: Optional[datetime] = None,
    ) -> Optional[MemoryEntry]:
        existing = self.get(memory_id)
        if existing is None:
            return None
        verified = existing.verified(method, now)
        self._replace(verified)
        return verified

    def rate_memory(
        self,
        memory_id: str,
        rating: int,
        feedback: Optional[str] = None,
    ) -> Optional[MemoryEntry]:
        existing = self.get(memory_id)
        if existing is None:
            return None
        rated = existing.rated(rating, feedback)
        self._replace(rated)
        return rated

    def add_relationship(
        self,
        memory_id: str,
        related_id: str,
        relationship_type: RelationType,
        strength: float = 0.5,
    ) -> Optional[MemoryEntry]:
        existing = self.get(memory_id)
        if existing is None or self.get(related_id) is None:
            return None
        linked = existing.related_to(related_id, relationship_type, strength)
        self._replace(linked)
        return linked

    def record_insights(self, insights: Iterable[Any], now: Optional[datetime] = None) -> None:
        self.analytics.insights = merge_insights(self.analytics.insights, insights, now)

    def apply_profile_updates(self, updates: Dict[str, Any]) -> None:
        self.profile = apply_profile_updates(self.profile, updates)

    def update_profile(self, now: Optional[datetime] = None) -> None:
        """Recompute Profile and Analytics from the active memories."""
        now = now or datetime.now()
        self.profile = derive_profile(self.memories, self.profile)
        self.analytics = compute_analytics(self.memories, self.analytics, now)
        self.last_updated = now

    # -- persistence helpers ---------------------------------------------

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"version"})

    @classmethod
    def from_document(cls, body: Dict[str, Any], version: int) -> "UserMemoryStore":
        return cls.model_validate({**body, "version": version})
