"""Memory manager - central coordinator for all memory operations.

Every mutation of a user's memory store runs as one transaction:
reload the document, apply the change to the aggregate, compare-and-swap
it back. Mutations for the same user are serialized by a per-user
asyncio.Lock; a write that still loses against another process is
retried from a fresh reload up to ``max_conflict_retries`` times.
Reads (type queries, text search, ranking) are lock-free.
"""

import asyncio
import inspect
import weakref
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import NotFoundError, PersistenceConflict, PersonaMemError, ValidationError
from ..storage import MEMORY_COLLECTION, DocumentStore
from .context_builder import ContextBuilder
from .models import (
    Analytics,
    ExtractionMethod,
    Importance,
    MemoryCandidate,
    MemoryCategory,
    MemoryEntry,
    MemorySettings,
    MemorySource,
    MemoryType,
    Profile,
    RelationType,
    VerificationMethod,
)
from .profile import analyze_conversation_patterns
from .ranking import RelevanceContext, parse_memory_ids, search_relevance
from .store import SORT_BY_REINFORCEMENT, UserMemoryStore

logger = structlog.get_logger("personamem.memory")

T = TypeVar("T")

CandidateLike = Union[MemoryCandidate, Dict[str, Any]]


class MemoryManager:
    """Central coordinator for per-user memory stores.

    Args:
        db: Initialized document store.
        llm: LLM client for the semantic-search fallback (optional).
        max_conflict_retries: Compare-and-swap retries per mutation.
        max_relevant: Memories returned for prompt context.
        semantic_fallback_min: Text-search hit count below which the
            LLM fallback runs.
        search_model: Model for the semantic-search fallback.
        search_timeout: Seconds before the fallback call is abandoned.
        max_context_chars: Character budget for ``build_ai_context``.
    """

    def __init__(
        self,
        db: DocumentStore,
        llm=None,
        max_conflict_retries: int = 3,
        max_relevant: int = 15,
        semantic_fallback_min: int = 5,
        search_model: Optional[str] = None,
        search_timeout: float = 10,
        max_context_chars: int = 6000,
    ):
        self.db = db
        self.llm = llm
        self.max_conflict_retries = max_conflict_retries
        self.max_relevant = max_relevant
        self.semantic_fallback_min = semantic_fallback_min
        self.search_model = search_model
        self.search_timeout = search_timeout
        self.max_context_chars = max_context_chars
        # Locks drop out once no coroutine holds or awaits them
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    # Loading and transactions
    async def get_store(self, user_id: str) -> UserMemoryStore:
        """Load the user's store; a fresh empty store (version 0) if none exists."""
        found = await self.db.get(MEMORY_COLLECTION, user_id)
        if found is None:
            return UserMemoryStore(user_id=user_id)
        body, version = found
        return UserMemoryStore.from_document(body, version)

    async def _mutate(
        self,
        user_id: str,
        change: Callable[[UserMemoryStore], Union[T, Awaitable[T]]],
    ) -> T:
        """Apply ``change`` to a freshly loaded store and persist it.

        ``change`` may be sync or async. Exceptions it raises abort the
        transaction without writing.

        Raises:
            PersistenceConflict: Still losing after all retries.
        """
        async with self._lock_for(user_id):
            attempt = 0
            while True:
                store = await self.get_store(user_id)
                result = change(store)
                if inspect.isawaitable(result):
                    result = await result
                try:
                    store.version = await self.db.save(
                        MEMORY_COLLECTION, user_id, store.to_document(), store.version
                    )
                    return result
                except PersistenceConflict:
                    attempt += 1
                    if attempt > self.max_conflict_retries:
                        logger.error("memory_write_conflict_exhausted",
                                     user_id=user_id, attempts=attempt)
                        raise
                    logger.info("memory_write_conflict_retry", user_id=user_id, attempt=attempt)

    @staticmethod
    def _coerce_candidate(candidate: CandidateLike) -> MemoryCandidate:
        if isinstance(candidate, MemoryCandidate):
            return candidate
        try:
            return MemoryCandidate.model_validate(candidate)
        except PydanticValidationError as e:
            raise ValidationError(
                f"invalid memory: {e.errors()[0].get('msg', 'validation failed')}",
                field=str(e.errors()[0].get("loc", ("memory",))[0]),
                module="memory.manager",
            ) from e

    @staticmethod
    def _require(store: UserMemoryStore, entry: Optional[MemoryEntry], memory_id: str) -> MemoryEntry:
        if entry is None:
            raise NotFoundError(resource="memory", resource_id=memory_id,
                                module="memory.manager", user_id=store.user_id)
        return entry

    # Storage
    async def add_memory(self, user_id: str, candidate: CandidateLike) -> MemoryEntry:
        """Store a memory, or reinforce the existing memory it duplicates.

        Returns:
            The new or reinforced entry.

        Raises:
            ValidationError: The candidate is malformed.
        """
        parsed = self._coerce_candidate(candidate)

        def change(store: UserMemoryStore) -> MemoryEntry:
            entry, created = store.add_memory(parsed)
            logger.info(
                "memory_stored" if created else "memory_reinforced",
                user_id=user_id,
                memory_id=entry.id,
                type=entry.type.value,
                confidence=entry.confidence,
            )
            return entry

        return await self._mutate(user_id, change)

    async def add_memories(
        self,
        user_id: str,
        candidates: Iterable[CandidateLike],
        insights: Optional[Iterable[Any]] = None,
        profile_updates: Optional[Dict[str, Any]] = None,
    ) -> List[MemoryEntry]:
        """Store several memories plus insights/profile hints in one transaction.

        Used by extraction and summarization. The profile is recomputed
        when anything was stored.
        """
        parsed = [self._coerce_candidate(c) for c in candidates]
        insights = list(insights or [])

        def change(store: UserMemoryStore) -> List[MemoryEntry]:
            stored = []
            for candidate in parsed:
                entry, _ = store.add_memory(candidate)
                stored.append(entry)
            if insights:
                store.record_insights(insights)
            if profile_updates:
                store.apply_profile_updates(profile_updates)
            if stored or insights or profile_updates:
                store.update_profile()
            return stored

        stored = await self._mutate(user_id, change)
        logger.info("memories_ingested", user_id=user_id, count=len(stored),
                    insights=len(insights))
        return stored

    async def remember(
        self,
        user_id: str,
        content: str,
        mem_type: MemoryType = MemoryType.PREFERENCE,
        category: MemoryCategory = MemoryCategory.PERSONAL,
        tags: Optional[List[str]] = None,
        importance: Importance = Importance.HIGH,
    ) -> MemoryEntry:
        """Store a fact the user stated explicitly (full confidence)."""
        return await self.add_memory(user_id, MemoryCandidate(
            type=mem_type,
            category=category,
            content=content,
            confidence=1.0,
            importance=importance,
            tags=tags or [],
            source=MemorySource(extraction_method=ExtractionMethod.USER_ADDED),
        ))

    async def reinforce_memory(
        self,
        user_id: str,
        memory_id: str,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> MemoryEntry:
        def change(store: UserMemoryStore) -> MemoryEntry:
            return self._require(store, store.reinforce_memory(memory_id, content, tags), memory_id)

        return await self._mutate(user_id, change)

    # Queries
    async def get_by_type(
        self,
        user_id: str,
        mem_type: MemoryType,
        min_confidence: Optional[float] = None,
        importance: Optional[Importance] = None,
        sort_by: str = SORT_BY_REINFORCEMENT,
    ) -> List[MemoryEntry]:
        store = await self.get_store(user_id)
        return store.get_by_type(mem_type, min_confidence, importance, sort_by)

    async def search(
        self,
        user_id: str,
        query: str,
        min_confidence: Optional[float] = None,
    ) -> List[MemoryEntry]:
        """Free-text search with an LLM fallback for thin results.

        Text matches come first; when fewer than ``semantic_fallback_min``
        are found the LLM picks additional ids from the active memories.
        The union is ordered by search relevance.
        """
        store = await self.get_store(user_id)
        results = store.search(query, min_confidence)

        if len(results) < self.semantic_fallback_min and self.llm is not None:
            found = {m.id for m in results}
            for m in await self._semantic_search(store, query):
                if m.id in found:
                    continue
                if min_confidence is not None and m.confidence < min_confidence:
                    continue
                results.append(m)
                found.add(m.id)

        results.sort(key=lambda m: search_relevance(m, query), reverse=True)
        return results

    async def _semantic_search(self, store: UserMemoryStore, query: str) -> List[MemoryEntry]:
        """Ask the LLM which of the active memories relate to ``query``. Never raises."""
        pool = store.active_memories()
        if not pool or not query.strip():
            return []

        listing = "\n".join(
            f"{m.id}: {m.content} ({m.type.value}, {m.category.value})" for m in pool
        )
        prompt = (
            "Given these user memories:\n"
            f"{listing}\n\n"
            f'Find the memories relevant to the query: "{query}"\n'
            'Return a JSON object of the form {"ids": ["<memory id>", ...]} '
            "listing only ids from above, most relevant first."
        )
        try:
            response = await self.llm.complete(
                [{"role": "user", "content": prompt}],
                model=self.search_model,
                temperature=0.1,
                max_tokens=200,
                json_mode=True,
                timeout=self.search_timeout,
            )
        except PersonaMemError as e:
            logger.warning("semantic_search_failed", user_id=store.user_id, error=str(e))
            return []

        ok, ids = parse_memory_ids(response.content)
        if not ok:
            logger.warning("semantic_search_unparseable", user_id=store.user_id, error=ids)
            return []

        by_id = {m.id: m for m in pool}
        return [by_id[i] for i in dict.fromkeys(ids) if i in by_id]

    async def get_relevant(
        self,
        user_id: str,
        context: Optional[RelevanceContext] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[MemoryEntry]:
        """Top memories for ``context``, with their access recorded.

        Ranking reads a snapshot; the usage update goes through the
        per-user transaction like any other mutation.
        """
        context = context or RelevanceContext()
        limit = self.max_relevant if limit is None else limit
        now = now or datetime.now()

        snapshot = await self.get_store(user_id)
        ranked = snapshot.get_relevant(context, limit, now)
        if not ranked:
            return []

        ids = [m.id for m in ranked]
        updated = await self._mutate(user_id, lambda store: store.record_access(ids, now))
        return [m for m in updated if m.is_active]

    async def get_analytics(self, user_id: str) -> Analytics:
        store = await self.get_store(user_id)
        return store.analytics

    # Lifecycle and feedback
    async def update_profile(self, user_id: str) -> Profile:
        """Recompute Profile and Analytics from the active memories."""
        def change(store: UserMemoryStore) -> Profile:
            store.update_profile()
            return store.profile

        return await self._mutate(user_id, change)

    async def verify_memory(
        self,
        user_id: str,
        memory_id: str,
        method: VerificationMethod = VerificationMethod.USER_CONFIRMED,
    ) -> MemoryEntry:
        return await self._mutate(
            user_id,
            lambda store: self._require(store, store.verify_memory(memory_id, method), memory_id),
        )

    async def rate_memory(
        self,
        user_id: str,
        memory_id: str,
        rating: int,
        feedback: Optional[str] = None,
    ) -> MemoryEntry:
        if not 1 <= rating <= 5:
            raise ValidationError("rating must be between 1 and 5", field="rating",
                                  module="memory.manager")
        return await self._mutate(
            user_id,
            lambda store: self._require(store, store.rate_memory(memory_id, rating, feedback),
                                        memory_id),
        )

    async def deactivate_memory(self, user_id: str, memory_id: str) -> bool:
        """Forget one memory. Returns False if it was already inactive."""
        def change(store: UserMemoryStore) -> bool:
            self._require(store, store.get(memory_id), memory_id)
            return store.deactivate_memory(memory_id)

        deactivated = await self._mutate(user_id, change)
        if deactivated:
            logger.info("memory_deactivated", user_id=user_id, memory_id=memory_id)
        return deactivated

    async def add_relationship(
        self,
        user_id: str,
        memory_id: str,
        related_id: str,
        relationship_type: RelationType,
        strength: float = 0.5,
    ) -> MemoryEntry:
        def change(store: UserMemoryStore) -> MemoryEntry:
            self._require(store, store.get(related_id), related_id)
            return self._require(
                store,
                store.add_relationship(memory_id, related_id, relationship_type, strength),
                memory_id,
            )

        return await self._mutate(user_id, change)

    async def record_insights(self, user_id: str, insights: Iterable[Any]) -> Analytics:
        items = list(insights)

        def change(store: UserMemoryStore) -> Analytics:
            store.record_insights(items)
            return store.analytics

        return await self._mutate(user_id, change)

    async def apply_profile_updates(self, user_id: str, updates: Dict[str, Any]) -> Profile:
        def change(store: UserMemoryStore) -> Profile:
            store.apply_profile_updates(updates)
            return store.profile

        return await self._mutate(user_id, change)

    async def analyze_communication(self, user_id: str, user_messages: List[str]) -> Profile:
        """Fold heuristic communication-style analysis into the profile."""
        updates = analyze_conversation_patterns(user_messages)
        if not updates:
            return (await self.get_store(user_id)).profile
        return await self.apply_profile_updates(user_id, updates)

    async def update_settings(self, user_id: str, **settings: Any) -> MemorySettings:
        """Change the user's memory settings (retention, auto_decay, ...)."""
        def change(store: UserMemoryStore) -> MemorySettings:
            try:
                store.settings = MemorySettings.model_validate(
                    {**store.settings.model_dump(), **settings}
                )
            except PydanticValidationError as e:
                raise ValidationError(f"invalid settings: {e.errors()[0]['msg']}",
                                      field="settings", module="memory.manager") from e
            return store.settings

        return await self._mutate(user_id, change)

    async def forget_all(self, user_id: str) -> bool:
        """Delete the user's entire memory store."""
        async with self._lock_for(user_id):
            deleted = await self.db.delete(MEMORY_COLLECTION, user_id)
        logger.info("memory_store_deleted", user_id=user_id, existed=deleted)
        return deleted

    # Maintenance
    async def run_maintenance(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Decay then merge one user's memories in a single transaction.

        Decay is skipped when the user's ``auto_decay`` setting is off.
        The O(n²) merge scan runs in a worker thread.

        Returns:
            {"deactivated": n, "merged": m}
        """
        now = now or datetime.now()

        async def change(store: UserMemoryStore) -> Dict[str, int]:
            deactivated = store.decay_memories(now) if store.settings.auto_decay else 0
            merged = await asyncio.to_thread(store.merge_similar, now=now)
            if merged:
                store.update_profile(now)
            return {"deactivated": deactivated, "merged": merged}

        return await self._mutate(user_id, change)

    async def list_user_ids(self) -> List[str]:
        return await self.db.list_ids(MEMORY_COLLECTION)

    # Context building
    async def build_ai_context(
        self,
        user_id: str,
        context: Optional[RelevanceContext] = None,
    ) -> str:
        """Formatted user context for prompt injection.

        Includes the grouped profile sections and, when ``context`` is
        given, the memories ranked relevant for it.
        """
        relevant = await self.get_relevant(user_id, context) if context else None
        store = await self.get_store(user_id)
        builder = ContextBuilder(max_chars=self.max_context_chars)
        return builder.build_context_section(store, relevant)

    async def export_memories(self, user_id: str) -> str:
        """The user's whole memory store as pretty-printed JSON."""
        store = await self.get_store(user_id)
        return json.dumps(store.to_document(), indent=2)


# Global manager instance
_memory_manager: Optional[MemoryManager] = None


def get_memory_manager() -> Optional[MemoryManager]:
    """Get the global memory manager instance."""
    return _memory_manager


async def initialize_memory_manager(db: Optional[DocumentStore] = None, llm=None) -> MemoryManager:
    """Initialize and return the global memory manager from configuration."""
    global _memory_manager
    from ..config import get_config

    config = get_config()
    if db is None:
        from ..storage import get_document_store
        db = get_document_store()
        await db.initialize()
    _memory_manager = MemoryManager(
        db,
        llm=llm,
        max_conflict_retries=config.storage_max_conflict_retries,
        max_relevant=config.memory_max_relevant,
        semantic_fallback_min=config.memory_semantic_fallback_min,
        search_model=config.llm_search_model,
        search_timeout=config.llm_search_timeout,
        max_context_chars=config.memory_max_context_chars,
    )
    return _memory_manager
