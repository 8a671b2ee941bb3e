"""Relevance ranking for memory retrieval and search.

Scores memories against a query context so prompt construction can pick
the most useful facts, orders free-text search results, and normalizes
the LLM's semantic-search replies into a list of memory ids.

Key functions:
    relevance_score -- composite score in [0, 1] used by select_relevant.
    select_relevant -- tag/type/importance candidate gathering + ranking.
    text_search -- case-insensitive substring search over active memories.
    search_relevance -- ordering score for free-text search results.
    parse_memory_ids -- single tolerant parser for id-selection replies.
"""

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator

from .models import Importance, MemoryEntry, MemoryType, normalize_tags

IMPORTANCE_BOOST = {
    Importance.CRITICAL: 0.4,
    Importance.HIGH: 0.3,
    Importance.MEDIUM: 0.1,
    Importance.LOW: 0.0,
}

# Search ordering uses a slightly flatter importance curve
SEARCH_IMPORTANCE_BOOST = {
    Importance.CRITICAL: 0.3,
    Importance.HIGH: 0.2,
    Importance.MEDIUM: 0.1,
    Importance.LOW: 0.0,
}

RECENCY_BOOST_MAX = 0.2
RECENCY_DECAY_PER_DAY = 0.01
TAG_MATCH_BOOST = 0.1
DEFAULT_RELEVANT_LIMIT = 10

# Wrapper keys the semantic-search reply has been seen to use
_ID_WRAPPER_KEYS = ("ids", "results", "relevant_memories")


class RelevanceContext(BaseModel):
    """What the caller is about to talk about."""

    tags: List[str] = Field(default_factory=list)
    types: List[MemoryType] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> List[str]:
        return normalize_tags(value)


def relevance_score(
    memory: MemoryEntry,
    context: RelevanceContext,
    now: Optional[datetime] = None,
) -> float:
    """Composite relevance of ``memory`` for ``context``, clamped to [0, 1].

    confidence + importance boost + recency boost
    (``max(0, 0.2 - days_since_reinforced * 0.01)``) + 0.1 per shared tag.
    """
    now = now or datetime.now()
    score = memory.confidence
    score += IMPORTANCE_BOOST.get(memory.importance, 0.0)

    days = max(0.0, (now - memory.decay.last_reinforced).total_seconds() / 86400)
    score += max(0.0, RECENCY_BOOST_MAX - days * RECENCY_DECAY_PER_DAY)

    if context.tags:
        matches = sum(1 for tag in memory.tags if tag in context.tags)
        score += matches * TAG_MATCH_BOOST

    return min(1.0, max(0.0, score))


def select_relevant(
    memories: Iterable[MemoryEntry],
    context: RelevanceContext,
    limit: int = DEFAULT_RELEVANT_LIMIT,
    now: Optional[datetime] = None,
) -> List[MemoryEntry]:
    """Pick the top ``limit`` memories for ``context``.

    Candidates are active memories that share a tag with the context,
    have one of the context types, or are high/critical importance.
    Candidates are de-duplicated by id and sorted by descending score.
    Read-only: recording the access is the store's job.
    """
    now = now or datetime.now()
    active = [m for m in memories if m.is_active]
    candidates: Dict[str, MemoryEntry] = {}

    if context.tags:
        for m in active:
            if any(tag in context.tags for tag in m.tags):
                candidates.setdefault(m.id, m)

    if context.types:
        for m in active:
            if m.type in context.types:
                candidates.setdefault(m.id, m)

    for m in active:
        if m.importance in (Importance.HIGH, Importance.CRITICAL):
            candidates.setdefault(m.id, m)

    ranked = sorted(
        candidates.values(),
        key=lambda m: relevance_score(m, context, now),
        reverse=True,
    )
    return ranked[:max(0, limit)]


def text_search(
    memories: Iterable[MemoryEntry],
    query: str,
    min_confidence: Optional[float] = None,
) -> List[MemoryEntry]:
    """Case-insensitive substring match over content, tags, type and category.

    Results are sorted by confidence, highest first.
    """
    needle = query.strip().lower()
    if not needle:
        return []

    results = []
    for m in memories:
        if not m.is_active:
            continue
        if min_confidence is not None and m.confidence < min_confidence:
            continue
        if (
            needle in m.content.lower()
            or any(needle in tag for tag in m.tags)
            or needle in m.type.value
            or needle in m.category.value
        ):
            results.append(m)

    results.sort(key=lambda m: m.confidence, reverse=True)
    return results


def search_relevance(memory: MemoryEntry, query: str) -> float:
    """Ordering score for a free-text search hit, capped at 1.

    confidence + 0.5 for the exact phrase + 0.3 * share of query words
    present + 0.2 per tag overlapping the query + importance boost.
    """
    query_lower = query.strip().lower()
    content_lower = memory.content.lower()
    score = memory.confidence

    if query_lower and query_lower in content_lower:
        score += 0.5

    query_words = query_lower.split()
    if query_words:
        content_words = set(content_lower.split())
        matched = sum(1 for word in query_words if word in content_words)
        score += (matched / len(query_words)) * 0.3

    if query_lower:
        tag_matches = [t for t in memory.tags if t in query_lower or query_lower in t]
        score += len(tag_matches) * 0.2

    score += SEARCH_IMPORTANCE_BOOST.get(memory.importance, 0.0)
    return min(score, 1.0)


def parse_memory_ids(raw: Union[str, Any]) -> Tuple[bool, Union[List[str], str]]:
    """Normalize a semantic-search reply into a list of memory ids.

    Accepts a bare JSON array or an object wrapping the array under
    ``ids``, ``results`` or ``relevant_memories``; the first of those keys
    holding a list wins. Non-string entries are dropped.

    Args:
        raw: The reply text (or an already-decoded value).

    Returns:
        Tuple of (success, ids | error_string).
    """
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            return False, f"invalid JSON: {e}"
    else:
        parsed = raw

    if isinstance(parsed, dict):
        wrapped = [parsed[k] for k in _ID_WRAPPER_KEYS if isinstance(parsed.get(k), list)]
        if not wrapped:
            return False, f"no id array in response keys: {sorted(parsed.keys())[:5]}"
        parsed = wrapped[0]

    if not isinstance(parsed, list):
        return False, f"expected an array of ids, got {type(parsed).__name__}"

    return True, [item for item in parsed if isinstance(item, str)]
