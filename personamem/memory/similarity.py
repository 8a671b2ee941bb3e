"""Similarity and reinforcement rules for memory deduplication.

Similarity is a pragmatic word-overlap ratio, not a semantic embedding:

    similarity(a, b) = |words(a) ∩ words(b)| / max(|words(a)|, |words(b)|)

with case-insensitive whitespace tokenization. Two memories of the same
type and category are the same fact when similarity exceeds
``DUPLICATE_THRESHOLD`` (new observations are reinforced into the
existing entry). The maintenance job merges stored near-duplicates
using the stricter ``MERGE_THRESHOLD``.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Iterable, List, Optional, Set, Tuple

if TYPE_CHECKING:
    from .models import MemoryCategory, MemoryEntry, MemoryType

DUPLICATE_THRESHOLD = 0.8
MERGE_THRESHOLD = 0.85


def tokenize(text: str) -> Set[str]:
    """Lowercased whitespace tokens of ``text``."""
    return set(text.lower().split())


def calculate_similarity(content1: str, content2: str) -> float:
    """Word-overlap similarity in [0, 1]; 0.0 when either side is empty."""
    words1 = tokenize(content1)
    words2 = tokenize(content2)
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / max(len(words1), len(words2))


def is_same_fact(
    mem_type: "MemoryType",
    category: "MemoryCategory",
    content: str,
    existing: "MemoryEntry",
    threshold: float = DUPLICATE_THRESHOLD,
) -> bool:
    """Whether ``existing`` asserts the same fact as the given triple."""
    return (
        existing.type == mem_type
        and existing.category == category
        and calculate_similarity(existing.content, content) > threshold
    )


def find_similar(
    memories: Iterable["MemoryEntry"],
    mem_type: "MemoryType",
    category: "MemoryCategory",
    content: str,
    threshold: float = DUPLICATE_THRESHOLD,
) -> Optional["MemoryEntry"]:
    """First active memory that duplicates the candidate, if any."""
    for existing in memories:
        if existing.is_active and is_same_fact(mem_type, category, content, existing, threshold):
            return existing
    return None


def merge_near_duplicates(
    memories: List["MemoryEntry"],
    threshold: float = MERGE_THRESHOLD,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Tuple[List["MemoryEntry"], int]:
    """Pairwise-merge active near-duplicates.

    O(n²) over the active entries. When ``limit`` is given only the
    ``limit`` most confident active entries take part. The stronger
    entry of each pair (ties keep the earlier one) absorbs the weaker
    one, which is dropped from the result.

    Returns:
        Tuple of (surviving memories in original order, merged count).
    """
    now = now or datetime.now()
    candidates = [m for m in memories if m.is_active]
    if limit is not None and len(candidates) > limit:
        candidates = sorted(candidates, key=lambda m: m.confidence, reverse=True)[:limit]

    current = {m.id: m for m in candidates}
    order = [m.id for m in memories if m.id in current]
    removed: Set[str] = set()
    merged = 0

    for i, first_id in enumerate(order):
        if first_id in removed:
            continue
        for second_id in order[i + 1:]:
            if second_id in removed or first_id in removed:
                continue
            first = current[first_id]
            second = current[second_id]
            if not is_same_fact(first.type, first.category, first.content, second, threshold):
                continue
            if first.confidence >= second.confidence:
                stronger, weaker = first, second
            else:
                stronger, weaker = second, first
            current[stronger.id] = stronger.absorb(weaker, now=now)
            removed.add(weaker.id)
            merged += 1

    survivors = [
        current.get(m.id, m) for m in memories if m.id not in removed
    ]
    return survivors, merged
