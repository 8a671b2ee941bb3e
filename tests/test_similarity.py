"""Tests for word-overlap similarity and near-duplicate merging."""

from datetime import datetime

import pytest

from personamem.memory.models import MemoryCategory, MemoryEntry, MemoryType
from personamem.memory.similarity import (
    calculate_similarity,
    find_similar,
    is_same_fact,
    merge_near_duplicates,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)
BASE = "Proficient in Python programming and data analysis"


def _skill(content, confidence=0.8, **overrides):
    return MemoryEntry(
        type=overrides.pop("type", MemoryType.SKILL),
        category=overrides.pop("category", MemoryCategory.TECHNICAL),
        content=content,
        confidence=confidence,
        **overrides,
    )


def test_identical_content():
    assert calculate_similarity(BASE, BASE.upper()) == 1.0


def test_overlap_ratio_uses_larger_set():
    # 7 shared words out of 8
    assert calculate_similarity(BASE, BASE + " work") == pytest.approx(7 / 8)


def test_empty_side_is_zero():
    assert calculate_similarity("", BASE) == 0.0
    assert calculate_similarity("   ", "   ") == 0.0


def test_rephrasing_below_duplicate_threshold():
    score = calculate_similarity(
        "Skilled in Python programming", "Proficient in Python programming"
    )
    assert score == pytest.approx(0.75)
    assert not is_same_fact(
        MemoryType.SKILL, MemoryCategory.TECHNICAL,
        "Skilled in Python programming", _skill("Proficient in Python programming"),
    )


def test_same_fact_requires_type_and_category():
    existing = _skill(BASE)
    assert is_same_fact(MemoryType.SKILL, MemoryCategory.TECHNICAL, BASE, existing)
    assert not is_same_fact(MemoryType.PREFERENCE, MemoryCategory.TECHNICAL, BASE, existing)
    assert not is_same_fact(MemoryType.SKILL, MemoryCategory.PERSONAL, BASE, existing)


def test_find_similar_skips_inactive():
    inactive = _skill(BASE).deactivated(NOW)
    active = _skill(BASE)
    assert find_similar([inactive], MemoryType.SKILL, MemoryCategory.TECHNICAL, BASE) is None
    found = find_similar([inactive, active], MemoryType.SKILL, MemoryCategory.TECHNICAL, BASE)
    assert found is active


class TestMergeNearDuplicates:

    def test_stronger_absorbs_weaker(self):
        weak = _skill(BASE, confidence=0.6, tags=["data"])
        strong = _skill(BASE + " work", confidence=0.9)
        survivors, merged = merge_near_duplicates([weak, strong], now=NOW)
        assert merged == 1
        assert [m.id for m in survivors] == [strong.id]
        assert survivors[0].confidence == 1.0
        assert survivors[0].decay.reinforcement_count == 2
        assert "data" in survivors[0].tags

    def test_tie_keeps_earlier_entry(self):
        first = _skill(BASE)
        second = _skill(BASE + " work")
        survivors, merged = merge_near_duplicates([first, second], now=NOW)
        assert merged == 1
        assert survivors[0].id == first.id

    def test_distinct_memories_untouched(self):
        a = _skill(BASE)
        b = _skill("Enjoys mentoring junior engineers")
        survivors, merged = merge_near_duplicates([a, b], now=NOW)
        assert merged == 0
        assert survivors == [a, b]

    def test_inactive_entries_kept_but_not_merged(self):
        inactive = _skill(BASE).deactivated(NOW)
        active = _skill(BASE)
        survivors, merged = merge_near_duplicates([inactive, active], now=NOW)
        assert merged == 0
        assert len(survivors) == 2

    def test_limit_restricts_participants(self):
        low_a = _skill(BASE, confidence=0.3)
        low_b = _skill(BASE + " work", confidence=0.3)
        high = _skill("Leads cross-functional teams", confidence=0.9)
        survivors, merged = merge_near_duplicates([low_a, low_b, high], limit=1, now=NOW)
        assert merged == 0
        assert len(survivors) == 3
