"""Tests for relevance ranking, text search and id-reply parsing."""

from datetime import datetime, timedelta

import pytest

from personamem.memory.models import Importance, MemoryCategory, MemoryEntry, MemoryType
from personamem.memory.ranking import (
    RelevanceContext,
    parse_memory_ids,
    relevance_score,
    search_relevance,
    select_relevant,
    text_search,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)


def _memory(content, mem_type=MemoryType.PREFERENCE, confidence=0.5,
            importance=Importance.LOW, tags=None, reinforced_days_ago=0):
    entry = MemoryEntry(
        type=mem_type,
        category=MemoryCategory.PROFESSIONAL,
        content=content,
        confidence=confidence,
        importance=importance,
        tags=tags or [],
    )
    return entry.model_copy(update={
        "decay": entry.decay.model_copy(update={
            "last_reinforced": NOW - timedelta(days=reinforced_days_ago),
        }),
    })


class TestRelevanceScore:

    def test_components(self):
        mem = _memory("Prefers remote roles", confidence=0.3,
                      importance=Importance.MEDIUM, tags=["remote"], reinforced_days_ago=5)
        score = relevance_score(mem, RelevanceContext(tags=["remote"]), NOW)
        # 0.3 + 0.1 importance + 0.15 recency + 0.1 tag
        assert score == pytest.approx(0.65)

    def test_recency_bottoms_out_at_zero(self):
        mem = _memory("Old fact", confidence=0.2, reinforced_days_ago=60)
        assert relevance_score(mem, RelevanceContext(), NOW) == pytest.approx(0.2)

    def test_clamped_to_one(self):
        mem = _memory("Critical fact", confidence=1.0, importance=Importance.CRITICAL)
        assert relevance_score(mem, RelevanceContext(), NOW) == 1.0


class TestSelectRelevant:

    def test_candidates_by_tag_type_or_importance(self):
        tagged = _memory("Likes startups", tags=["startup"])
        typed = _memory("Knows SQL", mem_type=MemoryType.SKILL)
        important = _memory("Relocating to Berlin", importance=Importance.HIGH)
        unrelated = _memory("Enjoys hiking")
        context = RelevanceContext(tags=["Startup"], types=[MemoryType.SKILL])

        selected = select_relevant([tagged, typed, important, unrelated], context, now=NOW)
        assert {m.id for m in selected} == {tagged.id, typed.id, important.id}

    def test_sorted_by_score_and_limited(self):
        low = _memory("Low", mem_type=MemoryType.SKILL, confidence=0.2)
        high = _memory("High", mem_type=MemoryType.SKILL, confidence=0.7)
        mid = _memory("Mid", mem_type=MemoryType.SKILL, confidence=0.5)
        context = RelevanceContext(types=[MemoryType.SKILL])
        selected = select_relevant([low, high, mid], context, limit=2, now=NOW)
        assert [m.id for m in selected] == [high.id, mid.id]

    def test_inactive_excluded(self):
        gone = _memory("Gone", importance=Importance.CRITICAL).deactivated(NOW)
        assert select_relevant([gone], RelevanceContext(), now=NOW) == []


def test_text_search_matches_content_tags_and_type():
    a = _memory("Prefers Python over Java", confidence=0.6)
    b = _memory("Wants a lead role", tags=["python-lead"], confidence=0.9)
    c = _memory("Strong communicator", mem_type=MemoryType.SKILL)
    assert [m.id for m in text_search([a, b, c], "PYTHON")] == [b.id, a.id]
    assert [m.id for m in text_search([a, b, c], "skill")] == [c.id]
    assert text_search([a, b, c], "python", min_confidence=0.7) == [b]
    assert text_search([a, b, c], "   ") == []


def test_search_relevance_orders_exact_phrase_first():
    exact = _memory("Prefers remote work", confidence=0.3)
    partial = _memory("Remote options are nice to have", confidence=0.3)
    assert search_relevance(exact, "remote work") > search_relevance(partial, "remote work")
    assert search_relevance(_memory("x", confidence=0.9, importance=Importance.CRITICAL), "x") == 1.0


class TestParseMemoryIds:

    def test_bare_array(self):
        assert parse_memory_ids('["mem_1", "mem_2"]') == (True, ["mem_1", "mem_2"])

    @pytest.mark.parametrize("key", ["ids", "results", "relevant_memories"])
    def test_wrapped_array(self, key):
        assert parse_memory_ids(f'{{"{key}": ["mem_1", 7]}}') == (True, ["mem_1"])

    def test_already_decoded(self):
        assert parse_memory_ids({"ids": ["mem_9"]}) == (True, ["mem_9"])

    @pytest.mark.parametrize("reply", [
        '{"ids": null, "results": ["mem_3"]}',
        '{"ids": "mem_1", "relevant_memories": ["mem_3"]}',
        '{"results": {"id": "mem_1"}, "relevant_memories": ["mem_3"]}',
    ])
    def test_skips_wrapper_keys_without_a_list(self, reply):
        assert parse_memory_ids(reply) == (True, ["mem_3"])

    def test_no_wrapper_key_holds_a_list(self):
        ok, error = parse_memory_ids('{"ids": null, "results": 3}')
        assert ok is False
        assert "no id array" in error

    def test_invalid_json(self):
        ok, error = parse_memory_ids("not json")
        assert ok is False
        assert "invalid JSON" in error

    def test_unexpected_shape(self):
        assert parse_memory_ids('{"memories": []}')[0] is False
        assert parse_memory_ids('"mem_1"')[0] is False
