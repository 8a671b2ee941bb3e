"""Tests for memory entry mutators and candidate validation."""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from personamem.memory.models import (
    ExtractionResult,
    Importance,
    MemoryCandidate,
    MemoryCategory,
    MemoryEntry,
    MemoryType,
    RelationType,
    VerificationMethod,
    normalize_tags,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)


def _entry(**overrides):
    data = {
        "type": MemoryType.SKILL,
        "category": MemoryCategory.TECHNICAL,
        "content": "Proficient in Python programming",
    }
    data.update(overrides)
    return MemoryEntry(**data)


def test_id_format():
    entry = _entry()
    prefix, millis, suffix = entry.id.split("_")
    assert prefix == "mem"
    assert millis.isdigit()
    assert len(suffix) == 9


def test_confidence_clamped_on_construction():
    assert _entry(confidence=1.7).confidence == 1.0
    assert _entry(confidence=-0.3).confidence == 0.0
    assert _entry(confidence=None).confidence == 0.8


def test_blank_content_rejected():
    with pytest.raises(PydanticValidationError):
        _entry(content="   ")


def test_entries_are_frozen():
    entry = _entry()
    with pytest.raises(PydanticValidationError):
        entry.confidence = 0.1


def test_normalize_tags():
    assert normalize_tags([" Python", "python", "", "SQL", 3]) == ["python", "sql"]
    assert normalize_tags(None) == []


class TestReinforce:

    def test_raises_confidence_and_count(self):
        entry = _entry(confidence=0.8)
        reinforced = entry.reinforce(now=NOW)
        assert reinforced.confidence == pytest.approx(0.9)
        assert reinforced.decay.reinforcement_count == 2
        assert reinforced.decay.last_reinforced == NOW
        assert reinforced.id == entry.id

    def test_confidence_capped_at_one(self):
        reinforced = _entry(confidence=0.95).reinforce(now=NOW)
        assert reinforced.confidence == 1.0

    def test_adopts_new_phrasing_and_unions_tags(self):
        entry = _entry(tags=["python"])
        reinforced = entry.reinforce("Expert Python developer", ["Backend", "python"], NOW)
        assert reinforced.content == "Expert Python developer"
        assert reinforced.tags == ["python", "backend"]

    def test_blank_phrasing_keeps_content(self):
        entry = _entry()
        assert entry.reinforce("  ", now=NOW).content == entry.content


class TestDecay:

    def test_decay_by_elapsed_days(self):
        entry = _entry(confidence=0.9)
        entry = entry.model_copy(update={
            "decay": entry.decay.model_copy(update={"last_reinforced": NOW - timedelta(days=2)})
        })
        decayed = entry.decayed(NOW)
        assert decayed.confidence == pytest.approx(0.7)
        assert decayed.is_active

    def test_decay_floor_and_deactivation(self):
        entry = _entry(confidence=0.5)
        entry = entry.model_copy(update={
            "decay": entry.decay.model_copy(update={"last_reinforced": NOW - timedelta(days=5)})
        })
        decayed = entry.decayed(NOW)
        assert decayed.confidence == pytest.approx(0.1)
        assert decayed.is_active is False

    def test_decay_never_raises_confidence(self):
        entry = _entry(confidence=0.05)
        entry = entry.model_copy(update={
            "decay": entry.decay.model_copy(update={"last_reinforced": NOW - timedelta(days=1)})
        })
        assert entry.decayed(NOW).confidence == pytest.approx(0.05)

    def test_rate_multiplier_scales_decay(self):
        entry = _entry(confidence=0.9)
        entry = entry.model_copy(update={
            "decay": entry.decay.model_copy(update={"last_reinforced": NOW - timedelta(days=2)})
        })
        assert entry.decayed(NOW, rate_multiplier=0.5).confidence == pytest.approx(0.8)

    def test_inactive_entry_unchanged(self):
        entry = _entry().deactivated(NOW)
        assert entry.decayed(NOW + timedelta(days=30)) == entry


def test_absorb_combines_counts_and_tags():
    strong = _entry(confidence=0.8, tags=["python"])
    weak = _entry(confidence=0.6, tags=["data"])
    merged = strong.absorb(weak, NOW)
    assert merged.confidence == pytest.approx(0.9)
    assert merged.decay.reinforcement_count == 2
    assert merged.tags == ["python", "data"]


def test_touched_counts_access():
    touched = _entry().touched(NOW).touched(NOW)
    assert touched.usage.access_count == 2
    assert touched.usage.last_accessed_at == NOW


def test_verified_and_rated():
    entry = _entry().verified(VerificationMethod.CROSS_REFERENCED, NOW)
    assert entry.verification.is_verified
    assert entry.verification.count == 1
    rated = entry.rated(4, "useful")
    assert rated.usage.effectiveness_rating == 4
    assert rated.usage.user_feedback == "useful"


def test_related_to_replaces_existing_link():
    entry = _entry().related_to("mem_1", RelationType.BUILDS_ON, 0.4)
    entry = entry.related_to("mem_1", RelationType.CONTRADICTS, 0.9)
    assert len(entry.relationships) == 1
    assert entry.relationships[0].relationship_type == RelationType.CONTRADICTS


def test_candidate_coerces_strings():
    candidate = MemoryCandidate.model_validate({
        "type": "career_goal",
        "category": "professional",
        "content": "Wants to become a staff engineer",
        "importance": "high",
        "tags": ["Career"],
        "unexpected": "ignored",
    })
    assert candidate.type == MemoryType.CAREER_GOAL
    assert candidate.importance == Importance.HIGH
    assert candidate.tags == ["career"]
    assert candidate.confidence is None


def test_candidate_rejects_unknown_type():
    with pytest.raises(PydanticValidationError):
        MemoryCandidate.model_validate({
            "type": "favourite_colour", "category": "personal", "content": "Blue",
        })


def test_extraction_result_is_empty():
    assert ExtractionResult().is_empty
    assert not ExtractionResult(insights=["prefers remote work"]).is_empty
