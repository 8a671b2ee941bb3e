"""Tests for profile/analytics derivation and communication analysis."""

from datetime import datetime

import pytest

from personamem.memory.models import (
    Insight,
    MemoryCategory,
    MemoryEntry,
    MemoryType,
    Profile,
)
from personamem.memory.profile import (
    MAX_INSIGHTS,
    analyze_conversation_patterns,
    apply_profile_updates,
    compute_analytics,
    derive_profile,
    merge_insights,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)


def _memory(content, mem_type, confidence=0.8, category=MemoryCategory.PROFESSIONAL):
    return MemoryEntry(type=mem_type, category=category, content=content, confidence=confidence)


def test_compute_analytics_counts_active_only():
    memories = [
        _memory("Python", MemoryType.SKILL, 0.9),
        _memory("SQL", MemoryType.SKILL, 0.7),
        _memory("Remote", MemoryType.PREFERENCE, 0.5, MemoryCategory.PERSONAL),
        _memory("Old", MemoryType.SKILL).deactivated(NOW),
    ]
    analytics = compute_analytics(memories, now=NOW)
    assert analytics.total_memories == 3
    assert analytics.memories_by_type == {"skill": 2, "preference": 1}
    assert analytics.memories_by_category == {"professional": 2, "personal": 1}
    assert analytics.average_confidence == pytest.approx(0.7)
    assert analytics.last_analyzed_at == NOW


def test_compute_analytics_empty_store():
    analytics = compute_analytics([], now=NOW)
    assert analytics.total_memories == 0
    assert analytics.average_confidence == 0.0


def test_derive_profile_groups_by_type():
    memories = [
        _memory("Python", MemoryType.SKILL, 0.6),
        _memory("Go", MemoryType.SKILL, 0.9),
        _memory("Fintech", MemoryType.INDUSTRY_KNOWLEDGE),
        _memory("Detail oriented", MemoryType.PERSONALITY_TRAIT),
        _memory("Become a CTO", MemoryType.CAREER_GOAL),
        _memory("Learn Rust", MemoryType.LEARNING_GOAL),
        _memory("Uses Vim", MemoryType.TOOL_PREFERENCE),
    ]
    previous = Profile(career_stage="senior_level")
    profile = derive_profile(memories, previous)

    assert [s.name for s in profile.skills] == ["Go", "Python"]
    assert profile.industries[0].name == "Fintech"
    assert profile.personality_traits[0].strength == pytest.approx(0.2)
    assert {g.category for g in profile.goals} == {"career", "skill"}
    assert profile.preferences[0].kind == "tool_preference"
    assert profile.career_stage == "senior_level"


class TestApplyProfileUpdates:

    def test_partial_communication_style(self):
        profile = apply_profile_updates(Profile(), {
            "communicationStyle": {"formality": "casual", "detail_preference": None},
        })
        assert profile.communication_style.formality == "casual"
        assert profile.communication_style.detail_preference is None

    def test_career_stage_with_confidence(self):
        profile = apply_profile_updates(Profile(), {
            "careerStage": "career_changer", "careerStageConfidence": 1.4,
        })
        assert profile.career_stage == "career_changer"
        assert profile.career_stage_confidence == 1.0

    def test_invalid_values_ignored(self):
        original = Profile(career_stage="student")
        profile = apply_profile_updates(original, {
            "careerStage": "astronaut",
            "communicationStyle": {"formality": "shouty"},
        })
        assert profile.career_stage == "student"
        assert profile.communication_style.formality is None


def test_merge_insights_dedupes_and_caps():
    existing = [Insight(description="Prefers remote work")]
    merged = merge_insights(existing, ["prefers remote work", "Values mentorship", "", 42], NOW)
    assert [i.description for i in merged] == ["Prefers remote work", "Values mentorship"]

    many = merge_insights([], [f"insight {n}" for n in range(MAX_INSIGHTS + 5)], NOW)
    assert len(many) == MAX_INSIGHTS
    assert many[-1].description == f"insight {MAX_INSIGHTS + 4}"


def test_merge_insights_accepts_structured_items():
    merged = merge_insights([], [{"type": "strength", "description": "Strong SQL"}], NOW)
    assert merged[0].type.value == "strength"


class TestConversationPatterns:

    def test_no_messages(self):
        assert analyze_conversation_patterns([]) == {}

    def test_brief_casual(self):
        result = analyze_conversation_patterns(["hey, cool", "thanks!"])
        assert result["communicationStyle"] == {"detail_preference": "brief", "formality": "casual"}

    def test_detailed_formal(self):
        long_message = "Could you please review my resume? " + "x" * 220
        result = analyze_conversation_patterns([long_message])
        assert result["communicationStyle"] == {
            "detail_preference": "detailed", "formality": "formal",
        }
