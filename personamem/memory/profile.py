"""Profile and analytics derivation for a user's memory store.

Profile lists (skills, industries, traits, goals, preferences) and
Analytics counts are recomputed from active memories. Career stage and
communication style cannot be read off individual memories; they come
from extraction hints (``apply_profile_updates``) and from conversation
pattern analysis (``analyze_conversation_patterns``) and survive
recomputation.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from .models import (
    Analytics,
    CommunicationStyle,
    GoalProfile,
    IndustryProfile,
    Insight,
    MemoryEntry,
    MemoryType,
    PreferenceProfile,
    Profile,
    SkillProfile,
    TraitProfile,
)

logger = structlog.get_logger("personamem.memory")

MAX_INSIGHTS = 50

_PREFERENCE_TYPES = {
    MemoryType.PREFERENCE: "preference",
    MemoryType.WORK_STYLE: "work_style",
    MemoryType.TOOL_PREFERENCE: "tool_preference",
}

_FORMAL_WORDS = ("please", "thank you", "would you", "could you")
_CASUAL_WORDS = ("hey", "thanks", "cool", "awesome")


def compute_analytics(
    memories: Iterable[MemoryEntry],
    previous: Optional[Analytics] = None,
    now: Optional[datetime] = None,
) -> Analytics:
    """Counts, breakdowns and average confidence over active memories.

    Insights carry over from ``previous``.
    """
    active = [m for m in memories if m.is_active]
    by_type = Counter(m.type.value for m in active)
    by_category = Counter(m.category.value for m in active)
    average = sum(m.confidence for m in active) / len(active) if active else 0.0

    return Analytics(
        total_memories=len(active),
        memories_by_type=dict(by_type),
        memories_by_category=dict(by_category),
        average_confidence=round(average, 4),
        insights=list(previous.insights) if previous else [],
        last_analyzed_at=now or datetime.now(),
    )


def derive_profile(
    memories: Iterable[MemoryEntry],
    previous: Optional[Profile] = None,
) -> Profile:
    """Rebuild the profile lists from active memories."""
    active = sorted(
        (m for m in memories if m.is_active),
        key=lambda m: m.confidence,
        reverse=True,
    )

    skills: List[SkillProfile] = []
    industries: List[IndustryProfile] = []
    traits: List[TraitProfile] = []
    goals: List[GoalProfile] = []
    preferences: List[PreferenceProfile] = []

    for m in active:
        if m.type == MemoryType.SKILL:
            skills.append(SkillProfile(
                name=m.content,
                confidence=m.confidence,
                last_mentioned=m.decay.last_reinforced,
            ))
        elif m.type == MemoryType.INDUSTRY_KNOWLEDGE:
            industries.append(IndustryProfile(name=m.content, confidence=m.confidence))
        elif m.type == MemoryType.PERSONALITY_TRAIT:
            traits.append(TraitProfile(
                trait=m.content,
                strength=min(1.0, m.decay.reinforcement_count / 5),
                confidence=m.confidence,
            ))
        elif m.type in (MemoryType.CAREER_GOAL, MemoryType.LEARNING_GOAL):
            goals.append(GoalProfile(
                description=m.content,
                category="career" if m.type == MemoryType.CAREER_GOAL else "skill",
                confidence=m.confidence,
            ))
        elif m.type in _PREFERENCE_TYPES:
            preferences.append(PreferenceProfile(
                description=m.content,
                kind=_PREFERENCE_TYPES[m.type],
                confidence=m.confidence,
            ))

    previous = previous or Profile()
    return Profile(
        career_stage=previous.career_stage,
        career_stage_confidence=previous.career_stage_confidence,
        communication_style=previous.communication_style,
        skills=skills,
        industries=industries,
        personality_traits=traits,
        goals=goals,
        preferences=preferences,
    )


def apply_profile_updates(profile: Profile, updates: Dict[str, Any]) -> Profile:
    """Merge LLM-suggested profile hints into ``profile``.

    Understands ``communicationStyle`` (partial) and ``careerStage`` /
    ``careerStageConfidence``. Invalid values are logged and ignored.
    """
    if not updates:
        return profile

    data = profile.model_dump()

    style_update = updates.get("communicationStyle") or updates.get("communication_style")
    if isinstance(style_update, dict):
        merged_style = {**data["communication_style"], **{
            k: v for k, v in style_update.items() if v is not None
        }}
        try:
            data["communication_style"] = CommunicationStyle.model_validate(
                merged_style
            ).model_dump()
        except PydanticValidationError as e:
            logger.warning("profile_style_update_rejected", error=str(e)[:200])

    stage = updates.get("careerStage") or updates.get("career_stage")
    if stage:
        candidate = {**data, "career_stage": stage}
        stage_conf = updates.get("careerStageConfidence")
        if isinstance(stage_conf, (int, float)):
            candidate["career_stage_confidence"] = min(1.0, max(0.0, float(stage_conf)))
        try:
            Profile.model_validate(candidate)
            data = candidate
        except PydanticValidationError:
            logger.warning("profile_career_stage_rejected", value=str(stage)[:50])

    return Profile.model_validate(data)


def merge_insights(
    existing: List[Insight],
    descriptions: Iterable[Any],
    now: Optional[datetime] = None,
) -> List[Insight]:
    """Append new insight descriptions, skipping repeats, newest last.

    Keeps at most ``MAX_INSIGHTS`` entries.
    """
    now = now or datetime.now()
    known = {i.description.strip().lower() for i in existing}
    merged = list(existing)
    for item in descriptions:
        if isinstance(item, dict):
            try:
                insight = Insight.model_validate({**item, "generated_at": now})
            except PydanticValidationError:
                continue
        elif isinstance(item, str) and item.strip():
            insight = Insight(description=item.strip(), generated_at=now)
        else:
            continue
        key = insight.description.strip().lower()
        if key in known:
            continue
        known.add(key)
        merged.append(insight)
    return merged[-MAX_INSIGHTS:]


def analyze_conversation_patterns(user_messages: List[str]) -> Dict[str, Any]:
    """Heuristic communication-style analysis of a user's messages.

    Average message length maps to detail preference (< 50 chars brief,
    > 200 detailed, otherwise moderate); counts of formal vs casual
    phrases map to formality.

    Returns:
        Profile-update dict suitable for ``apply_profile_updates``;
        empty when there are no messages.
    """
    if not user_messages:
        return {}

    avg_length = sum(len(m) for m in user_messages) / len(user_messages)
    if avg_length < 50:
        detail = "brief"
    elif avg_length > 200:
        detail = "detailed"
    else:
        detail = "moderate"

    formal = casual = 0
    for message in user_messages:
        lowered = message.lower()
        formal += sum(1 for w in _FORMAL_WORDS if w in lowered)
        casual += sum(1 for w in _CASUAL_WORDS if w in lowered)

    if formal > casual:
        formality = "formal"
    elif casual > formal:
        formality = "casual"
    else:
        formality = "neutral"

    return {"communicationStyle": {"detail_preference": detail, "formality": formality}}
