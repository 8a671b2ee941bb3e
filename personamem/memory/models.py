"""Pydantic models for the memory system.

Defines the atomic fact record (MemoryEntry) with its nested source,
context, verification, usage, relationship and decay state, plus the
derived Profile and Analytics snapshots and per-user Settings.

MemoryEntry is frozen: every change goes through a named mutator
(``reinforce``, ``decayed``, ``absorb``, ``touched`` ...) that returns a
new entry. Confidence is clamped to [0, 1] on construction and by every
mutator.

Enums:
    MemoryType, MemoryCategory, Importance, ExtractionMethod,
    VerificationMethod, RelationType, RetentionPolicy, InsightType

Records:
    MemoryEntry, MemoryCandidate, Profile, Analytics, Insight,
    MemorySettings, ExtractionResult
"""

import random
import string
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Decay never pushes confidence below this floor
DECAY_FLOOR = 0.1
# Entries below this confidence are deactivated
ACTIVE_THRESHOLD = 0.2
REINFORCEMENT_STEP = 0.1
DEFAULT_CONFIDENCE = 0.8
DEFAULT_DECAY_RATE = 0.1


def clamp_confidence(value: float) -> float:
    """Clamp a confidence value into [0, 1]."""
    return min(1.0, max(0.0, float(value)))


def new_memory_id() -> str:
    """Generate an id of the form ``mem_<epoch ms>_<9 random chars>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"mem_{int(time.time() * 1000)}_{suffix}"


def normalize_tags(tags: Optional[List[str]]) -> List[str]:
    """Lowercase, strip and de-duplicate tags, keeping first-seen order."""
    seen: List[str] = []
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        clean = tag.strip().lower()
        if clean and clean not in seen:
            seen.append(clean)
    return seen


class MemoryType(str, Enum):
    """Kind of fact a memory asserts about the user."""
    PREFERENCE = "preference"
    SKILL = "skill"
    CAREER_GOAL = "career_goal"
    EXPERIENCE = "experience"
    ACHIEVEMENT = "achievement"
    CHALLENGE = "challenge"
    PERSONALITY_TRAIT = "personality_trait"
    COMMUNICATION_STYLE = "communication_style"
    WORK_STYLE = "work_style"
    INDUSTRY_KNOWLEDGE = "industry_knowledge"
    TOOL_PREFERENCE = "tool_preference"
    FEEDBACK_PATTERN = "feedback_pattern"
    EDUCATION = "education"
    LEARNING_GOAL = "learning_goal"
    WEAKNESS = "weakness"


class MemoryCategory(str, Enum):
    """Broad domain of a memory."""
    PERSONAL = "personal"
    PROFESSIONAL = "professional"
    TECHNICAL = "technical"
    BEHAVIORAL = "behavioral"
    CONTEXTUAL = "contextual"


class Importance(str, Enum):
    """How much a memory should weigh in retrieval."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ExtractionMethod(str, Enum):
    """How a memory came into existence."""
    EXPLICIT = "explicit"
    INFERRED = "inferred"
    PATTERN_DETECTED = "pattern_detected"
    USER_CONFIRMED = "user_confirmed"
    AI_EXTRACTED = "ai_extracted"
    SUMMARY_EXTRACTED = "summary_extracted"
    USER_ADDED = "user_added"


class VerificationMethod(str, Enum):
    """How a memory was verified."""
    USER_CONFIRMED = "user_confirmed"
    REPEATED_OBSERVATION = "repeated_observation"
    CROSS_REFERENCED = "cross_referenced"


class RelationType(str, Enum):
    """Relationship between two memories."""
    REINFORCES = "reinforces"
    CONTRADICTS = "contradicts"
    BUILDS_ON = "builds_on"
    SPECIFIES = "specifies"
    GENERALIZES = "generalizes"


class RetentionPolicy(str, Enum):
    """Per-user retention policy; scales the decay rate.

    aggressive forgets twice as fast, conservative half as fast.
    """
    AGGRESSIVE = "aggressive"
    NORMAL = "normal"
    CONSERVATIVE = "conservative"


RETENTION_DECAY_MULTIPLIER = {
    RetentionPolicy.AGGRESSIVE: 2.0,
    RetentionPolicy.NORMAL: 1.0,
    RetentionPolicy.CONSERVATIVE: 0.5,
}


class InsightType(str, Enum):
    """Category of an analytics insight."""
    PATTERN = "pattern"
    OPPORTUNITY = "opportunity"
    STRENGTH = "strength"
    CHALLENGE = "challenge"
    RECOMMENDATION = "recommendation"


# ---------------------------------------------------------------------------
# MemoryEntry and its nested state
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class MemorySource(_Frozen):
    """Where a memory came from."""

    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    extraction_method: ExtractionMethod = ExtractionMethod.INFERRED
    model: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class TimeRange(_Frozen):
    """Period a memory applies to."""

    start: Optional[datetime] = Field(default=None, alias="from")
    end: Optional[datetime] = Field(default=None, alias="to")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class MemoryEntryContext(_Frozen):
    """Opaque resume/job links and situation for a memory."""

    resume_ids: List[str] = Field(default_factory=list)
    job_ids: List[str] = Field(default_factory=list)
    timeframe: Optional[TimeRange] = None
    situation: Optional[str] = None


class Verification(_Frozen):
    """Verification state of a memory."""

    is_verified: bool = False
    verified_at: Optional[datetime] = None
    method: Optional[VerificationMethod] = None
    count: int = 0


class Usage(_Frozen):
    """Retrieval statistics for a memory."""

    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    effectiveness_rating: Optional[int] = Field(default=None, ge=1, le=5)
    user_feedback: Optional[str] = None


class Relationship(_Frozen):
    """Directed link to another memory."""

    related_memory_id: str
    relationship_type: RelationType
    strength: float = Field(default=0.5, ge=0.0, le=1.0)


class DecayState(_Frozen):
    """Reinforcement bookkeeping that drives decay."""

    last_reinforced: datetime = Field(default_factory=datetime.now)
    reinforcement_count: int = Field(default=1, ge=1)
    decay_rate: float = Field(default=DEFAULT_DECAY_RATE, ge=0.0)


class MemoryEntry(_Frozen):
    """A single inferred fact about a user."""

    id: str = Field(default_factory=new_memory_id)
    type: MemoryType
    category: MemoryCategory
    content: str
    confidence: float = DEFAULT_CONFIDENCE
    importance: Importance = Importance.MEDIUM
    source: MemorySource = Field(default_factory=MemorySource)
    context: MemoryEntryContext = Field(default_factory=MemoryEntryContext)
    verification: Verification = Field(default_factory=Verification)
    usage: Usage = Field(default_factory=Usage)
    relationships: List[Relationship] = Field(default_factory=list)
    decay: DecayState = Field(default_factory=DecayState)
    tags: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("memory content must not be empty")
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        if value is None:
            return DEFAULT_CONFIDENCE
        return clamp_confidence(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> List[str]:
        return normalize_tags(value)

    # -- mutators ---------------------------------------------------------

    def reinforce(
        self,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> "MemoryEntry":
        """Return this memory reinforced by a duplicate observation.

        Raises confidence by 0.1 (capped at 1), bumps the reinforcement
        count, refreshes ``last_reinforced``, unions tags and adopts the
        newer phrasing when one is given.
        """
        now = now or datetime.now()
        new_content = content.strip() if content and content.strip() else self.content
        return self.model_copy(update={
            "content": new_content,
            "confidence": clamp_confidence(self.confidence + REINFORCEMENT_STEP),
            "tags": normalize_tags(self.tags + list(tags or [])),
            "decay": self.decay.model_copy(update={
                "last_reinforced": now,
                "reinforcement_count": self.decay.reinforcement_count + 1,
            }),
            "updated_at": now,
        })

    def decayed(
        self,
        now: Optional[datetime] = None,
        rate_multiplier: float = 1.0,
    ) -> "MemoryEntry":
        """Return this memory after one decay pass.

        ``confidence = max(0.1, confidence - days * decay_rate)``, never
        raising confidence. Inactive memories are returned unchanged;
        memories that drop below 0.2 are deactivated for good.
        """
        if not self.is_active:
            return self
        now = now or datetime.now()
        days = max(0.0, (now - self.decay.last_reinforced).total_seconds() / 86400)
        decay_amount = days * self.decay.decay_rate * rate_multiplier
        confidence = min(self.confidence, max(DECAY_FLOOR, self.confidence - decay_amount))
        return self.model_copy(update={
            "confidence": clamp_confidence(confidence),
            "is_active": confidence >= ACTIVE_THRESHOLD,
        })

    def absorb(self, weaker: "MemoryEntry", now: Optional[datetime] = None) -> "MemoryEntry":
        """Return this memory after merging a weaker near-duplicate into it."""
        return self.model_copy(update={
            "confidence": clamp_confidence(self.confidence + REINFORCEMENT_STEP),
            "tags": normalize_tags(self.tags + weaker.tags),
            "decay": self.decay.model_copy(update={
                "reinforcement_count": (
                    self.decay.reinforcement_count + weaker.decay.reinforcement_count
                ),
            }),
            "updated_at": now or datetime.now(),
        })

    def touched(self, now: Optional[datetime] = None) -> "MemoryEntry":
        """Return this memory with a retrieval recorded."""
        return self.model_copy(update={
            "usage": self.usage.model_copy(update={
                "access_count": self.usage.access_count + 1,
                "last_accessed_at": now or datetime.now(),
            }),
        })

    def verified(
        self,
        method: VerificationMethod = VerificationMethod.USER_CONFIRMED,
        now: Optional[datetime] = None,
    ) -> "MemoryEntry":
        """Return this memory marked as verified."""
        now = now or datetime.now()
        return self.model_copy(update={
            "verification": Verification(
                is_verified=True,
                verified_at=now,
                method=method,
                count=self.verification.count + 1,
            ),
            "updated_at": now,
        })

    def rated(self, rating: int, feedback: Optional[str] = None) -> "MemoryEntry":
        """Return this memory with a user effectiveness rating (1-5)."""
        return self.model_copy(update={
            "usage": Usage(
                access_count=self.usage.access_count,
                last_accessed_at=self.usage.last_accessed_at,
                effectiveness_rating=rating,
                user_feedback=feedback if feedback is not None else self.usage.user_feedback,
            ),
        })

    def related_to(
        self,
        other_id: str,
        relationship_type: RelationType,
        strength: float = 0.5,
    ) -> "MemoryEntry":
        """Return this memory with a relationship added (or replaced)."""
        kept = [r for r in self.relationships if r.related_memory_id != other_id]
        kept.append(Relationship(
            related_memory_id=other_id,
            relationship_type=relationship_type,
            strength=strength,
        ))
        return self.model_copy(update={"relationships": kept})

    def deactivated(self, now: Optional[datetime] = None) -> "MemoryEntry":
        """Return this memory deactivated."""
        return self.model_copy(update={"is_active": False, "updated_at": now or datetime.now()})


class MemoryCandidate(BaseModel):
    """A fact proposed for storage, before dedup against existing memories.

    Also the per-memory shape the LLM returns from extraction and
    summarization calls.
    """

    model_config = ConfigDict(extra="ignore")

    type: MemoryType
    category: MemoryCategory
    content: str = Field(..., min_length=1)
    confidence: Optional[float] = None
    importance: Optional[Importance] = None
    tags: List[str] = Field(default_factory=list)
    source: Optional[MemorySource] = None
    context: Optional[MemoryEntryContext] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> Optional[float]:
        if value is None:
            return None
        return clamp_confidence(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> List[str]:
        return normalize_tags(value)


# ---------------------------------------------------------------------------
# Profile / Analytics / Settings
# ---------------------------------------------------------------------------

CareerStage = Literal[
    "student", "entry_level", "mid_level", "senior_level",
    "executive", "career_changer", "returning_professional",
]
Formality = Literal["very_formal", "formal", "neutral", "casual", "very_casual"]
DetailPreference = Literal["brief", "moderate", "detailed", "comprehensive"]
LearningStyle = Literal["visual", "auditory", "kinesthetic", "reading"]
FeedbackPreference = Literal["direct", "gentle", "detailed", "actionable"]


class SkillProfile(BaseModel):
    name: str
    level: Optional[Literal["beginner", "intermediate", "advanced", "expert"]] = None
    confidence: float = 0.0
    last_mentioned: Optional[datetime] = None


class IndustryProfile(BaseModel):
    name: str
    experience_level: Optional[str] = None
    interest_level: Optional[float] = None
    confidence: float = 0.0


class TraitProfile(BaseModel):
    trait: str
    strength: float = 0.0
    confidence: float = 0.0


class GoalProfile(BaseModel):
    description: str
    horizon: Optional[Literal["short_term", "medium_term", "long_term"]] = None
    category: Optional[Literal["career", "skill", "personal", "financial"]] = None
    priority: Optional[int] = None
    confidence: float = 0.0


class PreferenceProfile(BaseModel):
    description: str
    kind: str = "preference"
    confidence: float = 0.0


class CommunicationStyle(BaseModel):
    formality: Optional[Formality] = None
    detail_preference: Optional[DetailPreference] = None
    learning_style: Optional[LearningStyle] = None
    feedback_preference: Optional[FeedbackPreference] = None


class Profile(BaseModel):
    """Aggregate view of the user derived from active memories.

    ``career_stage`` and ``communication_style`` come from extraction
    hints and conversation pattern analysis; the lists are rebuilt from
    memories on every recompute.
    """

    career_stage: Optional[CareerStage] = None
    career_stage_confidence: Optional[float] = None
    industries: List[IndustryProfile] = Field(default_factory=list)
    skills: List[SkillProfile] = Field(default_factory=list)
    personality_traits: List[TraitProfile] = Field(default_factory=list)
    communication_style: CommunicationStyle = Field(default_factory=CommunicationStyle)
    goals: List[GoalProfile] = Field(default_factory=list)
    preferences: List[PreferenceProfile] = Field(default_factory=list)


class Insight(BaseModel):
    type: InsightType = InsightType.PATTERN
    description: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    actionable: bool = False
    generated_at: datetime = Field(default_factory=datetime.now)


class Analytics(BaseModel):
    """Counts and averages over active memories."""

    total_memories: int = 0
    memories_by_type: Dict[str, int] = Field(default_factory=dict)
    memories_by_category: Dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0
    insights: List[Insight] = Field(default_factory=list)
    last_analyzed_at: Optional[datetime] = None


class MemorySettings(BaseModel):
    """Per-user memory management settings."""

    memory_retention: RetentionPolicy = RetentionPolicy.NORMAL
    auto_decay: bool = True
    require_verification: bool = False
    share_insights: bool = True
    max_memories: int = Field(default=1000, ge=1)


class ExtractionResult(BaseModel):
    """Outcome of one extraction run; empty when extraction failed."""

    memories: List[MemoryEntry] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    profile_updates: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.memories and not self.insights and not self.profile_updates
