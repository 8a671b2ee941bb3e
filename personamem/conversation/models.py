"""Pydantic models for conversations.

A Conversation is an ordered message log with summary, context links,
analytics and per-conversation settings. Messages are frozen; the
Conversation aggregate changes only through its named methods
(``append_message``, ``update_summary``, ``edit_message``, ``rate``),
each of which keeps ``analytics`` consistent with the message list:
``analytics.message_count == len(messages)`` always holds.
"""

import random
import string
import time
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..memory.models import normalize_tags

ENGAGEMENT_MAX = 100
TOP_ACTIONS_LIMIT = 5


def _random_id(prefix: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def new_message_id() -> str:
    return _random_id("msg")


def new_conversation_id() -> str:
    return _random_id("conv")


class MessageType(str, Enum):
    USER = "user"
    AI = "ai"
    SYSTEM = "system"


class ConversationCategory(str, Enum):
    RESUME_HELP = "resume_help"
    JOB_SEARCH = "job_search"
    CAREER_ADVICE = "career_advice"
    INTERVIEW_PREP = "interview_prep"
    SKILL_DEVELOPMENT = "skill_development"
    GENERAL = "general"
    TROUBLESHOOTING = "troubleshooting"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class MessageContext(BaseModel):
    """UI situation the message was sent from."""

    model_config = ConfigDict(frozen=True)

    page: Optional[str] = None
    resume_id: Optional[str] = None
    job_id: Optional[str] = None
    action: Optional[str] = None


class MessageAction(BaseModel):
    """Structured action attached to an AI message."""

    model_config = ConfigDict(frozen=True)

    type: str
    confidence: Optional[float] = None
    data: Optional[Any] = None


class MessageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    tokens: int = 0
    model: Optional[str] = None
    temperature: Optional[float] = None
    context: Optional[MessageContext] = None
    suggestions: List[str] = Field(default_factory=list)
    actions: List[MessageAction] = Field(default_factory=list)
    resume_edit: bool = False
    changes: List[Dict[str, Any]] = Field(default_factory=list)
    new_analysis: Optional[Dict[str, Any]] = None


class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    name: Optional[str] = None
    url: Optional[str] = None
    size: Optional[int] = None


class EditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_content: str
    edited_at: datetime
    reason: Optional[str] = None


class Message(BaseModel):
    """One entry of a conversation log."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    type: MessageType
    content: str
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    attachments: List[Attachment] = Field(default_factory=list)
    is_edited: bool = False
    edit_history: List[EditRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def edited(self, content: str, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> "Message":
        """Return this message with new content, keeping the old text in history."""
        now = now or datetime.now()
        return self.model_copy(update={
            "content": content,
            "is_edited": True,
            "edit_history": self.edit_history + [
                EditRecord(original_content=self.content, edited_at=now, reason=reason)
            ],
            "updated_at": now,
        })


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Summary(BaseModel):
    """Condensed conversation; version 0 means never summarized."""

    content: Optional[str] = None
    key_topics: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
    outcomes: List[str] = Field(default_factory=list)
    generated_at: Optional[datetime] = None
    version: int = 0


class ConversationContext(BaseModel):
    primary_resume_id: Optional[str] = None
    related_job_ids: List[str] = Field(default_factory=list)
    skills_focused: List[str] = Field(default_factory=list)
    career_goals: List[str] = Field(default_factory=list)


class UserSatisfaction(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = None
    rated_at: datetime = Field(default_factory=datetime.now)


class ActionCount(BaseModel):
    action: str
    count: int


class ConversationAnalytics(BaseModel):
    message_count: int = 0
    tokens_used: int = 0
    user_satisfaction: Optional[UserSatisfaction] = None
    top_actions: List[ActionCount] = Field(default_factory=list)
    engagement_score: int = Field(default=0, ge=0, le=ENGAGEMENT_MAX)


class ConversationSettings(BaseModel):
    memory_enabled: bool = True
    auto_summarize: bool = True
    share_with_team: bool = False
    archive_after_days: int = 90


def calculate_engagement_score(
    messages: List[Message],
    rating: Optional[int] = None,
) -> int:
    """Engagement in [0, 100].

    min(count * 2, 40) for length, up to 20 for a balanced user/ai
    exchange, min(actions * 5, 20) for structured actions and
    (rating / 5) * 20 for a satisfaction rating.
    """
    user_count = sum(1 for m in messages if m.type == MessageType.USER)
    ai_count = sum(1 for m in messages if m.type == MessageType.AI)

    score = float(min(len(messages) * 2, 40))
    if user_count > 0 and ai_count > 0:
        score += min(user_count, ai_count) / max(user_count, ai_count) * 20

    action_count = sum(len(m.metadata.actions) for m in messages)
    score += min(action_count * 5, 20)

    if rating:
        score += (rating / 5) * 20

    return max(0, min(round(score), ENGAGEMENT_MAX))


class Conversation(BaseModel):
    """Aggregate root for one conversation document."""

    id: str = Field(default_factory=new_conversation_id)
    user_id: str
    title: str
    description: Optional[str] = None
    category: ConversationCategory = ConversationCategory.GENERAL
    tags: List[str] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)
    summary: Summary = Field(default_factory=Summary)
    context: ConversationContext = Field(default_factory=ConversationContext)
    analytics: ConversationAnalytics = Field(default_factory=ConversationAnalytics)
    settings: ConversationSettings = Field(default_factory=ConversationSettings)
    status: ConversationStatus = ConversationStatus.ACTIVE
    pinned: bool = False
    starred: bool = False
    last_active_at: datetime = Field(default_factory=datetime.now)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    version: int = 0

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be empty")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> List[str]:
        return normalize_tags(value)

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    # -- mutations --------------------------------------------------------

    def _refresh_analytics(self) -> None:
        action_counts = Counter(
            action.type for m in self.messages for action in m.metadata.actions
        )
        rating = (
            self.analytics.user_satisfaction.rating
            if self.analytics.user_satisfaction else None
        )
        self.analytics = self.analytics.model_copy(update={
            "message_count": len(self.messages),
            "tokens_used": sum(m.metadata.tokens for m in self.messages),
            "top_actions": [
                ActionCount(action=a, count=c)
                for a, c in action_counts.most_common(TOP_ACTIONS_LIMIT)
            ],
            "engagement_score": calculate_engagement_score(self.messages, rating),
        })

    def append_message(self, message: Message, now: Optional[datetime] = None) -> Message:
        now = now or datetime.now()
        self.messages = self.messages + [message]
        self._refresh_analytics()
        self.last_active_at = now
        self.updated_at = now
        return message

    def edit_message(
        self,
        message_id: str,
        content: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Message]:
        for i, m in enumerate(self.messages):
            if m.id == message_id:
                edited = m.edited(content, reason, now)
                self.messages = self.messages[:i] + [edited] + self.messages[i + 1:]
                self.updated_at = edited.updated_at
                return edited
        return None

    def update_summary(self, data: Dict[str, Any], now: Optional[datetime] = None) -> Summary:
        """Replace the summary, bumping its version by one."""
        merged = {**self.summary.model_dump(), **data}
        merged["generated_at"] = now or datetime.now()
        merged["version"] = self.summary.version + 1
        self.summary = Summary.model_validate(merged)
        return self.summary

    def rate(self, rating: int, feedback: Optional[str] = None,
             now: Optional[datetime] = None) -> int:
        """Record user satisfaction; returns the new engagement score."""
        self.analytics = self.analytics.model_copy(update={
            "user_satisfaction": UserSatisfaction(
                rating=rating, feedback=feedback, rated_at=now or datetime.now()
            ),
        })
        self._refresh_analytics()
        return self.analytics.engagement_score

    def needs_summary(self, window: int) -> bool:
        """Whether the log just reached a multiple of ``window`` messages."""
        count = len(self.messages)
        return self.settings.auto_summarize and count >= window and count % window == 0

    # -- queries ----------------------------------------------------------

    def recent_messages(self, limit: int = 10) -> List[Message]:
        """Newest ``limit`` messages, newest first."""
        ordered = sorted(self.messages, key=lambda m: m.created_at, reverse=True)
        return ordered[:max(0, limit)]

    def messages_by_type(self, message_type: MessageType) -> List[Message]:
        return [m for m in self.messages if m.type == message_type]

    def search_messages(self, query: str) -> List[Message]:
        """Case-insensitive substring match on content and suggestions."""
        needle = query.strip().lower()
        if not needle:
            return []
        return [
            m for m in self.messages
            if needle in m.content.lower()
            or any(needle in s.lower() for s in m.metadata.suggestions)
        ]

    def matches(self, query: str) -> bool:
        """Whether title, description, tags, key topics or any message mention ``query``."""
        needle = query.strip().lower()
        if not needle:
            return False
        fields = [self.title, self.description or ""]
        fields.extend(self.tags)
        fields.extend(self.summary.key_topics)
        if any(needle in f.lower() for f in fields):
            return True
        return any(needle in m.content.lower() for m in self.messages)

    # -- persistence helpers ---------------------------------------------

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"version"})

    @classmethod
    def from_document(cls, body: Dict[str, Any], version: int) -> "Conversation":
        return cls.model_validate({**body, "version": version})


class ConversationStats(BaseModel):
    """Totals across a user's non-deleted conversations."""

    total_conversations: int = 0
    total_messages: int = 0
    total_tokens: int = 0
    avg_engagement: float = 0.0
    categories: List[str] = Field(default_factory=list)
