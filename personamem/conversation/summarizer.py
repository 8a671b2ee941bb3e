"""LLM-based conversation summarization and title generation.

The summarizer condenses the last ``window`` messages of a conversation
into a summary (topics, action items, outcomes) and a set of memories
that are fed back into the user's memory store as
``summary_extracted``. Like extraction it is best-effort: any LLM or
parse failure is logged and yields None.

Key class:
    ConversationSummarizer -- summary and title generation.
"""

import json
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ExtractionFailure, PersonaMemError
from ..memory.models import ExtractionMethod, MemoryCandidate, MemoryEntry, MemorySource
from .models import Conversation, Message

logger = structlog.get_logger("personamem.conversation")

SUMMARY_TEMPERATURE = 0.3
SUMMARY_MAX_TOKENS = 1000
TITLE_TEMPERATURE = 0.5
TITLE_MAX_TOKENS = 50
TITLE_SAMPLE_MESSAGES = 5
DEFAULT_TITLE = "New Conversation"
FALLBACK_TITLE = "Career Assistance"
FALLBACK_TITLES = {
    "resumes": "Resume Assistance",
    "jobs": "Job Search Help",
    "career": "Career Guidance",
    "interview": "Interview Preparation",
}

SUMMARY_PROMPT = """You create conversation summaries for a career assistant and extract what is worth remembering about the user.

Analyze the conversation and reply with a JSON object:
{
  "summary": "Brief summary of the conversation",
  "keyTopics": ["topic1", "topic2"],
  "actionItems": ["action1", "action2"],
  "outcomes": ["outcome1", "outcome2"],
  "memories": [
    {
      "type": "preference|skill|career_goal|personality_trait|work_style|...",
      "category": "personal|professional|technical|behavioral|contextual",
      "content": "What you learned about the user",
      "confidence": 0.8,
      "importance": "low|medium|high|critical",
      "tags": ["tag1", "tag2"]
    }
  ],
  "insights": ["insight1", "insight2"]
}"""


class SummaryPayload(BaseModel):
    """Expected shape of the summary reply."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    summary: str = Field(..., min_length=1)
    key_topics: List[str] = Field(default_factory=list, alias="keyTopics")
    action_items: List[str] = Field(default_factory=list, alias="actionItems")
    outcomes: List[str] = Field(default_factory=list)
    memories: List[MemoryCandidate] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)

    def summary_fields(self) -> Dict[str, Any]:
        return {
            "content": self.summary,
            "key_topics": self.key_topics,
            "action_items": self.action_items,
            "outcomes": self.outcomes,
        }


def format_transcript(messages: List[Message]) -> str:
    return "\n".join(f"{m.type.value.upper()}: {m.content}" for m in messages)


def parse_summary_payload(raw: str) -> SummaryPayload:
    """Decode and validate a summary reply.

    Raises:
        ExtractionFailure: Not JSON or schema mismatch.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ExtractionFailure(f"summary reply is not JSON: {e}",
                                module="conversation.summarizer") from e
    try:
        return SummaryPayload.model_validate(data)
    except PydanticValidationError as e:
        raise ExtractionFailure(
            f"summary reply failed validation: {e.error_count()} error(s)",
            module="conversation.summarizer",
        ) from e


class ConversationSummarizer:
    """Summarizes conversations and generates titles.

    Args:
        llm: LLM client (``complete`` coroutine).
        memory_manager: Receives the memories found in summaries.
        model: Model for summaries.
        title_model: Cheaper model for titles.
        timeout: Seconds before a summary call is abandoned.
        window: Number of most recent messages summarized.
    """

    def __init__(
        self,
        llm,
        memory_manager=None,
        model: Optional[str] = None,
        title_model: Optional[str] = None,
        timeout: float = 45,
        window: int = 20,
    ):
        self.llm = llm
        self.memory_manager = memory_manager
        self.model = model
        self.title_model = title_model
        self.timeout = timeout
        self.window = window

    async def summarize(self, conversation: Conversation) -> Optional[SummaryPayload]:
        """Summarize the last ``window`` messages; None on any LLM failure."""
        messages = conversation.messages[-self.window:]
        if not messages:
            return None

        try:
            response = await self.llm.complete(
                [
                    {"role": "system", "content": SUMMARY_PROMPT},
                    {"role": "user", "content": format_transcript(messages)},
                ],
                model=self.model,
                temperature=SUMMARY_TEMPERATURE,
                max_tokens=SUMMARY_MAX_TOKENS,
                json_mode=True,
                timeout=self.timeout,
            )
            payload = parse_summary_payload(response.content)
        except PersonaMemError as e:
            logger.warning(
                "conversation_summary_failed",
                conversation_id=conversation.id,
                error_type=type(e).__name__,
                error=str(e)[:300],
            )
            return None

        logger.info(
            "conversation_summarized",
            conversation_id=conversation.id,
            messages=len(messages),
            memories=len(payload.memories),
        )
        return payload

    async def store_memories(
        self,
        conversation: Conversation,
        payload: SummaryPayload,
        model_id: Optional[str] = None,
    ) -> List[MemoryEntry]:
        """Feed the summary's memories and insights into the memory store."""
        if self.memory_manager is None or not (payload.memories or payload.insights):
            return []

        source = MemorySource(
            conversation_id=conversation.id,
            extraction_method=ExtractionMethod.SUMMARY_EXTRACTED,
            model=model_id or self.model,
        )
        candidates = [c.model_copy(update={"source": source}) for c in payload.memories]
        return await self.memory_manager.add_memories(
            conversation.user_id, candidates, insights=payload.insights
        )

    async def generate_title(
        self,
        messages: List[Message],
        page: Optional[str] = None,
    ) -> str:
        """Short descriptive title from the first few messages.

        Falls back to a page-based title when the LLM is unavailable.
        """
        if not messages:
            return DEFAULT_TITLE

        prompt = (
            "Generate a concise, descriptive title for this conversation. The title "
            "should be 3-6 words long, capture the main topic, and use professional "
            "language.\n\n"
            f'Context: this is a career assistance conversation on page "{page or "unknown"}".'
            "\n\nReturn only the title, nothing else."
        )
        try:
            response = await self.llm.complete(
                [
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": format_transcript(messages[:TITLE_SAMPLE_MESSAGES])},
                ],
                model=self.title_model,
                temperature=TITLE_TEMPERATURE,
                max_tokens=TITLE_MAX_TOKENS,
                timeout=self.timeout,
            )
        except PersonaMemError as e:
            logger.warning("conversation_title_failed", error=str(e)[:200], page=page)
            return FALLBACK_TITLES.get(page or "", FALLBACK_TITLE)

        title = response.content.strip().strip('"').strip()
        return title or FALLBACK_TITLE
