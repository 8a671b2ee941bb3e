"""LLM-driven memory extraction.

Turns a raw user message into candidate memories via one JSON-mode LLM
call, validates the reply strictly, and hands the candidates to the
MemoryManager (which deduplicates and reinforces). Extraction is
best-effort: an unreachable, slow or incoherent LLM yields an empty
ExtractionResult and a log line, never an exception.

Key classes:
    ExtractionContext -- where the message came from (ids, page, tags).
    MemoryExtractor -- runs the extraction pipeline for one message.
"""

import json
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ExtractionFailure, PersonaMemError
from .manager import MemoryManager
from .models import (
    ExtractionMethod,
    ExtractionResult,
    MemoryCandidate,
    MemoryEntry,
    MemoryEntryContext,
    MemorySource,
    MemoryType,
)
from .ranking import RelevanceContext

logger = structlog.get_logger("personamem.memory")

NEGATIVE_EXAMPLE_TYPES = [
    MemoryType.PREFERENCE,
    MemoryType.SKILL,
    MemoryType.CAREER_GOAL,
    MemoryType.PERSONALITY_TRAIT,
]

EXTRACTION_TEMPERATURE = 0.3
EXTRACTION_MAX_TOKENS = 800


class ExtractionContext(BaseModel):
    """Provenance and situation of the message being mined."""

    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    page: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    resume_ids: List[str] = Field(default_factory=list)
    job_ids: List[str] = Field(default_factory=list)


class ExtractionPayload(BaseModel):
    """Expected shape of the extraction reply.

    A single malformed memory invalidates the whole reply.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    memories: List[MemoryCandidate] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    profile_updates: Dict[str, Any] = Field(default_factory=dict, alias="profileUpdates")


def parse_extraction_payload(raw: str) -> ExtractionPayload:
    """Decode and validate an extraction reply.

    Raises:
        ExtractionFailure: Not JSON, not an object, or schema mismatch.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ExtractionFailure(f"reply is not JSON: {e}", raw=str(raw)[:200]) from e
    if not isinstance(data, dict):
        raise ExtractionFailure("reply is not a JSON object", got=type(data).__name__)
    try:
        return ExtractionPayload.model_validate(data)
    except PydanticValidationError as e:
        raise ExtractionFailure(
            f"reply failed validation: {e.error_count()} error(s)",
            first_error=str(e.errors()[0].get("msg")),
        ) from e


def build_extraction_prompt(existing: List[MemoryEntry], context: ExtractionContext) -> str:
    """System prompt listing existing memories so they are not re-extracted."""
    existing_lines = "\n".join(f"- {m.type.value}: {m.content}" for m in existing) or "- (none)"
    types = "|".join(t.value for t in MemoryType)
    return (
        "You are a memory extraction system for a career assistant. Analyze the user's "
        "message and extract meaningful memories about their preferences, skills, goals, "
        "personality and work style.\n\n"
        "EXISTING MEMORIES (do not extract these again):\n"
        f"{existing_lines}\n\n"
        "CONTEXT:\n"
        f"- Page: {context.page or 'unknown'}\n"
        f"- Category: {context.category or 'general'}\n\n"
        "Reply with a JSON object of this form:\n"
        "{\n"
        '  "memories": [\n'
        "    {\n"
        f'      "type": "{types}",\n'
        '      "category": "personal|professional|technical|behavioral|contextual",\n'
        '      "content": "Clear, specific statement about the user",\n'
        '      "confidence": 0.1-1.0,\n'
        '      "importance": "low|medium|high|critical",\n'
        '      "tags": ["relevant", "tags"]\n'
        "    }\n"
        "  ],\n"
        '  "insights": ["Observable patterns about the user"],\n'
        '  "profileUpdates": {\n'
        '    "communicationStyle": {\n'
        '      "formality": "very_formal|formal|neutral|casual|very_casual",\n'
        '      "detail_preference": "brief|moderate|detailed|comprehensive"\n'
        "    }\n"
        "  }\n"
        "}\n\n"
        "Only extract memories that are specific, likely to be useful in future "
        "conversations, not duplicates of the existing memories, and stated with "
        "reasonable confidence. If the message holds no clear, specific information, "
        'return {"memories": [], "insights": [], "profileUpdates": {}}.'
    )


class MemoryExtractor:
    """Extracts memories from user messages and stores them.

    Args:
        manager: MemoryManager that stores the candidates.
        llm: LLM client (``complete`` coroutine).
        model: Model id for extraction calls.
        timeout: Seconds before an extraction call is abandoned.
        negative_examples: Existing memories shown to the model.
    """

    def __init__(
        self,
        manager: MemoryManager,
        llm,
        model: Optional[str] = None,
        timeout: float = 20,
        negative_examples: int = 5,
    ):
        self.manager = manager
        self.llm = llm
        self.model = model
        self.timeout = timeout
        self.negative_examples = negative_examples

    async def extract_from_message(
        self,
        user_id: str,
        message: str,
        context: Optional[ExtractionContext] = None,
    ) -> ExtractionResult:
        """Mine ``message`` for memories and store what is found.

        Returns:
            The stored (or reinforced) entries with the reply's insights
            and profile hints; an empty result when the LLM call or its
            reply fails.

        Raises:
            PersistenceConflict: Storing lost every compare-and-swap retry.
        """
        context = context or ExtractionContext()
        if not message or not message.strip():
            return ExtractionResult()

        try:
            payload, model_id = await self._call_llm(user_id, message, context)
        except PersonaMemError as e:
            logger.warning(
                "memory_extraction_failed",
                user_id=user_id,
                conversation_id=context.conversation_id,
                error_type=type(e).__name__,
                error=str(e)[:300],
            )
            return ExtractionResult()

        if not payload.memories and not payload.insights and not payload.profile_updates:
            logger.debug("memory_extraction_empty", user_id=user_id)
            return ExtractionResult()

        source = MemorySource(
            conversation_id=context.conversation_id,
            message_id=context.message_id,
            extraction_method=ExtractionMethod.AI_EXTRACTED,
            model=model_id,
        )
        entry_context = MemoryEntryContext(
            resume_ids=context.resume_ids,
            job_ids=context.job_ids,
            situation=context.page,
        )
        candidates = [
            c.model_copy(update={
                "source": source,
                "context": c.context or entry_context,
                "tags": c.tags or list(context.tags),
            })
            for c in payload.memories
        ]

        stored = await self.manager.add_memories(
            user_id,
            candidates,
            insights=payload.insights,
            profile_updates=payload.profile_updates,
        )
        logger.info(
            "memory_extraction_complete",
            user_id=user_id,
            conversation_id=context.conversation_id,
            memories=len(stored),
            insights=len(payload.insights),
        )
        return ExtractionResult(
            memories=stored,
            insights=payload.insights,
            profile_updates=payload.profile_updates,
        )

    async def _call_llm(
        self,
        user_id: str,
        message: str,
        context: ExtractionContext,
    ):
        snapshot = await self.manager.get_store(user_id)
        existing = snapshot.get_relevant(
            RelevanceContext(types=NEGATIVE_EXAMPLE_TYPES, tags=context.tags),
            self.negative_examples,
        )

        response = await self.llm.complete(
            [
                {"role": "system", "content": build_extraction_prompt(existing, context)},
                {"role": "user", "content": message},
            ],
            model=self.model,
            temperature=EXTRACTION_TEMPERATURE,
            max_tokens=EXTRACTION_MAX_TOKENS,
            json_mode=True,
            timeout=self.timeout,
        )
        return parse_extraction_payload(response.content), response.model
