"""Conversation store service.

Owns conversation documents: creation, the append-only message log,
metadata updates, search, statistics and export. Appends are
serialized per conversation and persisted with compare-and-swap, the
same way MemoryManager handles user stores.

Appending a user message schedules memory extraction in the background;
every ``summary_window``-th message schedules a summary. Neither can
fail the append.
"""

import asyncio
import inspect
import weakref
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..background import BackgroundTaskSupervisor
from ..events import EventBus, ResumeEditEvent
from ..exceptions import NotFoundError, PersistenceConflict, ValidationError
from ..memory.extraction import ExtractionContext
from ..storage import CONVERSATION_COLLECTION, DocumentStore
from .export import ExportedConversation, export_conversation
from .models import (
    Attachment,
    Conversation,
    ConversationCategory,
    ConversationContext,
    ConversationSettings,
    ConversationStats,
    ConversationStatus,
    Message,
    MessageMetadata,
    MessageType,
)
from .summarizer import DEFAULT_TITLE

logger = structlog.get_logger("personamem.conversation")

T = TypeVar("T")

UPDATABLE_FIELDS = ("title", "description", "category", "tags", "pinned", "starred", "settings")
SORTABLE_FIELDS = ("last_active_at", "created_at", "updated_at", "title")


class ConversationPage(BaseModel):
    conversations: List[Conversation] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


class ConversationManager:
    """Central coordinator for conversation documents.

    Args:
        db: Initialized document store.
        memory_manager: Receives communication-style analysis (optional).
        extractor: MemoryExtractor run on user messages (optional).
        summarizer: ConversationSummarizer for auto-summaries (optional).
        supervisor: Runs extraction/summaries in the background.
        event_bus: Receives resume-edit events.
        max_conflict_retries: Compare-and-swap retries per mutation.
        summary_window: Summarize every N messages.
    """

    def __init__(
        self,
        db: DocumentStore,
        memory_manager=None,
        extractor=None,
        summarizer=None,
        supervisor: Optional[BackgroundTaskSupervisor] = None,
        event_bus: Optional[EventBus] = None,
        max_conflict_retries: int = 3,
        summary_window: int = 20,
    ):
        self.db = db
        self.memory_manager = memory_manager
        self.extractor = extractor
        self.summarizer = summarizer
        self.supervisor = supervisor or BackgroundTaskSupervisor()
        self.event_bus = event_bus or EventBus()
        self.max_conflict_retries = max_conflict_retries
        self.summary_window = summary_window
        # Locks drop out once no coroutine holds or awaits them
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    # Loading and transactions
    async def _load(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Conversation:
        found = await self.db.get(CONVERSATION_COLLECTION, conversation_id)
        if found is not None:
            body, version = found
            conversation = Conversation.from_document(body, version)
            owned = user_id is None or conversation.user_id == user_id
            visible = include_deleted or conversation.status != ConversationStatus.DELETED
            if owned and visible:
                return conversation
        raise NotFoundError(
            resource="conversation", resource_id=conversation_id, module="conversation.manager"
        )

    async def _mutate(
        self,
        conversation_id: str,
        change: Callable[[Conversation], Union[T, Awaitable[T]]],
        user_id: Optional[str] = None,
    ) -> Tuple[Conversation, T]:
        """Apply ``change`` to a fresh copy of the conversation and persist it.

        Returns:
            Tuple of (persisted conversation, change result).
        """
        async with self._lock_for(conversation_id):
            attempt = 0
            while True:
                conversation = await self._load(conversation_id, user_id)
                result = change(conversation)
                if inspect.isawaitable(result):
                    result = await result
                try:
                    conversation.version = await self.db.save(
                        CONVERSATION_COLLECTION,
                        conversation_id,
                        conversation.to_document(),
                        conversation.version,
                    )
                    return conversation, result
                except PersistenceConflict:
                    attempt += 1
                    if attempt > self.max_conflict_retries:
                        logger.error("conversation_write_conflict_exhausted",
                                     conversation_id=conversation_id, attempts=attempt)
                        raise
                    logger.info("conversation_write_conflict_retry",
                                conversation_id=conversation_id, attempt=attempt)

    # Creation and retrieval
    async def create_conversation(
        self,
        user_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        category: Union[ConversationCategory, str] = ConversationCategory.GENERAL,
        tags: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
        settings: Optional[Dict[str, Any]] = None,
        initial_message: Optional[str] = None,
    ) -> Conversation:
        """Create a conversation, optionally seeded with a system message."""
        try:
            conversation = Conversation(
                user_id=user_id,
                title=title or DEFAULT_TITLE,
                description=description,
                category=category,
                tags=tags or [],
                context=ConversationContext.model_validate(context or {}),
                settings=ConversationSettings.model_validate(settings or {}),
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"invalid conversation: {e.errors()[0]['msg']}",
                field=str(e.errors()[0]["loc"][0]),
                module="conversation.manager",
            ) from e

        conversation.version = await self.db.save(
            CONVERSATION_COLLECTION, conversation.id, conversation.to_document(), 0
        )
        logger.info("conversation_created", conversation_id=conversation.id, user_id=user_id,
                    category=conversation.category.value)

        if initial_message:
            await self.add_message(conversation.id, MessageType.SYSTEM, initial_message)
            conversation = await self._load(conversation.id)
        return conversation

    async def get_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Conversation:
        """Load a non-deleted conversation.

        Raises:
            NotFoundError: Unknown, deleted, or owned by another user.
        """
        return await self._load(conversation_id, user_id)

    async def _user_conversations(self, user_id: str) -> List[Conversation]:
        return [
            Conversation.from_document(body, version)
            for body, version in await self.db.find(CONVERSATION_COLLECTION, user_id=user_id)
        ]

    async def list_conversations(
        self,
        user_id: str,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        search: Optional[str] = None,
        pinned: Optional[bool] = None,
        starred: Optional[bool] = None,
        status: str = ConversationStatus.ACTIVE.value,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "last_active_at",
        descending: bool = True,
    ) -> ConversationPage:
        """Filter, sort and page a user's conversations."""
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"cannot sort by {sort_by!r}", field="sort_by",
                                  module="conversation.manager")

        wanted_tags = {t.strip().lower() for t in tags or []}
        needle = (search or "").strip().lower()
        selected = []
        for conv in await self._user_conversations(user_id):
            if conv.status.value != status:
                continue
            if category and conv.category.value != category:
                continue
            if wanted_tags and not wanted_tags.intersection(conv.tags):
                continue
            if pinned is not None and conv.pinned != pinned:
                continue
            if starred is not None and conv.starred != starred:
                continue
            if needle:
                haystack = [conv.title, conv.description or ""] + conv.tags + conv.summary.key_topics
                if not any(needle in h.lower() for h in haystack):
                    continue
            selected.append(conv)

        selected.sort(key=lambda c: getattr(c, sort_by), reverse=descending)
        page = selected[offset:offset + limit]
        return ConversationPage(
            conversations=page,
            total=len(selected),
            has_more=offset + limit < len(selected),
        )

    # Messages
    @staticmethod
    def _validate_message(
        message_type: Any,
        content: Any,
        metadata: Optional[Dict[str, Any]],
        attachments: Optional[List[Dict[str, Any]]],
    ) -> Message:
        try:
            parsed_type = MessageType(message_type)
        except ValueError as e:
            raise ValidationError(
                f"invalid message type: {message_type!r}",
                field="type", module="conversation.manager",
            ) from e
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(
                "message content must be a non-empty string",
                field="content", module="conversation.manager",
            )
        try:
            return Message(
                type=parsed_type,
                content=content,
                metadata=MessageMetadata.model_validate(metadata or {}),
                attachments=[Attachment.model_validate(a) for a in attachments or []],
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"invalid message: {e.errors()[0]['msg']}",
                field="metadata", module="conversation.manager",
            ) from e

    async def add_message(
        self,
        conversation_id: str,
        message_type: Union[MessageType, str],
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> Message:
        """Append a message.

        User messages trigger background memory extraction when the
        conversation has memory enabled; reaching a multiple of
        ``summary_window`` messages triggers a background summary.

        Raises:
            ValidationError: Bad type or empty content.
            NotFoundError: Unknown or deleted conversation.
        """
        message = self._validate_message(message_type, content, metadata, attachments)

        def change(conversation: Conversation) -> bool:
            conversation.append_message(message)
            return conversation.needs_summary(self.summary_window)

        conversation, summarize = await self._mutate(conversation_id, change)
        logger.debug("message_added", conversation_id=conversation_id, message_id=message.id,
                     type=message.type.value, count=conversation.analytics.message_count)

        if (
            message.type == MessageType.USER
            and conversation.settings.memory_enabled
            and self.extractor is not None
        ):
            self.supervisor.spawn(
                self.extractor.extract_from_message(
                    conversation.user_id,
                    message.content,
                    self._extraction_context(conversation, message),
                ),
                name=f"extract:{message.id}",
            )

        if summarize and self.summarizer is not None:
            self.supervisor.spawn(
                self.summarize_conversation(conversation_id),
                name=f"summarize:{conversation_id}",
            )

        return message

    @staticmethod
    def _extraction_context(conversation: Conversation, message: Message) -> ExtractionContext:
        msg_ctx = message.metadata.context
        resume_ids = [
            rid for rid in (
                conversation.context.primary_resume_id,
                msg_ctx.resume_id if msg_ctx else None,
            ) if rid
        ]
        job_ids = list(conversation.context.related_job_ids)
        if msg_ctx and msg_ctx.job_id:
            job_ids.append(msg_ctx.job_id)
        return ExtractionContext(
            conversation_id=conversation.id,
            message_id=message.id,
            page=msg_ctx.page if msg_ctx else None,
            category=conversation.category.value,
            tags=conversation.tags,
            resume_ids=list(dict.fromkeys(resume_ids)),
            job_ids=list(dict.fromkeys(job_ids)),
        )

    async def record_resume_edit(
        self,
        conversation_id: str,
        resume_id: str,
        content: str,
        changes: Optional[List[Dict[str, Any]]] = None,
        new_analysis: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """Append an AI message that edited a resume and publish the edit."""
        message = await self.add_message(
            conversation_id,
            MessageType.AI,
            content,
            metadata={
                **(metadata or {}),
                "resume_edit": True,
                "changes": changes or [],
                "new_analysis": new_analysis,
            },
        )
        await self.event_bus.publish(ResumeEditEvent(
            conversation_id=conversation_id,
            resume_id=resume_id,
            message=content,
            changes=changes or [],
            new_analysis=new_analysis,
        ))
        return message

    async def edit_message(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        reason: Optional[str] = None,
    ) -> Message:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("message content must be a non-empty string",
                                  field="content", module="conversation.manager")

        def change(conversation: Conversation) -> Message:
            edited = conversation.edit_message(message_id, content, reason)
            if edited is None:
                raise NotFoundError(resource="message", resource_id=message_id,
                                    module="conversation.manager",
                                    conversation_id=conversation_id)
            return edited

        _, edited = await self._mutate(conversation_id, change)
        return edited

    async def get_recent_messages(self, conversation_id: str, limit: int = 10) -> List[Message]:
        return (await self._load(conversation_id)).recent_messages(limit)

    async def get_messages_by_type(
        self, conversation_id: str, message_type: Union[MessageType, str],
    ) -> List[Message]:
        try:
            parsed = MessageType(message_type)
        except ValueError as e:
            raise ValidationError(f"invalid message type: {message_type!r}", field="type",
                                  module="conversation.manager") from e
        return (await self._load(conversation_id)).messages_by_type(parsed)

    async def search_messages(self, conversation_id: str, query: str) -> List[Message]:
        return (await self._load(conversation_id)).search_messages(query)

    # Metadata
    async def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        **updates: Any,
    ) -> Conversation:
        """Update title, description, category, tags, pinned, starred or settings.

        Other keys are ignored.
        """
        allowed = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        ignored = sorted(set(updates) - set(allowed))
        if ignored:
            logger.debug("conversation_update_fields_ignored", fields=ignored)

        def change(conversation: Conversation) -> None:
            data = conversation.model_dump()
            if "settings" in allowed and isinstance(allowed["settings"], dict):
                allowed["settings"] = {**data["settings"], **allowed["settings"]}
            data.update(allowed)
            data["updated_at"] = datetime.now()
            try:
                validated = Conversation.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(
                    f"invalid update: {e.errors()[0]['msg']}",
                    field=str(e.errors()[0]["loc"][0]),
                    module="conversation.manager",
                ) from e
            for field in list(allowed) + ["updated_at"]:
                setattr(conversation, field, getattr(validated, field))

        conversation, _ = await self._mutate(conversation_id, change, user_id=user_id)
        return conversation

    async def delete_conversation(
        self,
        conversation_id: str,
        user_id: str,
        permanent: bool = False,
    ) -> Conversation:
        """Archive a conversation, or mark it deleted when ``permanent``."""
        status = ConversationStatus.DELETED if permanent else ConversationStatus.ARCHIVED

        def change(conversation: Conversation) -> None:
            conversation.status = status
            conversation.updated_at = datetime.now()

        conversation, _ = await self._mutate(conversation_id, change, user_id=user_id)
        logger.info("conversation_removed", conversation_id=conversation_id, status=status.value)
        return conversation

    async def rate_conversation(
        self,
        conversation_id: str,
        rating: int,
        feedback: Optional[str] = None,
    ) -> int:
        """Record a 1-5 satisfaction rating; returns the new engagement score."""
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer between 1 and 5",
                                  field="rating", module="conversation.manager")
        _, score = await self._mutate(
            conversation_id, lambda conversation: conversation.rate(rating, feedback)
        )
        return score

    # Search, stats, export
    async def search_conversations(
        self,
        user_id: str,
        query: str,
        limit: int = 20,
        categories: Optional[List[str]] = None,
    ) -> List[Conversation]:
        """Non-deleted conversations mentioning ``query``, most recent first."""
        results = [
            conv for conv in await self._user_conversations(user_id)
            if conv.status != ConversationStatus.DELETED
            and (not categories or conv.category.value in categories)
            and conv.matches(query)
        ]
        results.sort(key=lambda c: c.last_active_at, reverse=True)
        return results[:limit]

    async def get_conversation_stats(self, user_id: str) -> ConversationStats:
        conversations = [
            c for c in await self._user_conversations(user_id)
            if c.status != ConversationStatus.DELETED
        ]
        if not conversations:
            return ConversationStats()
        return ConversationStats(
            total_conversations=len(conversations),
            total_messages=sum(c.analytics.message_count for c in conversations),
            total_tokens=sum(c.analytics.tokens_used for c in conversations),
            avg_engagement=round(
                sum(c.analytics.engagement_score for c in conversations) / len(conversations), 1
            ),
            categories=sorted({c.category.value for c in conversations}),
        )

    async def export_conversation(
        self,
        conversation_id: str,
        user_id: str,
        export_format: str = "json",
    ) -> ExportedConversation:
        conversation = await self._load(conversation_id, user_id)
        return export_conversation(conversation, export_format)

    # Summaries and titles
    async def summarize_conversation(self, conversation_id: str) -> Optional[int]:
        """Summarize now; returns the new summary version or None on LLM failure."""
        if self.summarizer is None:
            return None
        snapshot = await self._load(conversation_id)
        payload = await self.summarizer.summarize(snapshot)
        if payload is None:
            return None

        conversation, summary = await self._mutate(
            conversation_id,
            lambda conv: conv.update_summary(payload.summary_fields()),
        )
        logger.info("conversation_summary_saved", conversation_id=conversation_id,
                    version=summary.version)

        await self.summarizer.store_memories(conversation, payload)
        if self.memory_manager is not None and conversation.settings.memory_enabled:
            user_messages = [m.content for m in conversation.messages_by_type(MessageType.USER)]
            await self.memory_manager.analyze_communication(conversation.user_id, user_messages)
        return summary.version

    async def generate_title(self, conversation_id: str, page: Optional[str] = None) -> str:
        """Generate and store a title from the conversation's opening messages."""
        if self.summarizer is None:
            return DEFAULT_TITLE
        snapshot = await self._load(conversation_id)
        title = await self.summarizer.generate_title(snapshot.messages, page)

        def change(conversation: Conversation) -> None:
            conversation.title = title
            conversation.updated_at = datetime.now()

        await self._mutate(conversation_id, change)
        return title


# Global manager instance
_conversation_manager: Optional[ConversationManager] = None


def get_conversation_manager() -> Optional[ConversationManager]:
    """Get the global conversation manager instance."""
    return _conversation_manager


async def initialize_conversation_manager(
    db: Optional[DocumentStore] = None,
    memory_manager=None,
    llm=None,
) -> ConversationManager:
    """Initialize and return the global conversation manager from configuration.

    Extraction and summarization are wired only when both an LLM client
    and a memory manager are available.
    """
    global _conversation_manager
    from ..background import get_supervisor
    from ..config import get_config
    from ..events import get_event_bus
    from ..memory.extraction import MemoryExtractor
    from .summarizer import ConversationSummarizer

    config = get_config()
    if db is None:
        from ..storage import get_document_store
        db = get_document_store()
        await db.initialize()

    extractor = summarizer = None
    if llm is not None and memory_manager is not None:
        extractor = MemoryExtractor(
            memory_manager,
            llm,
            model=config.llm_model,
            timeout=config.llm_extraction_timeout,
            negative_examples=config.memory_negative_examples,
        )
        summarizer = ConversationSummarizer(
            llm,
            memory_manager=memory_manager,
            model=config.llm_model,
            title_model=config.llm_search_model,
            timeout=config.llm_summary_timeout,
            window=config.summary_window,
        )

    _conversation_manager = ConversationManager(
        db,
        memory_manager=memory_manager,
        extractor=extractor,
        summarizer=summarizer,
        supervisor=get_supervisor(),
        event_bus=get_event_bus(),
        max_conflict_retries=config.storage_max_conflict_retries,
        summary_window=config.summary_window,
    )
    return _conversation_manager
