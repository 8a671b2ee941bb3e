"""Tests for ConversationManager: message log, background work and queries."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from structlog.testing import capture_logs

from personamem.background import BackgroundTaskSupervisor
from personamem.conversation.manager import ConversationManager
from personamem.conversation.models import ConversationStatus, MessageType
from personamem.conversation.summarizer import SummaryPayload
from personamem.events import EventBus
from personamem.exceptions import NotFoundError, PersistenceConflict, ValidationError
from personamem.memory.extraction import ExtractionContext
from personamem.memory.models import ExtractionResult
from personamem.storage import DocumentStore

USER = "user-1"


@pytest_asyncio.fixture
async def db(tmp_path):
    store = DocumentStore(tmp_path / "conversations.db")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def extractor():
    mock = AsyncMock()
    mock.extract_from_message.return_value = ExtractionResult()
    return mock


@pytest.fixture
def summarizer():
    mock = AsyncMock()
    mock.summarize.return_value = SummaryPayload(
        summary="Discussed resume bullet points",
        keyTopics=["resume"],
        actionItems=["Quantify results"],
    )
    mock.store_memories.return_value = []
    return mock


@pytest.fixture
def manager(db, extractor, summarizer):
    return ConversationManager(
        db,
        extractor=extractor,
        summarizer=summarizer,
        supervisor=BackgroundTaskSupervisor(default_timeout=5),
        event_bus=EventBus(),
    )


class TestCreateAndGet:

    @pytest.mark.asyncio
    async def test_create_with_initial_message(self, manager):
        conv = await manager.create_conversation(
            USER, title="Resume help", category="resume_help", tags=["Resume"],
            initial_message="Welcome! How can I help?",
        )
        assert conv.version == 2
        assert conv.analytics.message_count == 1
        assert conv.messages[0].type == MessageType.SYSTEM
        assert conv.tags == ["resume"]

        loaded = await manager.get_conversation(conv.id, USER)
        assert loaded.id == conv.id

    @pytest.mark.asyncio
    async def test_default_title(self, manager):
        conv = await manager.create_conversation(USER)
        assert conv.title == "New Conversation"

    @pytest.mark.asyncio
    async def test_invalid_category(self, manager):
        with pytest.raises(ValidationError) as exc_info:
            await manager.create_conversation(USER, category="astrology")
        assert exc_info.value.field == "category"

    @pytest.mark.asyncio
    async def test_missing_or_foreign_conversation(self, manager):
        with pytest.raises(NotFoundError):
            await manager.get_conversation("conv_missing")
        conv = await manager.create_conversation(USER)
        with pytest.raises(NotFoundError):
            await manager.get_conversation(conv.id, "someone-else")


class TestAddMessage:

    @pytest.mark.asyncio
    async def test_message_count_tracks_log(self, manager):
        conv = await manager.create_conversation(USER)
        for n in range(6):
            await manager.add_message(conv.id, "user" if n % 2 == 0 else "ai", f"message {n}",
                                      metadata={"tokens": 7})
            loaded = await manager.get_conversation(conv.id)
            assert loaded.analytics.message_count == len(loaded.messages) == n + 1
        assert loaded.analytics.tokens_used == 42
        await manager.supervisor.drain()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mtype,content", [
        ("robot", "hello"),
        ("user", ""),
        ("user", "   "),
        ("user", None),
        ("user", 42),
    ])
    async def test_invalid_messages_rejected(self, manager, mtype, content):
        conv = await manager.create_conversation(USER)
        with pytest.raises(ValidationError):
            await manager.add_message(conv.id, mtype, content)
        assert (await manager.get_conversation(conv.id)).messages == []

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, manager):
        with pytest.raises(NotFoundError):
            await manager.add_message("conv_missing", "user", "hello")

    @pytest.mark.asyncio
    async def test_deleted_conversation_rejects_messages(self, manager):
        conv = await manager.create_conversation(USER)
        await manager.delete_conversation(conv.id, USER, permanent=True)
        with pytest.raises(NotFoundError):
            await manager.add_message(conv.id, "user", "hello")

    @pytest.mark.asyncio
    async def test_user_message_triggers_extraction(self, manager, extractor):
        conv = await manager.create_conversation(USER, category="career_advice", tags=["growth"])
        message = await manager.add_message(
            conv.id, "user", "I want to become a data scientist",
            metadata={"context": {"page": "career", "resume_id": "res_1"}},
        )
        await manager.add_message(conv.id, "ai", "Great goal!")
        await manager.supervisor.drain()

        extractor.extract_from_message.assert_awaited_once()
        user_id, content, context = extractor.extract_from_message.call_args.args
        assert user_id == USER
        assert content == "I want to become a data scientist"
        assert isinstance(context, ExtractionContext)
        assert context.message_id == message.id
        assert context.page == "career"
        assert context.category == "career_advice"
        assert context.tags == ["growth"]
        assert context.resume_ids == ["res_1"]

    @pytest.mark.asyncio
    async def test_memory_disabled_skips_extraction(self, manager, extractor):
        conv = await manager.create_conversation(USER, settings={"memory_enabled": False})
        await manager.add_message(conv.id, "user", "I like Python")
        await manager.supervisor.drain()
        extractor.extract_from_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_extraction_failure_does_not_fail_append(self, manager, extractor):
        extractor.extract_from_message.side_effect = PersistenceConflict()
        conv = await manager.create_conversation(USER)
        message = await manager.add_message(conv.id, "user", "I like Python")
        await manager.supervisor.drain()
        assert (await manager.get_conversation(conv.id)).messages[0].id == message.id

    @pytest.mark.asyncio
    async def test_append_returns_before_extraction_finishes(self, manager, extractor):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_extract(*args):
            started.set()
            await release.wait()
            return ExtractionResult()

        extractor.extract_from_message.side_effect = slow_extract
        conv = await manager.create_conversation(USER)
        await manager.add_message(conv.id, "user", "I like Python")
        assert manager.supervisor.pending == 1
        await started.wait()
        release.set()
        await manager.supervisor.drain()
        assert manager.supervisor.pending == 0


class TestAutoSummary:

    @pytest.mark.asyncio
    async def test_twentieth_message_triggers_one_summary(self, manager, summarizer):
        """Summary version goes 0 -> 1 on the 20th message, summarized once."""
        conv = await manager.create_conversation(USER)
        for n in range(20):
            await manager.add_message(conv.id, "user" if n % 2 == 0 else "ai", f"message {n}")
            if n == 18:
                await manager.supervisor.drain()
                summarizer.summarize.assert_not_called()
        await manager.supervisor.drain()

        summarizer.summarize.assert_awaited_once()
        loaded = await manager.get_conversation(conv.id)
        assert loaded.summary.version == 1
        assert loaded.summary.content == "Discussed resume bullet points"
        assert loaded.summary.key_topics == ["resume"]
        assert loaded.summary.generated_at is not None
        summarizer.store_memories.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_summary_leaves_version(self, manager, summarizer):
        summarizer.summarize.return_value = None
        conv = await manager.create_conversation(USER)
        assert await manager.summarize_conversation(conv.id) is None
        assert (await manager.get_conversation(conv.id)).summary.version == 0

    @pytest.mark.asyncio
    async def test_auto_summarize_disabled(self, manager, summarizer):
        conv = await manager.create_conversation(USER, settings={"auto_summarize": False})
        for n in range(20):
            await manager.add_message(conv.id, "ai", f"message {n}")
        await manager.supervisor.drain()
        summarizer.summarize.assert_not_called()

    @pytest.mark.asyncio
    async def test_summary_feeds_communication_analysis(self, db, summarizer):
        memory_manager = AsyncMock()
        manager = ConversationManager(db, memory_manager=memory_manager, summarizer=summarizer)
        conv = await manager.create_conversation(USER)
        await manager.add_message(conv.id, "user", "hey, thanks")
        await manager.add_message(conv.id, "ai", "Any time")
        await manager.summarize_conversation(conv.id)
        memory_manager.analyze_communication.assert_awaited_once_with(USER, ["hey, thanks"])


@pytest.mark.asyncio
async def test_resume_edit_publishes_event(manager):
    received = []
    manager.event_bus.subscribe(received.append)
    conv = await manager.create_conversation(USER)

    message = await manager.record_resume_edit(
        conv.id, "res_7", "Tightened your summary",
        changes=[{"section": "summary", "action": "rewrite"}],
        new_analysis={"score": 82},
    )

    assert message.type == MessageType.AI
    assert message.metadata.resume_edit is True
    assert len(received) == 1
    event = received[0]
    assert event.conversation_id == conv.id
    assert event.resume_id == "res_7"
    assert event.changes == [{"section": "summary", "action": "rewrite"}]
    assert event.new_analysis == {"score": 82}


@pytest.mark.asyncio
async def test_resume_edit_survives_failing_subscriber(manager):
    delivered = []

    def broken(event):
        raise RuntimeError("consumer offline")

    manager.event_bus.subscribe(broken)
    manager.event_bus.subscribe(delivered.append)
    conv = await manager.create_conversation(USER)

    with capture_logs() as logs:
        message = await manager.record_resume_edit(conv.id, "res_7", "Reworded your headline")

    assert message.metadata.resume_edit is True
    assert len(delivered) == 1
    assert any(log["event"] == "event_subscriber_failed" for log in logs)
    stored = await manager.get_conversation(conv.id)
    assert [m.id for m in stored.messages] == [message.id]


class TestMessageQueries:

    @pytest.mark.asyncio
    async def test_edit_recent_by_type_and_search(self, manager):
        conv = await manager.create_conversation(USER)
        first = await manager.add_message(conv.id, "user", "Review my resum")
        await manager.add_message(conv.id, "ai", "Sure, add metrics",
                                  metadata={"suggestions": ["Quantify impact"]})

        edited = await manager.edit_message(conv.id, first.id, "Review my resume", "typo")
        assert edited.edit_history[0].original_content == "Review my resum"
        with pytest.raises(NotFoundError):
            await manager.edit_message(conv.id, "msg_missing", "x")

        assert len(await manager.get_recent_messages(conv.id, 1)) == 1
        ai_messages = await manager.get_messages_by_type(conv.id, "ai")
        assert [m.content for m in ai_messages] == ["Sure, add metrics"]
        with pytest.raises(ValidationError):
            await manager.get_messages_by_type(conv.id, "robot")
        assert len(await manager.search_messages(conv.id, "quantify")) == 1
        await manager.supervisor.drain()


class TestMetadataAndLifecycle:

    @pytest.mark.asyncio
    async def test_update_allowed_fields_only(self, manager):
        conv = await manager.create_conversation(USER)
        updated = await manager.update_conversation(
            conv.id, USER, title="Interview prep", pinned=True,
            settings={"archive_after_days": 30}, user_id_override="x", messages=[],
        )
        assert updated.title == "Interview prep"
        assert updated.pinned
        assert updated.settings.archive_after_days == 30
        assert updated.settings.memory_enabled is True
        assert updated.user_id == USER

    @pytest.mark.asyncio
    async def test_update_validates(self, manager):
        conv = await manager.create_conversation(USER)
        with pytest.raises(ValidationError):
            await manager.update_conversation(conv.id, USER, title="  ")

    @pytest.mark.asyncio
    async def test_archive_then_delete(self, manager):
        conv = await manager.create_conversation(USER)
        archived = await manager.delete_conversation(conv.id, USER)
        assert archived.status == ConversationStatus.ARCHIVED
        assert (await manager.get_conversation(conv.id)).status == ConversationStatus.ARCHIVED
        await manager.delete_conversation(conv.id, USER, permanent=True)
        with pytest.raises(NotFoundError):
            await manager.get_conversation(conv.id)

    @pytest.mark.asyncio
    async def test_rate(self, manager):
        conv = await manager.create_conversation(USER)
        await manager.add_message(conv.id, "ai", "Here you go")
        assert await manager.rate_conversation(conv.id, 5, "helpful") == 22
        with pytest.raises(ValidationError):
            await manager.rate_conversation(conv.id, 0)

    @pytest.mark.asyncio
    async def test_generate_title_persists(self, manager, summarizer):
        summarizer.generate_title.return_value = "Resume Bullet Points"
        conv = await manager.create_conversation(USER, initial_message="Hi")
        assert await manager.generate_title(conv.id, "resumes") == "Resume Bullet Points"
        assert (await manager.get_conversation(conv.id)).title == "Resume Bullet Points"

    @pytest.mark.asyncio
    async def test_conflict_retried(self, manager, db):
        conv = await manager.create_conversation(USER)
        real_save = db.save
        calls = {"n": 0}

        async def flaky_save(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise PersistenceConflict()
            return await real_save(*args, **kwargs)

        with patch.object(db, "save", side_effect=flaky_save):
            await manager.add_message(conv.id, "ai", "hello")
        assert (await manager.get_conversation(conv.id)).analytics.message_count == 1

    @pytest.mark.asyncio
    async def test_idle_locks_are_released(self, manager):
        conv = await manager.create_conversation(USER)
        await asyncio.gather(*(manager.add_message(conv.id, "ai", f"reply {n}") for n in range(3)))
        assert (await manager.get_conversation(conv.id)).analytics.message_count == 3
        assert conv.id not in manager._locks


class TestListingAndStats:

    @pytest_asyncio.fixture
    async def populated(self, manager):
        a = await manager.create_conversation(USER, title="Resume tips", category="resume_help",
                                              tags=["resume"])
        b = await manager.create_conversation(USER, title="Salary talk", category="career_advice")
        c = await manager.create_conversation(USER, title="Mock interview",
                                              category="interview_prep")
        await manager.create_conversation("other-user", title="Resume for someone else")
        await manager.add_message(b.id, "ai", "Negotiate with data", metadata={"tokens": 30})
        await manager.update_conversation(c.id, USER, starred=True)
        await manager.delete_conversation(a.id, USER)
        return a, b, c

    @pytest.mark.asyncio
    async def test_list_filters(self, manager, populated):
        a, b, c = populated
        page = await manager.list_conversations(USER)
        assert {conv.id for conv in page.conversations} == {b.id, c.id}
        assert page.total == 2
        assert page.conversations[0].id == b.id

        assert (await manager.list_conversations(USER, starred=True)).total == 1
        assert (await manager.list_conversations(USER, category="career_advice")).total == 1
        archived = await manager.list_conversations(USER, status="archived")
        assert [conv.id for conv in archived.conversations] == [a.id]
        assert (await manager.list_conversations(USER, search="salary")).total == 1

        first_page = await manager.list_conversations(USER, limit=1)
        assert first_page.has_more
        with pytest.raises(ValidationError):
            await manager.list_conversations(USER, sort_by="user_id")

    @pytest.mark.asyncio
    async def test_search_conversations(self, manager, populated):
        a, b, c = populated
        results = await manager.search_conversations(USER, "negotiate")
        assert [conv.id for conv in results] == [b.id]
        results = await manager.search_conversations(USER, "resume")
        assert [conv.id for conv in results] == [a.id]
        assert await manager.search_conversations(USER, "resume", categories=["general"]) == []

    @pytest.mark.asyncio
    async def test_stats(self, manager, populated):
        stats = await manager.get_conversation_stats(USER)
        assert stats.total_conversations == 3
        assert stats.total_messages == 1
        assert stats.total_tokens == 30
        assert stats.categories == ["career_advice", "interview_prep", "resume_help"]

    @pytest.mark.asyncio
    async def test_stats_for_new_user(self, manager):
        stats = await manager.get_conversation_stats("nobody")
        assert stats.total_conversations == 0

    @pytest.mark.asyncio
    async def test_export_checks_owner(self, manager, populated):
        _, b, _ = populated
        exported = await manager.export_conversation(b.id, USER, "markdown")
        assert exported.content.startswith("# Salary talk")
        with pytest.raises(NotFoundError):
            await manager.export_conversation(b.id, "other-user")
