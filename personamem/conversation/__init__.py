"""Conversation store with background summarization and export."""

from .export import ExportedConversation, ExportFormat, export_conversation
from .manager import (
    ConversationManager,
    ConversationPage,
    get_conversation_manager,
    initialize_conversation_manager,
)
from .models import (
    Conversation,
    ConversationCategory,
    ConversationStats,
    ConversationStatus,
    Message,
    MessageType,
    Summary,
)
from .summarizer import ConversationSummarizer

__all__ = [
    # Models
    "Conversation",
    "ConversationCategory",
    "ConversationStatus",
    "ConversationStats",
    "Message",
    "MessageType",
    "Summary",
    # Manager
    "ConversationManager",
    "ConversationPage",
    "get_conversation_manager",
    "initialize_conversation_manager",
    # Summaries
    "ConversationSummarizer",
    # Export
    "ExportFormat",
    "ExportedConversation",
    "export_conversation",
]
