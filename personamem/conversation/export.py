"""Conversation export to JSON, Markdown and plain text."""

import json
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..exceptions import ValidationError
from .models import Conversation, Message


class ExportFormat(str, Enum):
    JSON = "json"
    MARKDOWN = "markdown"
    TXT = "txt"


class ExportedConversation(BaseModel):
    content: str
    filename: str
    format: ExportFormat
    exported_at: datetime = Field(default_factory=datetime.now)


def _timestamp(message: Message) -> str:
    return message.created_at.strftime("%Y-%m-%d %H:%M:%S")


def to_json(conversation: Conversation) -> str:
    return json.dumps(
        {
            "conversation": conversation.to_document(),
            "exported_at": datetime.now().isoformat(),
            "format": "json",
        },
        indent=2,
    )


def to_markdown(conversation: Conversation) -> str:
    lines = [f"# {conversation.title}", ""]
    if conversation.description:
        lines += [f"**Description:** {conversation.description}", ""]
    lines.append(f"**Created:** {conversation.created_at.isoformat()}")
    lines.append(f"**Category:** {conversation.category.value}")
    if conversation.tags:
        lines.append(f"**Tags:** {', '.join(conversation.tags)}")
    lines += ["", "---", ""]

    summary = conversation.summary
    if summary.content:
        lines += ["## Summary", "", summary.content, ""]
        if summary.key_topics:
            lines += [f"**Key Topics:** {', '.join(summary.key_topics)}", ""]
        lines += ["---", ""]

    lines += ["## Messages", ""]
    for message in conversation.messages:
        lines += [f"### {message.type.value.upper()} ({_timestamp(message)})", "",
                  message.content, ""]
        if message.metadata.suggestions:
            lines += [f"**Suggestions:** {', '.join(message.metadata.suggestions)}", ""]
        lines += ["---", ""]
    return "\n".join(lines)


def to_text(conversation: Conversation) -> str:
    rule = "-" * 50
    lines = [conversation.title, "=" * len(conversation.title), ""]
    if conversation.description:
        lines += [f"Description: {conversation.description}", ""]
    lines.append(f"Created: {conversation.created_at.isoformat()}")
    lines.append(f"Category: {conversation.category.value}")
    if conversation.tags:
        lines.append(f"Tags: {', '.join(conversation.tags)}")
    lines += ["", rule, ""]

    summary = conversation.summary
    if summary.content:
        lines += ["SUMMARY", summary.content, ""]
        if summary.key_topics:
            lines += [f"Key Topics: {', '.join(summary.key_topics)}", ""]
        lines += [rule, ""]

    lines += ["MESSAGES", ""]
    for message in conversation.messages:
        lines.append(f"[{message.type.value.upper()}] {_timestamp(message)}")
        lines.append(message.content)
        if message.metadata.suggestions:
            lines.append(f"Suggestions: {', '.join(message.metadata.suggestions)}")
        lines += ["", "-" * 30, ""]
    return "\n".join(lines)


_RENDERERS = {
    ExportFormat.JSON: (to_json, "json"),
    ExportFormat.MARKDOWN: (to_markdown, "md"),
    ExportFormat.TXT: (to_text, "txt"),
}


def export_conversation(
    conversation: Conversation,
    export_format: str = "json",
    now: Optional[datetime] = None,
) -> ExportedConversation:
    """Render ``conversation`` in one of the supported formats.

    Raises:
        ValidationError: Unsupported format.
    """
    try:
        fmt = ExportFormat(export_format)
    except ValueError as e:
        raise ValidationError(
            f"unsupported export format: {export_format!r}",
            field="format",
            module="conversation.export",
        ) from e

    render, extension = _RENDERERS[fmt]
    return ExportedConversation(
        content=render(conversation),
        filename=f"conversation_{conversation.id}.{extension}",
        format=fmt,
        exported_at=now or datetime.now(),
    )
