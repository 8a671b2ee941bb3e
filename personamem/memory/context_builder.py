"""Context builder for AI prompt injection.

Assembles what the engine knows about a user (personality traits,
preferences, skills, career goals, profile hints, insights and the
memories ranked relevant for the current turn) into a formatted block
that is prepended to the LLM prompt. Enforces a character budget.

Key class:
    ContextBuilder -- selects and formats context sections within a
        character budget.
"""

from typing import List, Optional

import structlog

from .models import MemoryEntry, MemoryType, Profile
from .store import SORT_BY_CONFIDENCE, SORT_BY_RECENT, UserMemoryStore

logger = structlog.get_logger("personamem.memory")

# (type, min confidence, sort, limit, heading)
CONTEXT_SECTIONS = (
    (MemoryType.PERSONALITY_TRAIT, 0.6, SORT_BY_CONFIDENCE, 3, "Personality"),
    (MemoryType.PREFERENCE, 0.6, SORT_BY_RECENT, 5, "Preferences"),
    (MemoryType.SKILL, 0.7, SORT_BY_CONFIDENCE, 5, "Skills"),
    (MemoryType.CAREER_GOAL, 0.6, SORT_BY_RECENT, 3, "Career Goals"),
)
MAX_INSIGHTS_IN_CONTEXT = 3
MAX_ENTRY_CHARS = 200


class ContextBuilder:
    """Builds the user-context section for AI prompts.

    Args:
        max_chars: Character budget for the whole section.
    """

    def __init__(self, max_chars: int = 6000):
        self.max_chars = max_chars

    def build_context_section(
        self,
        store: UserMemoryStore,
        relevant: Optional[List[MemoryEntry]] = None,
    ) -> str:
        """Build the context block for ``store``.

        Sections are added in priority order and skipped once they no
        longer fit in the remaining budget.

        Returns:
            Formatted context string, or empty string if there is nothing
            worth saying about the user.
        """
        sections = []
        remaining_chars = self.max_chars
        shown_ids = set()

        for mem_type, min_conf, sort_by, limit, heading in CONTEXT_SECTIONS:
            memories = store.get_by_type(mem_type, min_confidence=min_conf, sort_by=sort_by)
            section = self._format_memories(heading, memories[:limit])
            if section and len(section) < remaining_chars:
                sections.append(section)
                remaining_chars -= len(section)
                shown_ids.update(m.id for m in memories[:limit])

        profile_section = self._format_profile(store.profile)
        if profile_section and len(profile_section) < remaining_chars:
            sections.append(profile_section)
            remaining_chars -= len(profile_section)

        if store.settings.share_insights and store.analytics.insights:
            insights = store.analytics.insights[-MAX_INSIGHTS_IN_CONTEXT:]
            lines = ["## Insights"] + [f"- {i.description}" for i in insights]
            insight_section = "\n".join(lines)
            if len(insight_section) < remaining_chars:
                sections.append(insight_section)
                remaining_chars -= len(insight_section)

        if relevant:
            fresh = [m for m in relevant if m.id not in shown_ids]
            relevant_section = self._format_relevant(fresh, remaining_chars)
            if relevant_section:
                sections.append(relevant_section)

        if not sections:
            return ""

        context = (
            "---\n"
            "# What you know about this user\n\n"
            + "\n\n".join(sections)
            + "\n---\n\n"
        )
        logger.debug("context_budget", max_chars=self.max_chars, used_chars=len(context),
                     user_id=store.user_id)
        return context

    def _format_memories(self, heading: str, memories: List[MemoryEntry]) -> str:
        if not memories:
            return ""
        lines = [f"## {heading}"]
        for mem in memories:
            lines.append(f"- {_truncate(mem.content)} (confidence {mem.confidence:.1f})")
        return "\n".join(lines)

    def _format_profile(self, profile: Profile) -> str:
        lines = []
        if profile.career_stage:
            lines.append(f"- Career stage: {profile.career_stage.replace('_', ' ')}")
        style = profile.communication_style
        if style.formality:
            lines.append(f"- Prefers {style.formality.replace('_', ' ')} communication")
        if style.detail_preference:
            lines.append(f"- Prefers {style.detail_preference} answers")
        if style.feedback_preference:
            lines.append(f"- Responds best to {style.feedback_preference} feedback")
        if profile.industries:
            names = ", ".join(i.name for i in profile.industries[:3])
            lines.append(f"- Industries: {names}")
        if not lines:
            return ""
        return "\n".join(["## Profile"] + lines)

    def _format_relevant(self, memories: List[MemoryEntry], max_chars: int) -> str:
        """Relevant memories, stopping once ``max_chars`` would be exceeded."""
        if not memories:
            return ""

        lines = ["## Relevant to this conversation"]
        current_length = len(lines[0])
        for mem in memories:
            line = f"- [{mem.type.value}] {_truncate(mem.content)}"
            if current_length + len(line) + 1 > max_chars:
                break
            lines.append(line)
            current_length += len(line) + 1

        if len(lines) == 1:
            return ""
        return "\n".join(lines)


def _truncate(text: str) -> str:
    text = text.replace("\n", " ")
    if len(text) > MAX_ENTRY_CHARS:
        return text[:MAX_ENTRY_CHARS] + "..."
    return text
