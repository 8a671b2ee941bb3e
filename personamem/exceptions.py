"""Exception hierarchy for personamem.

Provides precise error classification across the memory, conversation,
storage and LLM subsystems so callers can decide what to surface, what
to retry and what to swallow at a background-task boundary.

Propagation rules:
    NotFoundError, ValidationError -- surface to the caller of the
        primary operation (e.g. add_message).
    ExtractionFailure, UpstreamTimeout -- raised inside background work
        (extraction, summarization, semantic search) and logged at the
        task boundary; the pipeline returns an empty result.
    PersistenceConflict -- retried by the memory/conversation managers a
        bounded number of times before reaching the background task.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""
    TRANSIENT = "transient"          # Worth retrying (timeout, write conflict)
    PERMANENT = "permanent"          # Not worth retrying (bad input, missing doc)
    INFRASTRUCTURE = "infrastructure"  # Missing API key, unwritable database


class PersonaMemError(Exception):
    """Base exception for all personamem errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for retry/escalation decisions.
        module: Originating module name (e.g. "memory.extraction").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error is worth retrying."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Request-path exceptions
# ---------------------------------------------------------------------------

class NotFoundError(PersonaMemError):
    """A conversation, memory store or memory entry does not exist.

    Attributes:
        resource: Kind of resource ("conversation", "memory", ...).
        resource_id: Identifier that was looked up.
    """

    def __init__(
        self,
        message: str = "",
        *,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            message or f"{resource or 'resource'} not found",
            category=category,
            module=module,
            resource=resource,
            resource_id=resource_id,
            **context,
        )


class ValidationError(PersonaMemError):
    """Caller supplied invalid input (bad message type, empty content).

    Attributes:
        field: Name of the offending field, if known.
    """

    def __init__(
        self,
        message: str = "",
        *,
        field: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.field = field
        super().__init__(message, category=category, module=module, **context)


# ---------------------------------------------------------------------------
# Background-path exceptions
# ---------------------------------------------------------------------------

class ExtractionFailure(PersonaMemError):
    """LLM call or JSON parse failed during extraction/summarization.

    Always non-fatal to the primary operation.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message, category=category, module=module or "memory.extraction", **context
        )


class UpstreamTimeout(PersonaMemError):
    """An LLM or store call exceeded its time budget.

    Attributes:
        timeout: The budget in seconds that was exceeded.
    """

    def __init__(
        self,
        message: str = "",
        *,
        timeout: Optional[float] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.timeout = timeout
        super().__init__(
            message, category=category, module=module, timeout=timeout, **context
        )


class LLMError(PersonaMemError):
    """The LLM provider returned an error or an unusable response.

    Attributes:
        status: HTTP status code (if available).
    """

    def __init__(
        self,
        message: str = "",
        *,
        status: Optional[int] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.status = status
        super().__init__(
            message, category=category, module=module or "llm_client", **context
        )


# ---------------------------------------------------------------------------
# Storage exceptions
# ---------------------------------------------------------------------------

class PersistenceConflict(PersonaMemError):
    """A compare-and-swap write lost against a concurrent writer.

    Attributes:
        collection: Document collection ("user_memory", "conversations").
        doc_id: Document identifier.
        expected_version: Version the writer based its changes on.
    """

    def __init__(
        self,
        message: str = "",
        *,
        collection: Optional[str] = None,
        doc_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.collection = collection
        self.doc_id = doc_id
        self.expected_version = expected_version
        super().__init__(
            message or "concurrent write detected",
            category=category,
            module=module or "storage",
            collection=collection,
            doc_id=doc_id,
            expected_version=expected_version,
            **context,
        )


class DatabaseError(PersonaMemError):
    """Error during database operations.

    Attributes:
        operation: The DB operation that failed (e.g. "save", "get").
        collection: The collection involved (if known).
    """

    def __init__(
        self,
        message: str = "",
        *,
        operation: Optional[str] = None,
        collection: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.operation = operation
        self.collection = collection
        super().__init__(
            message, category=category, module=module or "storage", **context
        )


# ---------------------------------------------------------------------------
# Configuration exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(PersonaMemError):
    """Invalid or missing configuration.

    Defaults to INFRASTRUCTURE because config issues are environmental
    and won't resolve by retrying.
    """

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(
            message, category=category, module=module or "config", **context
        )
