# =============================================================================
# Exception Hierarchy — Typed Errors for the Retrieval Pipeline
# =============================================================================
#
# Every error the pipeline raises on purpose derives from FinRAGError, which
# carries a human-readable message and, for errors caused by an external
# service, the name of that provider ("openai", "anthropic", "chroma").
#
#   FinRAGError
#   ├── ConfigurationError   — fatal, never retried (dimension mismatch,
#   │                          unknown filter field, missing API key)
#   ├── ProviderError        — embedding / LLM call failed after retries
#   ├── NoResultsError       — retrieval matched nothing (expected state)
#   ├── GenerationError      — the answer-generation call failed
#   ├── IngestionFailure     — a stage of document ingestion failed
#   ├── DocumentNotFoundError
#   └── QueryTimeoutError    — also a builtin TimeoutError
#
# The API layer maps each class to a distinct HTTP status so clients can
# tell "nothing found" apart from "found context but couldn't answer" and
# from "provider outage, try again".
# =============================================================================

from __future__ import annotations


class FinRAGError(Exception):
    """Base exception for all finrag errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


class ConfigurationError(FinRAGError):
    """Raised for invalid or inconsistent configuration. Never retried."""


class ProviderError(FinRAGError):
    """
    Raised when an embedding or LLM provider call fails after retries.

    `transient` records whether the final failure was of a retryable kind
    (network, rate limit, 5xx). Callers surface it as "try again".
    """

    def __init__(
        self,
        message: str = "Provider call failed",
        provider_name: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self.transient = transient


class NoResultsError(FinRAGError):
    """Raised by the retriever when no indexed chunk matches the query."""

    def __init__(
        self,
        message: str = "No relevant documents found for this query",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class GenerationError(FinRAGError):
    """Raised when the language model call for an answer fails."""


class IngestionFailure(FinRAGError):
    """
    Raised (or recorded) when a document ingestion stage fails.

    Carries the document id and the stage that failed so the status record
    and the job queue can report a precise reason.
    """

    def __init__(
        self,
        message: str,
        document_id: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message=message)
        self.document_id = document_id
        self.stage = stage


class DocumentNotFoundError(FinRAGError):
    """Raised when a status or delete request names an unknown document."""

    def __init__(self, document_id: str) -> None:
        super().__init__(message=f"Document '{document_id}' not found")
        self.document_id = document_id


class QueryTimeoutError(FinRAGError, TimeoutError):
    """Raised when a query exceeds the configured timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            message=f"Query exceeded timeout of {timeout_seconds:.1f}s"
        )
        self.timeout_seconds = timeout_seconds
