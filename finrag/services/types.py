# =============================================================================
# Domain Types — Chunks, Index Entries, Candidates, Answers
# =============================================================================
#
# Plain dataclasses shared by every pipeline component. These are separate
# from the Pydantic API schemas (finrag/models/) and from the SQLAlchemy
# rows (finrag/db/models.py) so the core can run without either layer.
#
# Immutable records (Chunk, IndexEntry, Citation, AnswerResult, ...) are
# frozen: once created they are never mutated, only replaced.
# =============================================================================

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any


# ---------------------------------------------------------------------------
# Documents & Chunks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentMetadata:
    """Attributes supplied by file intake alongside the extracted text."""

    company_ticker: str
    document_type: str
    filing_date: date | None = None
    fiscal_year: int | None = None

    @property
    def resolved_fiscal_year(self) -> int | None:
        if self.fiscal_year is not None:
            return self.fiscal_year
        return self.filing_date.year if self.filing_date else None


@dataclass(frozen=True)
class DocumentRecord:
    """A document as known to the metadata store."""

    document_id: str
    company_ticker: str
    document_type: str
    filing_date: date | None = None
    fiscal_year: int | None = None


@dataclass(frozen=True)
class Chunk:
    """A bounded-length span of a document, the unit of retrieval."""

    id: str
    source_document_id: str
    text: str
    token_count: int
    ordinal_index: int
    page_number: int | None = None
    section: str | None = None


def make_chunk_id(document_id: str, ordinal_index: int) -> str:
    """Deterministic chunk id, so re-ingestion replaces instead of piling up."""
    return f"{document_id}_chunk_{ordinal_index}"


def document_id_of_chunk(chunk_id: str) -> str | None:
    """Inverse of make_chunk_id(); None for ids it did not produce."""
    document_id, sep, ordinal = chunk_id.rpartition("_chunk_")
    if not sep or not ordinal.isdigit():
        return None
    return document_id


# ---------------------------------------------------------------------------
# Vector Index
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IndexEntry:
    """
    A chunk vector plus the chunk text and its filterable metadata.

    metadata keys: document_id, company_ticker, document_type,
    fiscal_year, ordinal_index, page_number (absent when unknown).
    """

    chunk_id: str
    vector: tuple[float, ...]
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def document_id(self) -> str | None:
        return self.metadata.get("document_id")


@dataclass(frozen=True)
class MetadataFilter:
    """
    Conjunction of equality and set-membership predicates.

    `equals` maps a metadata field to the required value; `one_of` maps a
    field to the set of accepted values. An empty filter matches everything.
    """

    equals: dict[str, Any] = field(default_factory=dict)
    one_of: dict[str, tuple[Any, ...]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.equals and not self.one_of

    @property
    def fields(self) -> set[str]:
        return set(self.equals) | set(self.one_of)

    def matches(self, metadata: dict[str, Any]) -> bool:
        for key, expected in self.equals.items():
            if key not in metadata or metadata[key] != expected:
                return False
        for key, accepted in self.one_of.items():
            if key not in metadata or metadata[key] not in accepted:
                return False
        return True


@dataclass(frozen=True)
class RetrievalCandidate:
    """
    A chunk returned by a search, with its backend-specific score.

    Scores are only comparable within one index backend.
    """

    chunk_id: str
    text: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Query Path
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryRequest:
    text: str
    company_filter: str | None = None
    document_type_filter: tuple[str, ...] = ()
    top_k: int = 5


@dataclass(frozen=True)
class ContextBlock:
    """A candidate with its stable 1-based citation position."""

    position: int
    text: str
    source_ref: str
    candidate: RetrievalCandidate


@dataclass(frozen=True)
class Citation:
    position: int
    chunk_id: str
    document_id: str | None
    excerpt: str
    score: float


@dataclass(frozen=True)
class AnswerResult:
    answer_text: str
    citations: tuple[Citation, ...] = ()
    model: str = "n/a"
    chunks_retrieved: int = 0
    insufficient_context: bool = False


@dataclass(frozen=True)
class QueryRecord:
    """A persisted query and its answer (history). Never mutated."""

    id: str
    request: QueryRequest
    result: AnswerResult
    created_at: datetime
    processing_time_ms: int


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class IngestionStage(str, enum.Enum):
    """
    Per-document ingestion state machine.

        QUEUED → EXTRACTING → CHUNKING → EMBEDDING → STORING → COMPLETED
           └──────────┴───────────┴──────────┴──────────┴────→ FAILED

    Transitions are one-way. A fresh run of the same document starts again
    at QUEUED (see IngestionOrchestrator).
    """

    QUEUED = "queued"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IngestionStage.COMPLETED, IngestionStage.FAILED)

    def can_transition_to(self, target: IngestionStage) -> bool:
        if self.is_terminal:
            return False
        if target is IngestionStage.FAILED:
            return True
        order = _STAGE_ORDER
        return order.index(target) == order.index(self) + 1


_STAGE_ORDER = [
    IngestionStage.QUEUED,
    IngestionStage.EXTRACTING,
    IngestionStage.CHUNKING,
    IngestionStage.EMBEDDING,
    IngestionStage.STORING,
    IngestionStage.COMPLETED,
]


@dataclass(frozen=True)
class IngestionStatus:
    document_id: str
    stage: IngestionStage
    chunk_count: int = 0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class IngestionReport:
    document_id: str
    chunk_count: int
    status: IngestionStage
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is IngestionStage.COMPLETED
