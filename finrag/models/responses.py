# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
# 1. Ensure consistent response structure across all endpoints
# 2. Automatically serialized to JSON by FastAPI
# 3. Prevent accidental exposure of internal fields (e.g., raw vectors)
#
# Each model has a `from_*` constructor that maps the corresponding
# dataclass from finrag/services/types.py.
# =============================================================================

from datetime import date, datetime

from pydantic import BaseModel, Field

from finrag.services.pipeline import DocumentDetails, IndexStats
from finrag.services.types import Citation, IngestionStatus, QueryRecord


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str
    vectorstore: str


class IngestResponse(BaseModel):
    """
    Response for POST /documents/{document_id}/ingest.

    The document is NOT immediately queryable. Poll
    GET /documents/{document_id}/status until the stage is "completed".
    """

    document_id: str
    status: str = Field(default="queued", description="Initial ingestion stage")
    backend: str = Field(description="'pool' (in-process) or 'celery'")
    task_id: str | None = Field(
        default=None,
        description="Celery task id (celery backend only)",
    )
    message: str = "Document accepted. Ingestion in progress."


class IngestionStatusResponse(BaseModel):
    """Response for GET /documents/{document_id}/status."""

    document_id: str
    stage: str = Field(
        description="queued, extracting, chunking, embedding, storing, completed or failed",
    )
    chunk_count: int
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_status(cls, status: IngestionStatus) -> "IngestionStatusResponse":
        return cls(
            document_id=status.document_id,
            stage=status.stage.value,
            chunk_count=status.chunk_count,
            error=status.error,
            started_at=status.started_at,
            completed_at=status.completed_at,
        )


class DocumentResponse(BaseModel):
    """A registered document with its current ingestion state."""

    document_id: str
    company_ticker: str
    document_type: str
    filing_date: date | None = None
    fiscal_year: int | None = None
    stage: str | None = Field(default=None, description="Ingestion stage, if recorded")
    chunk_count: int = Field(description="Chunk records currently stored")
    error: str | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_details(cls, details: DocumentDetails) -> "DocumentResponse":
        record, status = details.record, details.status
        return cls(
            document_id=record.document_id,
            company_ticker=record.company_ticker,
            document_type=record.document_type,
            filing_date=record.filing_date,
            fiscal_year=record.fiscal_year,
            stage=status.stage.value if status is not None else None,
            chunk_count=details.chunk_count,
            error=status.error if status is not None else None,
            completed_at=status.completed_at if status is not None else None,
        )


class DocumentListResponse(BaseModel):
    """Response for GET /documents."""

    documents: list[DocumentResponse]
    count: int


class DeleteDocumentResponse(BaseModel):
    document_id: str
    index_entries_removed: int


class IndexStatsResponse(BaseModel):
    """Response for GET /documents/stats."""

    documents: int
    chunks: int
    index_entries: int
    vectorstore: str
    embedding_model: str
    embedding_dimension: int

    @classmethod
    def from_stats(cls, stats: IndexStats) -> "IndexStatsResponse":
        return cls(
            documents=stats.documents,
            chunks=stats.chunks,
            index_entries=stats.index_entries,
            vectorstore=stats.vectorstore_type,
            embedding_model=stats.embedding_model,
            embedding_dimension=stats.embedding_dimension,
        )


class CitationResponse(BaseModel):
    """
    A citation resolved from a [N] marker in the answer.

    Provenance matters for financial answers: every cited figure can be
    traced back to the chunk it came from.
    """

    position: int = Field(description="The N of the [N] marker in the answer")
    chunk_id: str
    document_id: str | None
    excerpt: str = Field(description="First 200 characters of the chunk")
    score: float = Field(description="Retrieval score (backend-specific scale)")

    @classmethod
    def from_citation(cls, citation: Citation) -> "CitationResponse":
        return cls(
            position=citation.position,
            chunk_id=citation.chunk_id,
            document_id=citation.document_id,
            excerpt=citation.excerpt,
            score=citation.score,
        )


class QueryResponse(BaseModel):
    """Response for POST /query and GET /queries/{query_id}."""

    query_id: str
    query: str
    company_ticker: str | None = None
    document_types: list[str] = Field(default_factory=list)
    top_k: int = Field(description="Passages requested from retrieval")
    answer: str
    citations: list[CitationResponse]
    model: str
    chunks_retrieved: int
    insufficient_context: bool = Field(
        description="True when no passage matched and the model was not called",
    )
    processing_time_ms: int
    created_at: datetime

    @classmethod
    def from_record(cls, record: QueryRecord) -> "QueryResponse":
        return cls(
            query_id=record.id,
            query=record.request.text,
            company_ticker=record.request.company_filter,
            document_types=list(record.request.document_type_filter),
            top_k=record.request.top_k,
            answer=record.result.answer_text,
            citations=[CitationResponse.from_citation(c) for c in record.result.citations],
            model=record.result.model,
            chunks_retrieved=record.result.chunks_retrieved,
            insufficient_context=record.result.insufficient_context,
            processing_time_ms=record.processing_time_ms,
            created_at=record.created_at,
        )


class QueryHistoryResponse(BaseModel):
    queries: list[QueryResponse]
    count: int
