# =============================================================================
# Documents API — Ingestion, Status, Deletion & Index Statistics
# =============================================================================
#
# ENDPOINTS:
#   GET    /documents                       — browse, filter by ticker/stage/type
#   GET    /documents/{document_id}         — record, status, chunk count
#   POST   /documents/{document_id}/ingest  — accept extracted text (202)
#   GET    /documents/{document_id}/status  — ingestion state machine
#   DELETE /documents/{document_id}         — remove entries + chunks
#   GET    /documents/stats                 — document/chunk/entry counts
#
# DESIGN DECISION: 202 Accepted for ingest.
# Ingestion runs in the background (in-process worker pool or Celery,
# per settings.ingestion_backend). The status is recorded as QUEUED before
# the response is sent, so polling works immediately.
#
# File upload and text extraction happen upstream; this API receives the
# extracted text and document metadata.
# =============================================================================

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from finrag.api.deps import (
    get_app_settings,
    get_rag_service,
    get_worker_pool,
    to_http_error,
)
from finrag.config import Settings
from finrag.errors import FinRAGError
from finrag.models.requests import IngestRequest
from finrag.models.responses import (
    DeleteDocumentResponse,
    DocumentListResponse,
    DocumentResponse,
    IndexStatsResponse,
    IngestionStatusResponse,
    IngestResponse,
)
from finrag.services.pipeline import RAGService
from finrag.services.types import IngestionReport, IngestionStage
from finrag.workers.pool import IngestionJob, IngestionWorkerPool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["Documents"])


# ---------------------------------------------------------------------------
# GET /documents/stats — index statistics
# ---------------------------------------------------------------------------


@router.get(
    "/stats",
    response_model=IndexStatsResponse,
    summary="Document, chunk and index entry counts",
)
async def index_stats(
    service: RAGService = Depends(get_rag_service),
) -> IndexStatsResponse:
    try:
        stats = await service.index_stats()
    except FinRAGError as e:
        raise to_http_error(e) from e
    return IndexStatsResponse.from_stats(stats)


# ---------------------------------------------------------------------------
# GET /documents — browse registered documents
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List documents, optionally filtered",
)
async def list_documents(
    company_ticker: str | None = Query(default=None, max_length=16),
    stage: IngestionStage | None = None,
    document_type: str | None = Query(default=None, max_length=64),
    limit: int = Query(default=100, ge=1, le=500),
    service: RAGService = Depends(get_rag_service),
) -> DocumentListResponse:
    try:
        documents = await service.list_documents(
            company=company_ticker, stage=stage, document_type=document_type, limit=limit,
        )
    except FinRAGError as e:
        raise to_http_error(e) from e
    return DocumentListResponse(
        documents=[DocumentResponse.from_details(d) for d in documents],
        count=len(documents),
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id} — one document with status and chunk count
# ---------------------------------------------------------------------------


@router.get(
    "/{document_id}",
    response_model=DocumentResponse,
    summary="A document with its ingestion status",
)
async def get_document(
    document_id: str,
    service: RAGService = Depends(get_rag_service),
) -> DocumentResponse:
    try:
        details = await service.get_document(document_id)
    except FinRAGError as e:
        raise to_http_error(e) from e
    return DocumentResponse.from_details(details)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/ingest — queue a document for ingestion
# ---------------------------------------------------------------------------


@router.post(
    "/{document_id}/ingest",
    response_model=IngestResponse,
    status_code=202,
    summary="Ingest a document's extracted text",
    description=(
        "Queue extracted document text for chunking, embedding and "
        "indexing. Re-ingesting an existing document_id replaces its "
        "chunks and index entries."
    ),
)
async def ingest_document_endpoint(
    document_id: str,
    request: IngestRequest,
    service: RAGService = Depends(get_rag_service),
    pool: IngestionWorkerPool | None = Depends(get_worker_pool),
    settings: Settings = Depends(get_app_settings),
) -> IngestResponse:
    logger.info(
        "Ingest request: document_id=%s, ticker=%s, type=%s, %d chars",
        document_id, request.company_ticker, request.document_type, len(request.text),
    )

    try:
        await service.mark_queued(document_id)
    except FinRAGError as e:
        raise to_http_error(e) from e

    if settings.ingestion_backend == "celery":
        # Imported lazily so the API does not need a broker for the pool path.
        from finrag.workers.tasks import ingest_document

        task = ingest_document.delay(
            document_id=document_id,
            text=request.text,
            company_ticker=request.company_ticker,
            document_type=request.document_type,
            filing_date=request.filing_date.isoformat() if request.filing_date else None,
            fiscal_year=request.fiscal_year,
        )
        return IngestResponse(document_id=document_id, backend="celery", task_id=task.id)

    if pool is None or not pool.running:
        raise HTTPException(status_code=503, detail="Ingestion worker pool is not running")

    future = await pool.submit(IngestionJob(
        document_id=document_id,
        text=request.text,
        metadata=request.to_metadata(),
    ))
    future.add_done_callback(_log_outcome)
    return IngestResponse(document_id=document_id, backend="pool")


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status — ingestion progress
# ---------------------------------------------------------------------------


@router.get(
    "/{document_id}/status",
    response_model=IngestionStatusResponse,
    summary="Ingestion status of a document",
)
async def ingestion_status(
    document_id: str,
    service: RAGService = Depends(get_rag_service),
) -> IngestionStatusResponse:
    try:
        status = await service.get_ingestion_status(document_id)
    except FinRAGError as e:
        raise to_http_error(e) from e
    return IngestionStatusResponse.from_status(status)


# ---------------------------------------------------------------------------
# DELETE /documents/{document_id}
# ---------------------------------------------------------------------------


@router.delete(
    "/{document_id}",
    response_model=DeleteDocumentResponse,
    summary="Delete a document, its chunks and its index entries",
)
async def delete_document(
    document_id: str,
    service: RAGService = Depends(get_rag_service),
) -> DeleteDocumentResponse:
    try:
        removed = await service.delete_document(document_id)
    except FinRAGError as e:
        raise to_http_error(e) from e
    return DeleteDocumentResponse(document_id=document_id, index_entries_removed=removed)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _log_outcome(future: asyncio.Future[IngestionReport]) -> None:
    """Surface background ingestion results in the log."""
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Background ingestion raised: %s", exc)
        return
    report = future.result()
    if report.succeeded:
        logger.info(
            "Background ingestion complete: document_id=%s, chunks=%d",
            report.document_id, report.chunk_count,
        )
    else:
        logger.warning(
            "Background ingestion failed: document_id=%s, error=%s",
            report.document_id, report.error,
        )
