# =============================================================================
# Celery Task Definitions — Document Ingestion & Index Reconciliation
# =============================================================================
#
# ingest_document: runs IngestionOrchestrator for one document's extracted
# text. reconcile_index: removes orphan index entries (beat schedule).
#
# IMPORTANT: Celery tasks are SYNCHRONOUS, the pipeline is async.
# Each task drives one coroutine with asyncio.run() and disposes the
# cached database engines before returning, because an asyncpg pool is
# bound to the event loop that created it.
#
# RETRY STRATEGY (job level, independent of provider retries):
# A FAILED ingestion report is re-queued with exponential backoff
# (60s, 120s, 240s), up to max_retries=3. ConfigurationError is fatal and
# is not retried.
# =============================================================================

import asyncio
import logging
from datetime import date

from finrag.config import get_settings
from finrag.db.engine import dispose_engines
from finrag.errors import ConfigurationError, IngestionFailure
from finrag.services.pipeline import build_rag_service
from finrag.services.types import DocumentMetadata
from finrag.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _ingest(
    document_id: str,
    text: str,
    metadata: DocumentMetadata,
) -> dict:
    service = build_rag_service(get_settings())
    try:
        report = await service.ingest_document(document_id, text, metadata)
    finally:
        await dispose_engines()
    return {
        "document_id": report.document_id,
        "status": report.status.value,
        "chunk_count": report.chunk_count,
        "error": report.error,
    }


async def _reconcile() -> dict:
    service = build_rag_service(get_settings())
    try:
        report = await service.reconcile()
    finally:
        await dispose_engines()
    return {"checked": report.checked, "orphans_removed": report.orphans_removed}


# ---------------------------------------------------------------------------
# Ingestion Task
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="ingest_document",
    max_retries=3,
    default_retry_delay=60,
)
def ingest_document(
    self,
    document_id: str,
    text: str,
    company_ticker: str,
    document_type: str,
    filing_date: str | None = None,
    fiscal_year: int | None = None,
) -> dict:
    """
    Ingest extracted document text.

    Args:
        self: Celery task instance (bound task, provides self.request).
        document_id: Caller-assigned document id.
        text: Extracted plain text (form feeds mark page breaks).
        company_ticker / document_type / filing_date / fiscal_year:
            Document metadata; filing_date is an ISO date string.

    Returns:
        dict summary of the IngestionReport.
    """
    task_id = self.request.id
    metadata = DocumentMetadata(
        company_ticker=company_ticker,
        document_type=document_type,
        filing_date=date.fromisoformat(filing_date) if filing_date else None,
        fiscal_year=fiscal_year,
    )

    logger.info(
        "[%s] Starting ingestion task: document_id=%s (attempt %d)",
        task_id, document_id, self.request.retries + 1,
    )

    try:
        summary = asyncio.run(_ingest(document_id, text, metadata))
    except ConfigurationError:
        logger.exception("[%s] Fatal configuration error, not retrying", task_id)
        raise

    if summary["status"] != "completed":
        exc = IngestionFailure(
            summary["error"] or "Ingestion failed",
            document_id=document_id,
        )
        countdown = 60 * (2 ** self.request.retries)
        logger.warning(
            "[%s] Ingestion failed for document_id=%s, retrying in %ds: %s",
            task_id, document_id, countdown, exc,
        )
        raise self.retry(exc=exc, countdown=countdown)

    logger.info("[%s] Ingestion complete: %s", task_id, summary)
    return summary


# ---------------------------------------------------------------------------
# Reconciliation Task
# ---------------------------------------------------------------------------


@celery_app.task(name="reconcile_index")
def reconcile_index() -> dict:
    """Periodic removal of index entries without a chunk record."""
    summary = asyncio.run(_reconcile())
    logger.info("Reconciliation complete: %s", summary)
    return summary
