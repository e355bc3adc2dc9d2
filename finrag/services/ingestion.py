# =============================================================================
# Ingestion Orchestrator — Chunk → Embed → Store, One Document at a Time
# =============================================================================
#
# INGESTION PIPELINE (per document):
#   1. QUEUED      — fresh status record (a re-run always starts here)
#   2. EXTRACTING  — validate the extracted text, register the document,
#                    clear prior index entries and chunk records
#   3. CHUNKING    — sentence-aligned token chunks (chunker.py)
#   4. EMBEDDING   — bounded batches; any batch failure fails the document
#                    before anything is written
#   5. STORING     — chunk records first, then index entries
#   6. COMPLETED   (or FAILED from any non-terminal stage, with a reason)
#
# DESIGN DECISION: Chunk ids are "{document_id}_chunk_{ordinal}".
# Together with the clean-up in EXTRACTING this makes re-ingestion
# idempotent: entry count per document always equals its chunk count.
#
# DESIGN DECISION: Best-effort two-phase store.
# If the index write fails after chunk records were written, the document
# is marked FAILED and the chunk rows are left in place for inspection.
# The next successful run (or delete_document) replaces them.
#
# ERROR HANDLING:
# - ConfigurationError (e.g., dimension mismatch) is recorded on the status
#   record and re-raised: retrying cannot fix it.
# - Everything else is recorded and returned as a FAILED IngestionReport;
#   the Celery task turns that into a job-level retry.
# - Cancellation (worker pool stopped mid-job, query-side shutdown) records
#   FAILED with reason "ingestion cancelled" and re-raises CancelledError.
# =============================================================================

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from finrag.errors import ConfigurationError, IngestionFailure
from finrag.services.chunker import TokenCounter, chunk_text
from finrag.services.embedder import EmbeddingProvider
from finrag.services.metadata_store import MetadataStore
from finrag.services.types import (
    Chunk,
    DocumentMetadata,
    DocumentRecord,
    IndexEntry,
    IngestionReport,
    IngestionStage,
    IngestionStatus,
    make_chunk_id,
)
from finrag.services.vectorstore import VectorIndex

logger = logging.getLogger(__name__)

# Error messages stored on the status record are capped at this length.
_MAX_ERROR_LENGTH = 1000


class IngestionOrchestrator:
    """Runs the ingestion state machine for one document per call."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        index: VectorIndex,
        store: MetadataStore,
        chunk_size: int = 800,
        chunk_overlap: int = 100,
        batch_size: int = 50,
        count_tokens: TokenCounter | None = None,
    ) -> None:
        if batch_size < 1:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")
        self._embedder = embedder
        self._index = index
        self._store = store
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._batch_size = batch_size
        self._count_tokens = count_tokens

    async def ingest(
        self,
        document_id: str,
        raw_text: str,
        metadata: DocumentMetadata,
    ) -> IngestionReport:
        """
        Ingest one document's extracted text.

        Returns:
            IngestionReport with status COMPLETED or FAILED.

        Raises:
            ConfigurationError: Fatal misconfiguration (recorded first).
        """
        tracker = _StatusTracker(self._store, document_id)
        await tracker.start()

        logger.info(
            "Starting ingestion: document_id=%s, ticker=%s, type=%s",
            document_id, metadata.company_ticker, metadata.document_type,
        )

        try:
            # --- Step 1: Validate text, register document, clear old data ---
            await tracker.advance(IngestionStage.EXTRACTING)
            text = _normalise_text(raw_text)
            if not text.strip():
                raise IngestionFailure(
                    "Extracted text is empty",
                    document_id=document_id,
                    stage=IngestionStage.EXTRACTING.value,
                )
            await self._store.create(DocumentRecord(
                document_id=document_id,
                company_ticker=metadata.company_ticker.strip().upper(),
                document_type=metadata.document_type,
                filing_date=metadata.filing_date,
                fiscal_year=metadata.resolved_fiscal_year,
            ))
            # Index entries first: they must never outlive their chunk records.
            removed_entries = await self._index.delete(document_id)
            removed_chunks = await self._store.delete_by_document_id(document_id)
            if removed_entries or removed_chunks:
                logger.info(
                    "Re-ingesting document_id=%s: cleared %d entries, %d chunks",
                    document_id, removed_entries, removed_chunks,
                )

            # --- Step 2: Chunk ---
            await tracker.advance(IngestionStage.CHUNKING)
            candidates = chunk_text(
                text,
                chunk_size=self._chunk_size,
                chunk_overlap=self._chunk_overlap,
                count=self._count_tokens,
            )
            if not candidates:
                raise IngestionFailure(
                    "No chunks produced from document text",
                    document_id=document_id,
                    stage=IngestionStage.CHUNKING.value,
                )
            chunks = [
                Chunk(
                    id=make_chunk_id(document_id, c.ordinal_index),
                    source_document_id=document_id,
                    text=c.text,
                    token_count=c.token_count,
                    ordinal_index=c.ordinal_index,
                    page_number=c.page_number,
                )
                for c in candidates
            ]
            logger.info("Created %d chunks for document_id=%s", len(chunks), document_id)

            # --- Step 3: Embed in bounded batches ---
            await tracker.advance(IngestionStage.EMBEDDING)
            vectors = await self._embed(document_id, chunks)

            # --- Step 4: Store chunk records, then index entries ---
            await tracker.advance(IngestionStage.STORING)
            await self._store.create_chunks(chunks)
            entries = [
                IndexEntry(
                    chunk_id=chunk.id,
                    vector=tuple(vector),
                    text=chunk.text,
                    metadata=_entry_metadata(chunk, metadata),
                )
                for chunk, vector in zip(chunks, vectors, strict=True)
            ]
            await self._index.upsert(entries)

            await tracker.complete(len(chunks))
            logger.info(
                "Ingestion complete: document_id=%s, chunks=%d",
                document_id, len(chunks),
            )
            return IngestionReport(
                document_id=document_id,
                chunk_count=len(chunks),
                status=IngestionStage.COMPLETED,
            )

        except asyncio.CancelledError:
            logger.warning(
                "Ingestion cancelled for document_id=%s at stage %s",
                document_id, tracker.stage.value,
            )
            await asyncio.shield(tracker.fail("ingestion cancelled"))
            raise

        except ConfigurationError as exc:
            logger.exception("Ingestion misconfigured for document_id=%s", document_id)
            await tracker.fail(str(exc))
            raise

        except Exception as exc:
            logger.exception(
                "Ingestion failed for document_id=%s at stage %s: %s",
                document_id, tracker.stage.value, exc,
            )
            reason = str(exc)[:_MAX_ERROR_LENGTH]
            await tracker.fail(reason)
            return IngestionReport(
                document_id=document_id,
                chunk_count=0,
                status=IngestionStage.FAILED,
                error=reason,
            )

    async def _embed(self, document_id: str, chunks: Sequence[Chunk]) -> list[list[float]]:
        vectors: list[list[float]] = []
        total_batches = (len(chunks) + self._batch_size - 1) // self._batch_size
        for batch_no, start in enumerate(range(0, len(chunks), self._batch_size), 1):
            batch = chunks[start:start + self._batch_size]
            batch_vectors = await self._embedder.embed_batch([c.text for c in batch])
            if len(batch_vectors) != len(batch):
                raise IngestionFailure(
                    f"Embedding batch {batch_no} returned {len(batch_vectors)} "
                    f"vectors for {len(batch)} chunks",
                    document_id=document_id,
                    stage=IngestionStage.EMBEDDING.value,
                )
            vectors.extend(batch_vectors)
            logger.info(
                "Embedded batch %d/%d for document_id=%s (%d chunks)",
                batch_no, total_batches, document_id, len(batch),
            )
        return vectors


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


class _StatusTracker:
    """Enforces one-way stage transitions and persists every change."""

    def __init__(self, store: MetadataStore, document_id: str) -> None:
        self._store = store
        self._status = IngestionStatus(document_id=document_id, stage=IngestionStage.QUEUED)

    @property
    def stage(self) -> IngestionStage:
        return self._status.stage

    async def start(self) -> None:
        self._status = IngestionStatus(
            document_id=self._status.document_id,
            stage=IngestionStage.QUEUED,
            started_at=datetime.now(UTC),
        )
        await self._store.set_status(self._status)

    async def advance(self, target: IngestionStage, **changes) -> None:
        if not self._status.stage.can_transition_to(target):
            raise ValueError(
                f"Illegal ingestion transition {self._status.stage.value} "
                f"→ {target.value} for document_id={self._status.document_id}"
            )
        self._status = dataclasses.replace(self._status, stage=target, **changes)
        await self._store.set_status(self._status)
        logger.debug(
            "document_id=%s → %s", self._status.document_id, target.value,
        )

    async def complete(self, chunk_count: int) -> None:
        await self.advance(
            IngestionStage.COMPLETED,
            chunk_count=chunk_count,
            completed_at=datetime.now(UTC),
        )

    async def fail(self, reason: str) -> None:
        if self._status.stage.is_terminal:
            return
        await self.advance(
            IngestionStage.FAILED,
            error=reason[:_MAX_ERROR_LENGTH],
            completed_at=datetime.now(UTC),
        )


def _normalise_text(raw_text: str) -> str:
    return raw_text.replace("\r\n", "\n").replace("\x00", "")


def _entry_metadata(chunk: Chunk, metadata: DocumentMetadata) -> dict:
    entry = {
        "document_id": chunk.source_document_id,
        "company_ticker": metadata.company_ticker.strip().upper(),
        "document_type": metadata.document_type,
        "fiscal_year": metadata.resolved_fiscal_year,
        "ordinal_index": chunk.ordinal_index,
        "page_number": chunk.page_number,
    }
    return {k: v for k, v in entry.items() if v is not None}
