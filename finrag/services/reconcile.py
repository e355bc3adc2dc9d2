# =============================================================================
# Index Reconciliation — Remove Orphan Index Entries
# =============================================================================
#
# The metadata store and the vector index are separate stores. A crash
# between "delete chunk records" and "delete index entries", or an index
# write that outlived a failed ingestion, can leave index entries whose
# chunk record no longer exists. Those entries would be retrieved and
# cited without a source record behind them.
#
# reconcile_index() lists every chunk id in the index, asks the metadata
# store which of them exist, and deletes the rest. Chunk records without
# index entries are NOT touched: they are simply not retrievable until the
# document is re-ingested.
#
# Concurrent ingestion:
# - A document being re-ingested has cleared its chunk records and will
#   write new ones under the same ids. Its entries are skipped while its
#   status is non-terminal.
# - Missing ids are looked up a second time right before deletion, so a
#   re-ingestion that finished after the first lookup keeps its entries.
#
# Runs periodically as a Celery beat task and on demand via
# RAGService.reconcile().
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from finrag.services.metadata_store import MetadataStore
from finrag.services.types import document_id_of_chunk
from finrag.services.vectorstore import VectorIndex

logger = logging.getLogger(__name__)

# chunk_ids_exist() is called with at most this many ids at a time.
_LOOKUP_BATCH = 500


@dataclass(frozen=True)
class ReconciliationReport:
    checked: int
    orphans_removed: int
    orphan_ids: tuple[str, ...] = ()
    skipped_in_flight: int = 0


async def _missing(store: MetadataStore, chunk_ids: Sequence[str]) -> list[str]:
    missing: list[str] = []
    for start in range(0, len(chunk_ids), _LOOKUP_BATCH):
        batch = chunk_ids[start:start + _LOOKUP_BATCH]
        existing = await store.chunk_ids_exist(batch)
        missing.extend(chunk_id for chunk_id in batch if chunk_id not in existing)
    return missing


async def _in_flight_documents(store: MetadataStore, chunk_ids: Sequence[str]) -> set[str]:
    """Documents among `chunk_ids` whose ingestion has not finished."""
    in_flight: set[str] = set()
    for document_id in {document_id_of_chunk(c) for c in chunk_ids} - {None}:
        status = await store.get_status(document_id)
        if status is not None and not status.stage.is_terminal:
            in_flight.add(document_id)
    return in_flight


async def reconcile_index(index: VectorIndex, store: MetadataStore) -> ReconciliationReport:
    chunk_ids = await index.list_chunk_ids()

    candidates = await _missing(store, chunk_ids)

    in_flight = await _in_flight_documents(store, candidates) if candidates else set()
    skipped = [c for c in candidates if document_id_of_chunk(c) in in_flight]
    if skipped:
        logger.info(
            "Reconciliation skipped %d entries of %d documents still ingesting",
            len(skipped), len(in_flight),
        )
    candidates = [c for c in candidates if document_id_of_chunk(c) not in in_flight]

    orphans = await _missing(store, candidates) if candidates else []
    removed = await index.delete_chunks(orphans) if orphans else 0

    if orphans:
        logger.warning(
            "Reconciliation removed %d orphan index entries (of %d checked)",
            removed, len(chunk_ids),
        )
    else:
        logger.info("Reconciliation found no orphans (%d entries checked)", len(chunk_ids))

    return ReconciliationReport(
        checked=len(chunk_ids),
        orphans_removed=removed,
        orphan_ids=tuple(orphans),
        skipped_in_flight=len(skipped),
    )
