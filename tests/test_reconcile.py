# =============================================================================
# Unit Tests — Index Reconciliation
# =============================================================================

import asyncio

from finrag.services.ingestion import IngestionOrchestrator
from finrag.services.metadata_store import InMemoryMetadataStore
from finrag.services.reconcile import reconcile_index
from finrag.services.types import Chunk, DocumentMetadata, IndexEntry, IngestionStage
from finrag.services.vectorstore import InMemoryVectorIndex
from tests.helpers import DIM, FakeEmbedder, word_count

META = DocumentMetadata(company_ticker="TSLA", document_type="10-K")

TEXT = " ".join(f"Revenue line {i} grew strongly." for i in range(6))


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _entry(chunk_id: str, document_id: str = "doc-1") -> IndexEntry:
    return IndexEntry(
        chunk_id=chunk_id,
        vector=tuple([1.0] + [0.0] * (DIM - 1)),
        text=chunk_id,
        metadata={"document_id": document_id},
    )


def _chunk(chunk_id: str, ordinal: int) -> Chunk:
    return Chunk(
        id=chunk_id,
        source_document_id="doc-1",
        text=chunk_id,
        token_count=1,
        ordinal_index=ordinal,
    )


class TestReconcileIndex:
    def test_removes_entries_without_chunk_records(self):
        index, store = InMemoryVectorIndex(DIM), InMemoryMetadataStore()
        _run(index.upsert([_entry("doc-1_chunk_0"), _entry("doc-1_chunk_1"), _entry("ghost", "gone")]))
        _run(store.create_chunks([_chunk("doc-1_chunk_0", 0), _chunk("doc-1_chunk_1", 1)]))

        report = _run(reconcile_index(index, store))

        assert report.checked == 3
        assert report.orphans_removed == 1
        assert report.orphan_ids == ("ghost",)
        assert sorted(_run(index.list_chunk_ids())) == ["doc-1_chunk_0", "doc-1_chunk_1"]

    def test_clean_index_is_untouched(self):
        index, store = InMemoryVectorIndex(DIM), InMemoryMetadataStore()
        _run(index.upsert([_entry("doc-1_chunk_0")]))
        _run(store.create_chunks([_chunk("doc-1_chunk_0", 0)]))

        report = _run(reconcile_index(index, store))
        assert report.orphans_removed == 0
        assert _run(index.count()) == 1

    def test_chunk_records_without_entries_are_kept(self):
        index, store = InMemoryVectorIndex(DIM), InMemoryMetadataStore()
        _run(store.create_chunks([_chunk("doc-1_chunk_0", 0)]))

        report = _run(reconcile_index(index, store))
        assert report.checked == 0
        assert _run(store.count_chunks()) == 1

    def test_large_index_is_checked_in_batches(self):
        index, store = InMemoryVectorIndex(DIM), InMemoryMetadataStore()
        ids = [f"doc-1_chunk_{i}" for i in range(1200)]
        _run(index.upsert([_entry(i) for i in ids]))
        _run(store.create_chunks([_chunk(i, n) for n, i in enumerate(ids[:700])]))

        report = _run(reconcile_index(index, store))
        assert report.checked == 1200
        assert report.orphans_removed == 500
        assert _run(index.count()) == 700


# ---------------------------------------------------------------------------
# Reconciliation racing a re-ingestion of the same document
# ---------------------------------------------------------------------------


class PausingStore(InMemoryMetadataStore):
    """Holds the first existence lookup so a test can interleave other work."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.lookup = asyncio.Event()
        self.answer = asyncio.Event()
        self._held = False

    async def chunk_ids_exist(self, chunk_ids):
        if self._held:
            return await super().chunk_ids_exist(chunk_ids)
        self._held = True
        self.entered.set()
        await self.lookup.wait()
        existing = await super().chunk_ids_exist(chunk_ids)
        await self.answer.wait()
        return existing


def _orchestrator(index, store, delay: float = 0.0) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        FakeEmbedder(delay=delay),
        index,
        store,
        chunk_size=10,
        chunk_overlap=0,
        count_tokens=word_count,
    )


class TestReconcileDuringReingestion:
    def test_document_still_ingesting_is_skipped(self):
        async def scenario():
            index, store = InMemoryVectorIndex(DIM), PausingStore()
            await _orchestrator(index, store).ingest("doc-1", TEXT, META)

            reconcile = asyncio.create_task(reconcile_index(index, store))
            await store.entered.wait()

            # Re-ingestion clears the chunk records, then stalls embedding.
            reingest = asyncio.create_task(
                _orchestrator(index, store, delay=0.2).ingest("doc-1", TEXT, META)
            )
            await asyncio.sleep(0.05)
            assert (await store.get_status("doc-1")).stage is IngestionStage.EMBEDDING

            store.lookup.set()
            store.answer.set()
            report = await reconcile
            ingested = await reingest
            return report, ingested, index, store

        report, ingested, index, store = _run(scenario())
        assert report.orphans_removed == 0
        assert report.skipped_in_flight == report.checked == ingested.chunk_count
        assert _run(index.count("doc-1")) == ingested.chunk_count
        assert _run(store.count_chunks()) == ingested.chunk_count

    def test_ids_restored_before_deletion_are_kept(self):
        async def scenario():
            index, store = InMemoryVectorIndex(DIM), PausingStore()
            await _orchestrator(index, store).ingest("doc-1", TEXT, META)

            reconcile = asyncio.create_task(reconcile_index(index, store))
            await store.entered.wait()

            reingest = asyncio.create_task(
                _orchestrator(index, store, delay=0.05).ingest("doc-1", TEXT, META)
            )
            await asyncio.sleep(0.01)
            # First lookup runs while the chunk records are cleared...
            store.lookup.set()
            await asyncio.sleep(0)
            # ...and its answer arrives after the re-ingestion completed.
            ingested = await reingest
            store.answer.set()
            report = await reconcile
            return report, ingested, index

        report, ingested, index = _run(scenario())
        assert report.orphans_removed == 0
        assert report.skipped_in_flight == 0
        assert _run(index.count("doc-1")) == ingested.chunk_count
