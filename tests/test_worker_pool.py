# =============================================================================
# Unit Tests — In-Process Ingestion Worker Pool
# =============================================================================

import asyncio

import pytest

from finrag.errors import ConfigurationError
from finrag.services.metadata_store import InMemoryMetadataStore
from finrag.services.pipeline import RAGService
from finrag.services.types import DocumentMetadata, IngestionReport, IngestionStage
from finrag.services.vectorstore import InMemoryVectorIndex
from finrag.workers.pool import IngestionJob, IngestionWorkerPool
from tests.helpers import DIM, FakeEmbedder, FakeLLM, word_count

META = DocumentMetadata(company_ticker="TSLA", document_type="10-K")


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class SlowService:
    """Stands in for RAGService.ingest_document and tracks concurrency."""

    def __init__(self, delay: float = 0.01, exc: Exception | None = None):
        self.delay = delay
        self.exc = exc
        self.active = 0
        self.peak = 0
        self.done: list[str] = []

    async def ingest_document(self, document_id, text, metadata):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.exc is not None:
                raise self.exc
            self.done.append(document_id)
            return IngestionReport(
                document_id=document_id, chunk_count=1, status=IngestionStage.COMPLETED,
            )
        finally:
            self.active -= 1


def _job(i: int) -> IngestionJob:
    return IngestionJob(document_id=f"doc-{i}", text="Revenue grew.", metadata=META)


class TestIngestionWorkerPool:
    def test_concurrency_is_bounded(self):
        service = SlowService()

        async def scenario():
            async with IngestionWorkerPool(service, concurrency=3) as pool:
                futures = [await pool.submit(_job(i)) for i in range(10)]
                return await asyncio.gather(*futures)

        reports = _run(scenario())
        assert len(reports) == 10
        assert all(r.succeeded for r in reports)
        assert service.peak <= 3
        assert service.peak > 1

    def test_stop_drains_queued_jobs(self):
        service = SlowService()

        async def scenario():
            pool = IngestionWorkerPool(service, concurrency=1)
            await pool.start()
            for i in range(4):
                await pool.submit(_job(i))
            await pool.stop()
            return pool

        pool = _run(scenario())
        assert sorted(service.done) == ["doc-0", "doc-1", "doc-2", "doc-3"]
        assert not pool.running

    def test_exceptions_reach_the_submitter(self):
        service = SlowService(exc=ConfigurationError("dimension mismatch"))

        async def scenario():
            async with IngestionWorkerPool(service, concurrency=2) as pool:
                future = await pool.submit(_job(0))
                with pytest.raises(ConfigurationError):
                    await future

        _run(scenario())

    def test_submit_requires_start(self):
        pool = IngestionWorkerPool(SlowService())
        with pytest.raises(RuntimeError):
            _run(pool.submit(_job(0)))

    @pytest.mark.parametrize("concurrency", [0, 9])
    def test_concurrency_range(self, concurrency):
        with pytest.raises(ValueError):
            IngestionWorkerPool(SlowService(), concurrency=concurrency)


class TestNonDrainingStop:
    """Stopping mid-job must not leave submitters or statuses hanging."""

    def test_running_job_is_cancelled_and_marked_failed(self):
        store = InMemoryMetadataStore()
        service = RAGService(
            embedder=FakeEmbedder(delay=1.0),
            llm=FakeLLM(),
            index=InMemoryVectorIndex(DIM),
            store=store,
            chunk_size=50,
            chunk_overlap=10,
            count_tokens=word_count,
        )

        async def scenario():
            pool = IngestionWorkerPool(service, concurrency=1)
            await pool.start()
            running = await pool.submit(_job(0))
            queued = await pool.submit(_job(1))
            await asyncio.sleep(0.05)
            await pool.stop(drain=False)
            return running, queued

        running, queued = _run(scenario())
        assert running.cancelled()
        assert queued.cancelled()

        status = _run(store.get_status("doc-0"))
        assert status.stage is IngestionStage.FAILED
        assert status.error == "ingestion cancelled"
        assert _run(store.get_status("doc-1")) is None
