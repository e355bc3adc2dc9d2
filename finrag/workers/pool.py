# =============================================================================
# In-Process Ingestion Worker Pool — Bounded Concurrency
# =============================================================================
#
# Pull-based pool: submit() puts a job on an asyncio.Queue and returns a
# Future; N worker tasks pull jobs and run RAGService.ingest_document().
#
# ┌────────┐  submit()  ┌─────────────┐  get()  ┌──────────┐
# │ caller │──────────▶│ asyncio.Queue│───────▶│ worker×N │──▶ ingest_document
# └────────┘  Future    └─────────────┘         └──────────┘
#
# DESIGN DECISION: Bounded pool instead of one task per document.
# Ingestion makes many provider calls per document; N concurrent documents
# (default 3, valid range 1–8) keep embedding traffic and memory bounded
# while queries continue to run on the same event loop unaffected.
#
# This is the in-process alternative to the Celery task in tasks.py, used
# when the API runs with in-memory stores.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from finrag.services.pipeline import RAGService
from finrag.services.types import DocumentMetadata, IngestionReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionJob:
    document_id: str
    text: str
    metadata: DocumentMetadata


class IngestionWorkerPool:
    """Runs ingestion jobs on at most `concurrency` workers."""

    def __init__(self, service: RAGService, concurrency: int = 3) -> None:
        if not 1 <= concurrency <= 8:
            raise ValueError("concurrency must be between 1 and 8")
        self._service = service
        self._concurrency = concurrency
        self._queue: asyncio.Queue[tuple[IngestionJob, asyncio.Future]] | None = None
        self._workers: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"ingestion-worker-{i}")
            for i in range(self._concurrency)
        ]
        logger.info("Started ingestion worker pool (concurrency=%d)", self._concurrency)

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers, by default after finishing queued jobs."""
        if not self._workers:
            return
        if drain and self._queue is not None:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        # Jobs still queued after a non-draining stop are cancelled.
        while self._queue is not None and not self._queue.empty():
            _, future = self._queue.get_nowait()
            future.cancel()
        self._queue = None
        logger.info("Stopped ingestion worker pool")

    async def submit(self, job: IngestionJob) -> asyncio.Future[IngestionReport]:
        if self._queue is None:
            raise RuntimeError("Worker pool is not running; call start() first")
        future: asyncio.Future[IngestionReport] = asyncio.get_running_loop().create_future()
        await self._queue.put((job, future))
        logger.debug("Queued ingestion for document_id=%s", job.document_id)
        return future

    async def __aenter__(self) -> IngestionWorkerPool:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _worker(self, worker_id: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            job, future = await queue.get()
            try:
                if future.cancelled():
                    continue
                report = await self._service.ingest_document(
                    job.document_id, job.text, job.metadata,
                )
                if not future.cancelled():
                    future.set_result(report)
            except asyncio.CancelledError:
                # Pool stopped without draining: the submitter sees a
                # cancelled Future instead of waiting forever.
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                # ConfigurationError and store failures reach the submitter.
                logger.error(
                    "Worker %d: ingestion of document_id=%s raised %s",
                    worker_id, job.document_id, exc,
                )
                if not future.cancelled():
                    future.set_exception(exc)
            finally:
                queue.task_done()
