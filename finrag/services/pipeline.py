# =============================================================================
# RAG Service — Composition Root & LangGraph Query Graph
# =============================================================================
#
# RAGService owns one instance of every pipeline component and exposes the
# operations the API, the worker pool and the Celery tasks call:
#
#   submit_query(request)            → AnswerResult
#   ingest_document(id, text, meta)  → IngestionReport
#   get_ingestion_status(id)         → IngestionStatus
#   list_documents(filters), get_document(id)   → DocumentDetails
#   delete_document(id), get_query_history(), get_query(), index_stats(),
#   reconcile()
#
# GRAPH TOPOLOGY (query path):
#   START ──▶ retrieve ──▶ assemble ──▶ generate ──▶ END
#
# DESIGN DECISION: Plain TypedDict state, one graph per service.
# The nodes close over this service's components, so the graph is compiled
# in __init__ rather than at module level. Per-query data lives only in the
# state of that invocation; nothing is shared between concurrent queries.
#
# DESIGN DECISION: "Nothing found" is not an error for the caller.
# The retrieve node turns NoResultsError into an empty candidate list and
# the generator answers with the fixed insufficient-information text
# without calling the model.
#
# DESIGN DECISION: No global singletons.
# build_rag_service(settings) constructs every client explicitly; tests
# pass fakes for any component.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from finrag.config import Settings
from finrag.errors import (
    ConfigurationError,
    DocumentNotFoundError,
    NoResultsError,
    QueryTimeoutError,
)
from finrag.services.chunker import make_token_counter
from finrag.services.context import ContextAssembler
from finrag.services.embedder import EmbeddingProvider, OpenAIEmbeddingProvider
from finrag.services.generator import AnswerGenerator
from finrag.services.ingestion import IngestionOrchestrator
from finrag.services.llm import LLMProvider, create_llm_provider
from finrag.services.metadata_store import MetadataStore, create_metadata_store
from finrag.services.reconcile import ReconciliationReport, reconcile_index
from finrag.services.retriever import Retriever
from finrag.services.types import (
    AnswerResult,
    ContextBlock,
    DocumentMetadata,
    DocumentRecord,
    IngestionReport,
    IngestionStage,
    IngestionStatus,
    QueryRecord,
    QueryRequest,
    RetrievalCandidate,
)
from finrag.services.vectorstore import VectorIndex, create_vector_index

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Query Graph State
# ---------------------------------------------------------------------------


class QueryState(TypedDict, total=False):
    """
    State that flows through the query graph.

    total=False so nodes only return the keys they update.
    """

    # --- Input ---
    request: QueryRequest

    # --- Intermediate ---
    candidates: list[RetrievalCandidate]
    blocks: list[ContextBlock]

    # --- Output ---
    result: AnswerResult


@dataclass(frozen=True)
class DocumentDetails:
    """A registered document with its ingestion status and chunk record count."""

    record: DocumentRecord
    status: IngestionStatus | None
    chunk_count: int


@dataclass(frozen=True)
class IndexStats:
    documents: int
    chunks: int
    index_entries: int
    vectorstore_type: str
    embedding_model: str
    embedding_dimension: int


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class RAGService:
    """The retrieval-and-grounding pipeline with its stores."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        llm: LLMProvider,
        index: VectorIndex,
        store: MetadataStore,
        chunk_size: int = 800,
        chunk_overlap: int = 100,
        embedding_batch_size: int = 50,
        max_top_k: int = 20,
        query_timeout_seconds: float = 60.0,
        vectorstore_type: str = "memory",
        count_tokens=None,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._store = store
        self._retriever = Retriever(embedder, index)
        self._assembler = ContextAssembler()
        self._generator = AnswerGenerator(llm)
        self._orchestrator = IngestionOrchestrator(
            embedder,
            index,
            store,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            batch_size=embedding_batch_size,
            count_tokens=count_tokens,
        )
        self._max_top_k = max_top_k
        self._query_timeout = query_timeout_seconds
        self._vectorstore_type = vectorstore_type
        self._graph = self._build_graph()

    # --- Graph nodes ---

    async def _retrieve_node(self, state: QueryState) -> dict:
        try:
            candidates = await self._retriever.retrieve(state["request"])
        except NoResultsError:
            logger.info("No candidates matched the query")
            candidates = []
        return {"candidates": candidates}

    async def _assemble_node(self, state: QueryState) -> dict:
        return {"blocks": self._assembler.assemble(state.get("candidates", []))}

    async def _generate_node(self, state: QueryState) -> dict:
        result = await self._generator.generate(
            state["request"].text, state.get("blocks", []),
        )
        return {"result": result}

    def _build_graph(self):
        builder = StateGraph(QueryState)
        builder.add_node("retrieve", self._retrieve_node)
        builder.add_node("assemble", self._assemble_node)
        builder.add_node("generate", self._generate_node)

        builder.add_edge(START, "retrieve")
        builder.add_edge("retrieve", "assemble")
        builder.add_edge("assemble", "generate")
        builder.add_edge("generate", END)
        return builder.compile()

    # --- Query path ---

    async def run_query(self, request: QueryRequest) -> QueryRecord:
        """
        Answer a query and persist it to the query history.

        Raises:
            ValueError: Empty query text or top_k out of range.
            QueryTimeoutError: The pipeline exceeded query_timeout_seconds.
            ProviderError: The query could not be embedded.
            GenerationError: The LLM call failed.
        """
        if not request.text.strip():
            raise ValueError("Query text must not be empty")
        if not 1 <= request.top_k <= self._max_top_k:
            raise ValueError(f"top_k must be between 1 and {self._max_top_k}")

        logger.info(
            "Query: '%s' (company=%s, types=%s, top_k=%d)",
            request.text[:80], request.company_filter,
            list(request.document_type_filter), request.top_k,
        )

        started = time.perf_counter()
        try:
            state = await asyncio.wait_for(
                self._graph.ainvoke({"request": request}),
                timeout=self._query_timeout,
            )
        except TimeoutError as exc:
            logger.warning("Query timed out after %.1fs", self._query_timeout)
            raise QueryTimeoutError(self._query_timeout) from exc

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        record = QueryRecord(
            id=uuid.uuid4().hex,
            request=request,
            result=state["result"],
            created_at=datetime.now(UTC),
            processing_time_ms=elapsed_ms,
        )
        await self._store.save_query(record)

        logger.info(
            "Query complete: id=%s, model=%s, citations=%d, %dms",
            record.id, record.result.model, len(record.result.citations), elapsed_ms,
        )
        return record

    async def submit_query(self, request: QueryRequest) -> AnswerResult:
        record = await self.run_query(request)
        return record.result

    async def get_query_history(self, limit: int = 20) -> list[QueryRecord]:
        return await self._store.list_queries(limit)

    async def get_query(self, query_id: str) -> QueryRecord | None:
        return await self._store.get_query(query_id)

    # --- Ingestion path ---

    async def ingest_document(
        self,
        document_id: str,
        text: str,
        metadata: DocumentMetadata,
    ) -> IngestionReport:
        return await self._orchestrator.ingest(document_id, text, metadata)

    async def mark_queued(self, document_id: str) -> IngestionStatus:
        """Record a QUEUED status when a job is handed to a worker."""
        status = IngestionStatus(document_id=document_id, stage=IngestionStage.QUEUED)
        await self._store.set_status(status)
        return status

    async def get_ingestion_status(self, document_id: str) -> IngestionStatus:
        status = await self._store.get_status(document_id)
        if status is None:
            raise DocumentNotFoundError(document_id)
        return status

    # --- Document browsing ---

    async def list_documents(
        self,
        company: str | None = None,
        stage: IngestionStage | None = None,
        document_type: str | None = None,
        limit: int = 100,
    ) -> list[DocumentDetails]:
        records = await self._store.list_documents(
            company_ticker=company, document_type=document_type, stage=stage, limit=limit,
        )
        return [await self._details(record) for record in records]

    async def get_document(self, document_id: str) -> DocumentDetails:
        record = await self._store.find_by_id(document_id)
        if record is None:
            raise DocumentNotFoundError(document_id)
        return await self._details(record)

    async def _details(self, record: DocumentRecord) -> DocumentDetails:
        chunks = await self._store.find_by_document_id(record.document_id)
        return DocumentDetails(
            record=record,
            status=await self._store.get_status(record.document_id),
            chunk_count=len(chunks),
        )

    async def delete_document(self, document_id: str) -> int:
        """
        Remove a document's index entries, chunks and status.

        Index entries go first so no entry outlives its chunk record.
        Returns the number of index entries removed.
        """
        removed = await self._index.delete(document_id)
        known = await self._store.delete_document(document_id)
        if not known and not removed:
            raise DocumentNotFoundError(document_id)
        logger.info("Deleted document_id=%s (%d index entries)", document_id, removed)
        return removed

    # --- Maintenance ---

    async def index_stats(self) -> IndexStats:
        return IndexStats(
            documents=await self._store.count_documents(),
            chunks=await self._store.count_chunks(),
            index_entries=await self._index.count(),
            vectorstore_type=self._vectorstore_type,
            embedding_model=self._embedder.model,
            embedding_dimension=self._embedder.dimension,
        )

    async def reconcile(self) -> ReconciliationReport:
        return await reconcile_index(self._index, self._store)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def build_rag_service(
    settings: Settings,
    embedder: EmbeddingProvider | None = None,
    llm: LLMProvider | None = None,
    index: VectorIndex | None = None,
    store: MetadataStore | None = None,
) -> RAGService:
    """
    Construct every component from settings and inject it.

    Any component can be passed in explicitly (tests, scripts); the rest
    are built from configuration.
    """
    embedder = embedder or OpenAIEmbeddingProvider.from_settings(settings)
    if embedder.dimension != settings.embedding_dimensions:
        raise ConfigurationError(
            f"Embedding provider dimension {embedder.dimension} does not match "
            f"configured embedding_dimensions={settings.embedding_dimensions}"
        )

    return RAGService(
        embedder=embedder,
        llm=llm or create_llm_provider(settings),
        index=index or create_vector_index(settings),
        store=store or create_metadata_store(settings),
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        embedding_batch_size=settings.embedding_batch_size,
        max_top_k=settings.retrieval_max_top_k,
        query_timeout_seconds=settings.query_timeout_seconds,
        vectorstore_type=settings.vectorstore_type,
        count_tokens=make_token_counter(settings.tokenizer_encoding),
    )
