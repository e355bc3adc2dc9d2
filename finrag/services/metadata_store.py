# =============================================================================
# Metadata Store — Documents, Chunks, Ingestion Status & Query History
# =============================================================================
#
# The system of record for everything that is not a vector: document
# records, chunk records (the text the index entries point at), the
# per-document ingestion status and the query history.
#
# ARCHITECTURE:
#   MetadataStore (Protocol)
#   ├── InMemoryMetadataStore — dicts, for development and tests
#   └── SqlMetadataStore      — SQLAlchemy async ORM (finrag/db/models.py)
#
# DESIGN DECISION: Status lives on the document row.
# One row per document carries the ingestion stage, chunk count, error and
# timestamps. set_status() creates the row when it does not exist yet, so a
# QUEUED status can be recorded before the document is registered.
#
# The vector index is a separate store. Reconciliation (reconcile.py)
# compares index chunk ids against chunk_ids_exist() here.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from sqlalchemy import delete as sql_delete
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finrag.config import Settings
from finrag.db.engine import create_session_factory, get_engine, session_scope
from finrag.db.models import ChunkRow, CitationRow, DocumentRow, QueryRow
from finrag.errors import ConfigurationError
from finrag.services.types import (
    AnswerResult,
    Chunk,
    Citation,
    DocumentRecord,
    IngestionStage,
    IngestionStatus,
    QueryRecord,
    QueryRequest,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class MetadataStore(Protocol):
    """Interface shared by the in-memory and SQL metadata stores."""

    # --- Documents ---
    async def create(self, document: DocumentRecord) -> None: ...

    async def find_by_id(self, document_id: str) -> DocumentRecord | None: ...

    async def delete_document(self, document_id: str) -> bool:
        """Remove the document, its chunks and its status. False if unknown."""
        ...

    async def list_documents(
        self,
        company_ticker: str | None = None,
        document_type: str | None = None,
        stage: IngestionStage | None = None,
        limit: int = 100,
    ) -> list[DocumentRecord]:
        """Registered documents matching every given filter, by document id."""
        ...

    async def count_documents(self) -> int: ...

    # --- Chunks ---
    async def create_chunks(self, chunks: Sequence[Chunk]) -> None: ...

    async def find_by_document_id(self, document_id: str) -> list[Chunk]:
        """Chunks of a document in ordinal order."""
        ...

    async def delete_by_document_id(self, document_id: str) -> int:
        """Remove a document's chunk records; return how many were removed."""
        ...

    async def chunk_ids_exist(self, chunk_ids: Sequence[str]) -> set[str]:
        """The subset of `chunk_ids` that have a chunk record."""
        ...

    async def count_chunks(self) -> int: ...

    # --- Ingestion status ---
    async def set_status(self, status: IngestionStatus) -> None: ...

    async def get_status(self, document_id: str) -> IngestionStatus | None: ...

    # --- Query history ---
    async def save_query(self, record: QueryRecord) -> None: ...

    async def get_query(self, query_id: str) -> QueryRecord | None: ...

    async def list_queries(self, limit: int = 20) -> list[QueryRecord]:
        """Most recent first."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


class InMemoryMetadataStore:
    """
    Dict-backed metadata store.

    No method awaits between reading and writing its dicts, so each call
    is atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._documents: dict[str, DocumentRecord] = {}
        self._chunks: dict[str, dict[str, Chunk]] = {}
        self._statuses: dict[str, IngestionStatus] = {}
        self._queries: dict[str, QueryRecord] = {}

    async def create(self, document: DocumentRecord) -> None:
        self._documents[document.document_id] = document

    async def find_by_id(self, document_id: str) -> DocumentRecord | None:
        return self._documents.get(document_id)

    async def delete_document(self, document_id: str) -> bool:
        known = document_id in self._documents or document_id in self._statuses
        self._documents.pop(document_id, None)
        self._chunks.pop(document_id, None)
        self._statuses.pop(document_id, None)
        return known

    async def count_documents(self) -> int:
        return len(self._documents)

    async def list_documents(
        self,
        company_ticker: str | None = None,
        document_type: str | None = None,
        stage: IngestionStage | None = None,
        limit: int = 100,
    ) -> list[DocumentRecord]:
        ticker = company_ticker.strip().upper() if company_ticker else None
        matches = []
        for document_id in sorted(self._documents):
            document = self._documents[document_id]
            if ticker and document.company_ticker != ticker:
                continue
            if document_type and document.document_type != document_type:
                continue
            if stage is not None:
                status = self._statuses.get(document_id)
                if status is None or status.stage is not stage:
                    continue
            matches.append(document)
        return matches[:limit]

    async def create_chunks(self, chunks: Sequence[Chunk]) -> None:
        for chunk in chunks:
            self._chunks.setdefault(chunk.source_document_id, {})[chunk.id] = chunk

    async def find_by_document_id(self, document_id: str) -> list[Chunk]:
        chunks = self._chunks.get(document_id, {}).values()
        return sorted(chunks, key=lambda c: c.ordinal_index)

    async def delete_by_document_id(self, document_id: str) -> int:
        return len(self._chunks.pop(document_id, {}))

    async def chunk_ids_exist(self, chunk_ids: Sequence[str]) -> set[str]:
        known = {
            chunk_id
            for chunks in self._chunks.values()
            for chunk_id in chunks
        }
        return known.intersection(chunk_ids)

    async def count_chunks(self) -> int:
        return sum(len(chunks) for chunks in self._chunks.values())

    async def set_status(self, status: IngestionStatus) -> None:
        self._statuses[status.document_id] = status

    async def get_status(self, document_id: str) -> IngestionStatus | None:
        return self._statuses.get(document_id)

    async def save_query(self, record: QueryRecord) -> None:
        self._queries[record.id] = record

    async def get_query(self, query_id: str) -> QueryRecord | None:
        return self._queries.get(query_id)

    async def list_queries(self, limit: int = 20) -> list[QueryRecord]:
        # Reversed insertion order first, so equal timestamps list newest first.
        records = sorted(
            reversed(self._queries.values()), key=lambda r: r.created_at, reverse=True,
        )
        return records[:limit]


# ---------------------------------------------------------------------------
# Implementation 2: SQL (PostgreSQL via SQLAlchemy async)
# ---------------------------------------------------------------------------


class SqlMetadataStore:
    """Metadata store over the documents/chunks/queries tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # --- Documents ---

    async def create(self, document: DocumentRecord) -> None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(DocumentRow, document.document_id)
            if row is None:
                row = DocumentRow(document_id=document.document_id)
                session.add(row)
            row.company_ticker = document.company_ticker
            row.document_type = document.document_type
            row.filing_date = document.filing_date
            row.fiscal_year = document.fiscal_year

    async def find_by_id(self, document_id: str) -> DocumentRecord | None:
        async with self._session_factory() as session:
            row = await session.get(DocumentRow, document_id)
            if row is None or row.company_ticker is None:
                return None
            return _document_from_row(row)

    async def delete_document(self, document_id: str) -> bool:
        async with session_scope(self._session_factory) as session:
            await session.execute(
                sql_delete(ChunkRow).where(ChunkRow.document_id == document_id)
            )
            result = await session.execute(
                sql_delete(DocumentRow).where(DocumentRow.document_id == document_id)
            )
        return bool(result.rowcount)

    async def count_documents(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(DocumentRow)
                .where(DocumentRow.company_ticker.is_not(None))
            )
            return int(result.scalar_one())

    async def list_documents(
        self,
        company_ticker: str | None = None,
        document_type: str | None = None,
        stage: IngestionStage | None = None,
        limit: int = 100,
    ) -> list[DocumentRecord]:
        statement = select(DocumentRow).where(DocumentRow.company_ticker.is_not(None))
        if company_ticker:
            statement = statement.where(
                DocumentRow.company_ticker == company_ticker.strip().upper()
            )
        if document_type:
            statement = statement.where(DocumentRow.document_type == document_type)
        if stage is not None:
            statement = statement.where(DocumentRow.stage == stage)
        statement = statement.order_by(DocumentRow.document_id).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [_document_from_row(row) for row in result.scalars().all()]

    # --- Chunks ---

    async def create_chunks(self, chunks: Sequence[Chunk]) -> None:
        if not chunks:
            return
        async with session_scope(self._session_factory) as session:
            for chunk in chunks:
                # merge() makes re-writing the same chunk id an update.
                await session.merge(ChunkRow(
                    id=chunk.id,
                    document_id=chunk.source_document_id,
                    text=chunk.text,
                    token_count=chunk.token_count,
                    ordinal_index=chunk.ordinal_index,
                    page_number=chunk.page_number,
                    section=chunk.section,
                ))
        logger.debug("Stored %d chunk records", len(chunks))

    async def find_by_document_id(self, document_id: str) -> list[Chunk]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChunkRow)
                .where(ChunkRow.document_id == document_id)
                .order_by(ChunkRow.ordinal_index)
            )
            return [_chunk_from_row(row) for row in result.scalars().all()]

    async def delete_by_document_id(self, document_id: str) -> int:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                sql_delete(ChunkRow).where(ChunkRow.document_id == document_id)
            )
        return result.rowcount or 0

    async def chunk_ids_exist(self, chunk_ids: Sequence[str]) -> set[str]:
        ids = list(chunk_ids)
        if not ids:
            return set()
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChunkRow.id).where(ChunkRow.id.in_(ids))
            )
            return set(result.scalars().all())

    async def count_chunks(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(ChunkRow))
            return int(result.scalar_one())

    # --- Ingestion status ---

    async def set_status(self, status: IngestionStatus) -> None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(DocumentRow, status.document_id)
            if row is None:
                row = DocumentRow(document_id=status.document_id)
                session.add(row)
            row.stage = status.stage
            row.chunk_count = status.chunk_count
            row.error_message = status.error
            row.started_at = status.started_at
            row.completed_at = status.completed_at

    async def get_status(self, document_id: str) -> IngestionStatus | None:
        async with self._session_factory() as session:
            row = await session.get(DocumentRow, document_id)
            if row is None:
                return None
            return IngestionStatus(
                document_id=row.document_id,
                stage=row.stage,
                chunk_count=row.chunk_count,
                error=row.error_message,
                started_at=row.started_at,
                completed_at=row.completed_at,
            )

    # --- Query history ---

    async def save_query(self, record: QueryRecord) -> None:
        async with session_scope(self._session_factory) as session:
            row = QueryRow(
                id=record.id,
                query_text=record.request.text,
                company_filter=record.request.company_filter,
                document_types=list(record.request.document_type_filter),
                top_k=record.request.top_k,
                answer=record.result.answer_text,
                model=record.result.model,
                chunks_retrieved=record.result.chunks_retrieved,
                insufficient_context=record.result.insufficient_context,
                processing_time_ms=record.processing_time_ms,
                created_at=record.created_at,
            )
            row.citations = [
                CitationRow(
                    position=c.position,
                    chunk_id=c.chunk_id,
                    document_id=c.document_id,
                    excerpt=c.excerpt,
                    score=c.score,
                )
                for c in record.result.citations
            ]
            session.add(row)

    async def get_query(self, query_id: str) -> QueryRecord | None:
        async with self._session_factory() as session:
            row = await session.get(QueryRow, query_id)
            return _query_from_row(row) if row is not None else None

    async def list_queries(self, limit: int = 20) -> list[QueryRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueryRow).order_by(QueryRow.created_at.desc()).limit(limit)
            )
            return [_query_from_row(row) for row in result.scalars().all()]


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_metadata_store(settings: Settings) -> MetadataStore:
    """
    Build the configured metadata store.

    - "memory" → InMemoryMetadataStore (default)
    - "sql"    → SqlMetadataStore on settings.database_url
    """
    if settings.metadata_store_type == "memory":
        logger.info("Using in-memory metadata store")
        return InMemoryMetadataStore()
    if settings.metadata_store_type == "sql":
        logger.info("Using SQL metadata store")
        engine = get_engine(settings.database_url, echo=settings.debug)
        return SqlMetadataStore(create_session_factory(engine))

    raise ConfigurationError(
        f"Unknown metadata_store_type '{settings.metadata_store_type}'. "
        "Expected 'memory' or 'sql'."
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _document_from_row(row: DocumentRow) -> DocumentRecord:
    return DocumentRecord(
        document_id=row.document_id,
        company_ticker=row.company_ticker,
        document_type=row.document_type or "",
        filing_date=row.filing_date,
        fiscal_year=row.fiscal_year,
    )


def _chunk_from_row(row: ChunkRow) -> Chunk:
    return Chunk(
        id=row.id,
        source_document_id=row.document_id,
        text=row.text,
        token_count=row.token_count,
        ordinal_index=row.ordinal_index,
        page_number=row.page_number,
        section=row.section,
    )


def _query_from_row(row: QueryRow) -> QueryRecord:
    citations = tuple(
        Citation(
            position=c.position,
            chunk_id=c.chunk_id,
            document_id=c.document_id,
            excerpt=c.excerpt,
            score=c.score,
        )
        for c in row.citations
    )
    return QueryRecord(
        id=row.id,
        request=QueryRequest(
            text=row.query_text,
            company_filter=row.company_filter,
            document_type_filter=tuple(row.document_types or ()),
            top_k=row.top_k,
        ),
        result=AnswerResult(
            answer_text=row.answer,
            citations=citations,
            model=row.model,
            chunks_retrieved=row.chunks_retrieved,
            insufficient_context=row.insufficient_context,
        ),
        created_at=row.created_at,
        processing_time_ms=row.processing_time_ms,
    )
