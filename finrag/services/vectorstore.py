# =============================================================================
# Vector Index — Pluggable Backend Protocol
# =============================================================================
#
# Stores chunk vectors with filterable metadata and answers nearest-neighbour
# queries restricted by a MetadataFilter (AND of equality and set-membership
# predicates).
#
# ARCHITECTURE:
#   VectorIndex (Protocol)
#   ├── InMemoryVectorIndex — copy-on-write dict, exact cosine scan
#   ├── ChromaVectorIndex   — ChromaDB collection (hnsw:space=cosine)
#   └── PgVectorIndex       — PostgreSQL + pgvector (index_entries table)
#
# SCORE SEMANTICS (not portable across backends):
#   memory   — cosine similarity of L2-normalised vectors, in [-1, 1]
#   chroma   — 1 - cosine distance reported by Chroma's HNSW index
#   pgvector — 1 - cosine distance (pgvector `<=>` operator)
# All three return candidates best-first. Ties keep the backend's native
# order: insertion order for the memory backend, index order otherwise.
#
# CONSISTENCY: every write validates all vector dimensions before touching
# storage, and each upsert/delete is applied as one unit, so a concurrent
# search sees the state before or after a write, never a partial entry.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence
from typing import Any, Protocol

import chromadb
from sqlalchemy import delete as sql_delete
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finrag.config import Settings
from finrag.db.engine import create_session_factory, get_engine, session_scope
from finrag.db.models import IndexEntryRow
from finrag.errors import ConfigurationError
from finrag.services.types import IndexEntry, MetadataFilter, RetrievalCandidate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorIndex(Protocol):
    """Interface shared by every vector index backend."""

    @property
    def dimension(self) -> int: ...

    async def upsert(self, entries: Sequence[IndexEntry]) -> None:
        """Insert or replace entries by chunk id."""
        ...

    async def search(
        self,
        query_vector: Sequence[float],
        top_k: int,
        filter: MetadataFilter | None = None,
    ) -> list[RetrievalCandidate]:
        """At most top_k matching entries, best first. Empty if none match."""
        ...

    async def delete(self, document_id: str) -> int:
        """Remove every entry of a document in one step; return the count."""
        ...

    async def delete_chunks(self, chunk_ids: Sequence[str]) -> int:
        """Remove specific entries (used by reconciliation)."""
        ...

    async def list_chunk_ids(self) -> list[str]:
        ...

    async def count(self, document_id: str | None = None) -> int:
        ...


def check_dimensions(entries: Sequence[IndexEntry], dimension: int) -> None:
    """Reject the whole write if any vector has the wrong dimension."""
    for entry in entries:
        if len(entry.vector) != dimension:
            raise ConfigurationError(
                f"Vector for chunk '{entry.chunk_id}' has dimension "
                f"{len(entry.vector)}; index dimension is {dimension}"
            )


def normalise(vector: Sequence[float]) -> tuple[float, ...]:
    """L2-normalise a vector. A zero vector is returned unchanged."""
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        return tuple(float(v) for v in vector)
    return tuple(v / norm for v in vector)


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


class InMemoryVectorIndex:
    """
    Exact cosine-similarity index held in process memory.

    Writers build a new mapping under a lock and swap the reference in one
    assignment; readers take the current reference and never see a mapping
    being mutated. Used for local development, tests and small corpora.
    """

    def __init__(self, dimension: int) -> None:
        if dimension < 1:
            raise ConfigurationError(f"Index dimension must be positive, got {dimension}")
        self._dimension = dimension
        self._entries: dict[str, IndexEntry] = {}
        self._write_lock = asyncio.Lock()

    @property
    def dimension(self) -> int:
        return self._dimension

    async def upsert(self, entries: Sequence[IndexEntry]) -> None:
        check_dimensions(entries, self._dimension)
        async with self._write_lock:
            updated = dict(self._entries)
            for entry in entries:
                # Re-upserting an existing chunk id keeps its original
                # position in the mapping (and therefore its tie-break rank).
                updated[entry.chunk_id] = IndexEntry(
                    chunk_id=entry.chunk_id,
                    vector=normalise(entry.vector),
                    text=entry.text,
                    metadata=dict(entry.metadata),
                )
            self._entries = updated
        logger.debug("Upserted %d entries into in-memory index", len(entries))

    async def search(
        self,
        query_vector: Sequence[float],
        top_k: int,
        filter: MetadataFilter | None = None,
    ) -> list[RetrievalCandidate]:
        if len(query_vector) != self._dimension:
            raise ConfigurationError(
                f"Query vector has dimension {len(query_vector)}; "
                f"index dimension is {self._dimension}"
            )
        if top_k < 1:
            return []

        snapshot = self._entries
        query = normalise(query_vector)
        scored = [
            (sum(q * v for q, v in zip(query, entry.vector, strict=True)), entry)
            for entry in snapshot.values()
            if filter is None or filter.matches(entry.metadata)
        ]
        # list.sort is stable, also with reverse=True: equal scores keep
        # insertion order.
        scored.sort(key=lambda pair: pair[0], reverse=True)

        return [
            RetrievalCandidate(
                chunk_id=entry.chunk_id,
                text=entry.text,
                score=round(score, 6),
                metadata=dict(entry.metadata),
            )
            for score, entry in scored[:top_k]
        ]

    async def delete(self, document_id: str) -> int:
        async with self._write_lock:
            kept = {
                chunk_id: entry
                for chunk_id, entry in self._entries.items()
                if entry.document_id != document_id
            }
            removed = len(self._entries) - len(kept)
            self._entries = kept
        logger.info("Deleted %d index entries for document_id=%s", removed, document_id)
        return removed

    async def delete_chunks(self, chunk_ids: Sequence[str]) -> int:
        targets = set(chunk_ids)
        async with self._write_lock:
            kept = {
                chunk_id: entry
                for chunk_id, entry in self._entries.items()
                if chunk_id not in targets
            }
            removed = len(self._entries) - len(kept)
            self._entries = kept
        return removed

    async def list_chunk_ids(self) -> list[str]:
        return list(self._entries)

    async def count(self, document_id: str | None = None) -> int:
        snapshot = self._entries
        if document_id is None:
            return len(snapshot)
        return sum(1 for e in snapshot.values() if e.document_id == document_id)


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorIndex:
    """
    ChromaDB-backed vector index.

    One collection holds every document; per-document operations use
    Chroma's metadata `where` clause on `document_id`. The Chroma Python
    client is synchronous, so each call runs in asyncio.to_thread().

    Supports in-process mode (default) and client/server mode (chroma_url).
    """

    def __init__(
        self,
        dimension: int,
        collection_name: str = "investment_documents",
        chroma_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        if client is None:
            client = (
                chromadb.HttpClient(host=chroma_url) if chroma_url
                else chromadb.Client()
            )
        self._client = client
        self._dimension = dimension
        # Cosine space, so 1 - distance is a cosine similarity.
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    async def upsert(self, entries: Sequence[IndexEntry]) -> None:
        if not entries:
            return
        check_dimensions(entries, self._dimension)

        def _sync_upsert() -> None:
            self._collection.upsert(
                ids=[e.chunk_id for e in entries],
                embeddings=[list(normalise(e.vector)) for e in entries],
                documents=[e.text for e in entries],
                metadatas=[_sanitise_chroma_metadata(e.metadata) for e in entries],
            )

        await asyncio.to_thread(_sync_upsert)
        logger.info("Upserted %d entries into ChromaDB", len(entries))

    async def search(
        self,
        query_vector: Sequence[float],
        top_k: int,
        filter: MetadataFilter | None = None,
    ) -> list[RetrievalCandidate]:
        if len(query_vector) != self._dimension:
            raise ConfigurationError(
                f"Query vector has dimension {len(query_vector)}; "
                f"index dimension is {self._dimension}"
            )
        if top_k < 1:
            return []

        where = _translate_filter(filter)

        def _sync_search() -> list[RetrievalCandidate]:
            if self._collection.count() == 0:
                return []
            kwargs: dict[str, Any] = {
                "query_embeddings": [list(normalise(query_vector))],
                "n_results": top_k,
                "include": ["documents", "metadatas", "distances"],
            }
            if where:
                kwargs["where"] = where
            results = self._collection.query(**kwargs)

            candidates: list[RetrievalCandidate] = []
            if not results or not results["ids"] or not results["ids"][0]:
                return candidates
            for i, chunk_id in enumerate(results["ids"][0]):
                distance = results["distances"][0][i] if results["distances"] else 0.0
                metadata = dict(results["metadatas"][0][i] or {}) if results["metadatas"] else {}
                text = results["documents"][0][i] if results["documents"] else ""
                candidates.append(RetrievalCandidate(
                    chunk_id=chunk_id,
                    text=text or "",
                    score=round(1.0 - distance, 6),
                    metadata=metadata,
                ))
            return candidates

        return await asyncio.to_thread(_sync_search)

    async def delete(self, document_id: str) -> int:
        def _sync_delete() -> int:
            existing = self._collection.get(where={"document_id": document_id}, include=[])
            ids = existing["ids"] if existing else []
            if ids:
                self._collection.delete(ids=ids)
            return len(ids)

        removed = await asyncio.to_thread(_sync_delete)
        logger.info("Deleted %d ChromaDB entries for document_id=%s", removed, document_id)
        return removed

    async def delete_chunks(self, chunk_ids: Sequence[str]) -> int:
        ids = list(chunk_ids)
        if not ids:
            return 0
        await asyncio.to_thread(self._collection.delete, ids=ids)
        return len(ids)

    async def list_chunk_ids(self) -> list[str]:
        result = await asyncio.to_thread(self._collection.get, include=[])
        return list(result["ids"]) if result else []

    async def count(self, document_id: str | None = None) -> int:
        if document_id is None:
            return await asyncio.to_thread(self._collection.count)
        result = await asyncio.to_thread(
            self._collection.get, where={"document_id": document_id}, include=[],
        )
        return len(result["ids"]) if result else 0


# ---------------------------------------------------------------------------
# Implementation 3: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorIndex:
    """
    pgvector-backed index over the `index_entries` table.

    Filter fields map to typed columns. Upserts use INSERT ... ON CONFLICT
    in one statement; deletes run in one transaction.
    """

    _FILTER_COLUMNS = {
        "document_id": IndexEntryRow.document_id,
        "company_ticker": IndexEntryRow.company_ticker,
        "document_type": IndexEntryRow.document_type,
        "fiscal_year": IndexEntryRow.fiscal_year,
        "ordinal_index": IndexEntryRow.ordinal_index,
        "page_number": IndexEntryRow.page_number,
    }

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dimension: int,
    ) -> None:
        self._session_factory = session_factory
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    async def upsert(self, entries: Sequence[IndexEntry]) -> None:
        if not entries:
            return
        check_dimensions(entries, self._dimension)

        rows = [
            {
                "chunk_id": e.chunk_id,
                "document_id": e.metadata.get("document_id", ""),
                "company_ticker": e.metadata.get("company_ticker"),
                "document_type": e.metadata.get("document_type"),
                "fiscal_year": e.metadata.get("fiscal_year"),
                "ordinal_index": e.metadata.get("ordinal_index"),
                "page_number": e.metadata.get("page_number"),
                "text": e.text,
                "embedding": list(normalise(e.vector)),
            }
            for e in entries
        ]
        stmt = pg_insert(IndexEntryRow).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[IndexEntryRow.chunk_id],
            set_={
                column: stmt.excluded[column]
                for column in rows[0]
                if column != "chunk_id"
            },
        )
        async with session_scope(self._session_factory) as session:
            await session.execute(stmt)
        logger.info("Upserted %d entries into pgvector", len(entries))

    async def search(
        self,
        query_vector: Sequence[float],
        top_k: int,
        filter: MetadataFilter | None = None,
    ) -> list[RetrievalCandidate]:
        if len(query_vector) != self._dimension:
            raise ConfigurationError(
                f"Query vector has dimension {len(query_vector)}; "
                f"index dimension is {self._dimension}"
            )
        if top_k < 1:
            return []

        query = list(normalise(query_vector))
        distance = IndexEntryRow.embedding.cosine_distance(query)
        stmt = (
            select(IndexEntryRow, distance.label("distance"))
            .order_by(distance)
            .limit(top_k)
        )
        if filter is not None:
            for key, value in filter.equals.items():
                stmt = stmt.where(self._column(key) == value)
            for key, values in filter.one_of.items():
                stmt = stmt.where(self._column(key).in_(list(values)))

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return [
            RetrievalCandidate(
                chunk_id=row.chunk_id,
                text=row.text,
                score=round(1.0 - float(dist), 6),
                metadata=_row_metadata(row),
            )
            for row, dist in rows
        ]

    async def delete(self, document_id: str) -> int:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                sql_delete(IndexEntryRow).where(IndexEntryRow.document_id == document_id)
            )
        removed = result.rowcount or 0
        logger.info("Deleted %d pgvector entries for document_id=%s", removed, document_id)
        return removed

    async def delete_chunks(self, chunk_ids: Sequence[str]) -> int:
        ids = list(chunk_ids)
        if not ids:
            return 0
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                sql_delete(IndexEntryRow).where(IndexEntryRow.chunk_id.in_(ids))
            )
        return result.rowcount or 0

    async def list_chunk_ids(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(IndexEntryRow.chunk_id))
            return list(result.scalars().all())

    async def count(self, document_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(IndexEntryRow)
        if document_id is not None:
            stmt = stmt.where(IndexEntryRow.document_id == document_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    def _column(self, key: str):
        column = self._FILTER_COLUMNS.get(key)
        if column is None:
            raise ConfigurationError(
                f"Unknown filter field '{key}'. "
                f"Filterable fields: {sorted(self._FILTER_COLUMNS)}"
            )
        return column


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_vector_index(settings: Settings) -> VectorIndex:
    """
    Build the configured vector index backend.

    - "memory"   → InMemoryVectorIndex (default)
    - "chroma"   → ChromaVectorIndex (in-process, or chroma_url)
    - "pgvector" → PgVectorIndex on settings.database_url
    """
    store_type = settings.vectorstore_type
    dimension = settings.embedding_dimensions

    if store_type == "memory":
        logger.info("Using in-memory vector index (dimension=%d)", dimension)
        return InMemoryVectorIndex(dimension)
    if store_type == "chroma":
        logger.info("Using ChromaDB vector index (collection=%s)", settings.chroma_collection)
        return ChromaVectorIndex(
            dimension,
            collection_name=settings.chroma_collection,
            chroma_url=settings.chroma_url,
        )
    if store_type == "pgvector":
        logger.info("Using pgvector vector index")
        engine = get_engine(settings.database_url, echo=settings.debug)
        return PgVectorIndex(create_session_factory(engine), dimension)

    raise ConfigurationError(
        f"Unknown vectorstore_type '{store_type}'. "
        "Expected 'memory', 'chroma' or 'pgvector'."
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _translate_filter(filter: MetadataFilter | None) -> dict[str, Any] | None:
    """Translate a MetadataFilter to a Chroma `where` clause."""
    if filter is None or filter.is_empty:
        return None
    clauses: list[dict[str, Any]] = []
    for key, value in filter.equals.items():
        clauses.append({key: {"$eq": value}})
    for key, values in filter.one_of.items():
        clauses.append({key: {"$in": list(values)}})
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _sanitise_chroma_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """
    Sanitise metadata for ChromaDB compatibility.

    Chroma accepts only str, int, float and bool values:
    - None → key omitted
    - list → comma-separated string
    - anything else → str()
    """
    sanitised: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised


def _row_metadata(row: IndexEntryRow) -> dict[str, Any]:
    metadata = {
        "document_id": row.document_id,
        "company_ticker": row.company_ticker,
        "document_type": row.document_type,
        "fiscal_year": row.fiscal_year,
        "ordinal_index": row.ordinal_index,
        "page_number": row.page_number,
    }
    return {k: v for k, v in metadata.items() if v is not None}
