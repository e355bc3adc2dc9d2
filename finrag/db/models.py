# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# Two independently owned stores live in the same PostgreSQL database:
#
#   Metadata store                         Vector index (pgvector backend)
#   ┌──────────────┐   ┌──────────────┐    ┌───────────────────────────┐
#   │  documents   │1─N│  chunks      │    │  index_entries            │
#   ├──────────────┤   ├──────────────┤    ├───────────────────────────┤
#   │ document_id  │   │ id (PK)      │····│ chunk_id (PK)             │
#   │ ticker, type │   │ document_id  │    │ document_id               │
#   │ stage, error │   │ text, tokens │    │ company_ticker, doc type  │
#   │ chunk_count  │   │ ordinal, page│    │ fiscal_year               │
#   └──────────────┘   └──────────────┘    │ embedding vector(N)       │
#                                          └───────────────────────────┘
#   ┌──────────────┐1─N┌──────────────┐
#   │  queries     │   │  citations   │    (query history)
#   └──────────────┘   └──────────────┘
#
# index_entries deliberately has NO foreign key to chunks: the index is a
# separate store reconciled by chunk id (see services/reconcile.py), not a
# transactional child of the metadata rows.
# =============================================================================

from datetime import date, datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from finrag.config import get_settings
from finrag.services.types import IngestionStage


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class DocumentRow(Base):
    """A financial document and its ingestion status record."""

    __tablename__ = "documents"

    document_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    company_ticker: Mapped[str | None] = mapped_column(String(16), nullable=True)
    document_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    filing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    fiscal_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Ingestion state machine (see IngestionStage)
    stage: Mapped[IngestionStage] = mapped_column(
        Enum(IngestionStage),
        nullable=False,
        default=IngestionStage.QUEUED,
    )
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # cascade="all, delete-orphan": deleting a document deletes its chunks.
    chunks: Mapped[list["ChunkRow"]] = relationship(
        "ChunkRow",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="ChunkRow.ordinal_index",
    )

    def __repr__(self) -> str:
        return f"<DocumentRow(document_id='{self.document_id}', stage={self.stage})>"


class ChunkRow(Base):
    """A chunk record in the metadata store."""

    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(String(300), primary_key=True)
    document_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("documents.document_id", ondelete="CASCADE"),
        nullable=False,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)
    ordinal_index: Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    section: Mapped[str | None] = mapped_column(String(500), nullable=True)

    document: Mapped["DocumentRow"] = relationship(
        "DocumentRow", back_populates="chunks",
    )

    __table_args__ = (
        Index("ix_chunks_document_ordinal", "document_id", "ordinal_index"),
    )


class IndexEntryRow(Base):
    """
    A vector index entry for the pgvector backend.

    Filterable metadata is stored in typed columns so filters become plain
    WHERE clauses. Vectors are L2-normalised before insert.
    """

    __tablename__ = "index_entries"

    chunk_id: Mapped[str] = mapped_column(String(300), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    company_ticker: Mapped[str | None] = mapped_column(String(16), nullable=True)
    document_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fiscal_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ordinal_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding = mapped_column(
        Vector(get_settings().embedding_dimensions), nullable=False,
    )

    __table_args__ = (
        Index(
            "ix_index_entries_embedding_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
        Index("ix_index_entries_filters", "company_ticker", "document_type"),
    )


class QueryRow(Base):
    """A submitted query and its answer (history; never updated)."""

    __tablename__ = "queries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    company_filter: Mapped[str | None] = mapped_column(String(16), nullable=True)
    document_types: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    top_k: Mapped[int] = mapped_column(Integer, nullable=False)
    answer: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    chunks_retrieved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    insufficient_context: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True,
    )

    citations: Mapped[list["CitationRow"]] = relationship(
        "CitationRow",
        back_populates="query",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CitationRow.position",
    )


class CitationRow(Base):
    """A resolved citation from an answer back to a context block."""

    __tablename__ = "citations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    query_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("queries.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_id: Mapped[str] = mapped_column(String(300), nullable=False)
    document_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    excerpt: Mapped[str] = mapped_column(Text, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)

    query: Mapped["QueryRow"] = relationship("QueryRow", back_populates="citations")
