# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engine/session helpers and ORM models.
#
# Key exports:
#   - engine.get_engine / create_session_factory / session_scope
#   - models.DocumentRow, ChunkRow: metadata store tables
#   - models.IndexEntryRow: pgvector index table
#   - models.QueryRow, CitationRow: query history
# =============================================================================
