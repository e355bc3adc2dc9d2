# =============================================================================
# Financial Document RAG
# =============================================================================
# Retrieval-and-grounding pipeline for financial documents: ingest extracted
# filing text, retrieve the most relevant passages under company/type
# filters, and answer questions with citations that resolve to real chunks.
#
# Package structure:
#   finrag/
#   ├── api/          → FastAPI route handlers (documents, query)
#   ├── db/           → Async SQLAlchemy engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Pipeline components (chunker, embedder, vector index,
#   │                    retriever, context, generator, ingestion, RAGService)
#   └── workers/      → In-process worker pool and Celery tasks
# =============================================================================
