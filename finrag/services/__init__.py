# =============================================================================
# Services Package — Pipeline Components
# =============================================================================
#   - chunker.py: sentence-aligned, token-bounded chunking (tiktoken)
#   - embedder.py: batch embeddings via any OpenAI-compatible API
#   - vectorstore.py: VectorIndex protocol (in-memory, Chroma, pgvector)
#   - retriever.py / context.py / generator.py: the query path
#   - llm.py: multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - ingestion.py: per-document ingestion state machine
#   - metadata_store.py: documents, chunks, statuses and query history
#   - reconcile.py: orphan index entry clean-up
#   - pipeline.py: RAGService composition root and LangGraph query graph
# =============================================================================
