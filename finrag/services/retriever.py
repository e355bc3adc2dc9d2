# =============================================================================
# Retriever — Query Embedding + Filtered Similarity Search
# =============================================================================
#
# Turns a QueryRequest into an ordered list of RetrievalCandidates:
#
#   query text ──▶ embed ──▶ index.search(vector, top_k, filter) ──▶ candidates
#
# Filters:
#   company_filter        → equals["company_ticker"]  (upper-cased ticker)
#   document_type_filter  → one_of["document_type"]
#
# DESIGN DECISION: No similarity threshold and no re-sorting.
# The index returns best-first with its own tie order; the retriever passes
# that order through untouched so context positions (and therefore
# citation numbers) are reproducible for a given index state.
#
# Zero candidates raises NoResultsError, which callers treat as an expected
# state ("nothing in scope"), distinct from a provider failure.
# =============================================================================

from __future__ import annotations

import logging

from finrag.errors import NoResultsError
from finrag.services.embedder import EmbeddingProvider
from finrag.services.types import MetadataFilter, QueryRequest, RetrievalCandidate
from finrag.services.vectorstore import VectorIndex

logger = logging.getLogger(__name__)


def build_filter(request: QueryRequest) -> MetadataFilter:
    """Translate the request's optional filters into a MetadataFilter."""
    equals: dict[str, str] = {}
    one_of: dict[str, tuple[str, ...]] = {}

    if request.company_filter:
        equals["company_ticker"] = request.company_filter.strip().upper()
    if request.document_type_filter:
        one_of["document_type"] = tuple(request.document_type_filter)

    return MetadataFilter(equals=equals, one_of=one_of)


class Retriever:
    """Embeds the query and searches the vector index."""

    def __init__(self, embedder: EmbeddingProvider, index: VectorIndex) -> None:
        self._embedder = embedder
        self._index = index

    async def retrieve(self, request: QueryRequest) -> list[RetrievalCandidate]:
        """
        Return at most request.top_k candidates, best first.

        Raises:
            NoResultsError: Nothing in the index matches the query/filters.
            ProviderError: The query could not be embedded.
            ConfigurationError: Query/index dimension mismatch.
        """
        vector = await self._embedder.embed(request.text)
        metadata_filter = build_filter(request)

        candidates = await self._index.search(
            vector,
            request.top_k,
            None if metadata_filter.is_empty else metadata_filter,
        )

        logger.info(
            "Retrieved %d candidates (top_k=%d, company=%s, types=%s)",
            len(candidates),
            request.top_k,
            request.company_filter or "*",
            ",".join(request.document_type_filter) or "*",
        )

        if not candidates:
            raise NoResultsError()
        return candidates
