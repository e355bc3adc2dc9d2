# =============================================================================
# Query API — Grounded Question Answering & Query History
# =============================================================================
#
# ENDPOINTS:
#   POST /query              — answer a question with citations
#   GET  /queries            — recent queries, newest first
#   GET  /queries/{query_id} — one stored query and its answer
#
# FLOW (POST /query):
#   1. Validate the request (Pydantic)
#   2. RAGService.run_query → retrieve → assemble → generate
#   3. Return answer, resolved citations and timing
#
# This endpoint is thin by design — request validation, error mapping and
# response mapping only.
#
# Error handling (see deps.to_http_error):
#   - nothing matched        → 200, insufficient_context=true
#   - provider outage        → 503
#   - model call failed      → 502
#   - timeout                → 504
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from finrag.api.deps import get_app_settings, get_rag_service, to_http_error
from finrag.config import Settings
from finrag.errors import FinRAGError
from finrag.models.requests import SubmitQueryRequest
from finrag.models.responses import QueryHistoryResponse, QueryResponse
from finrag.services.pipeline import RAGService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Question Answering"])


@router.post(
    "/query",
    response_model=QueryResponse,
    summary="Ask a question about ingested financial documents",
    description=(
        "Retrieves the most relevant passages (optionally restricted by "
        "company and document type) and answers from them only, with "
        "[N] citations resolved to their source chunks."
    ),
)
async def submit_query(
    request: SubmitQueryRequest,
    service: RAGService = Depends(get_rag_service),
    settings: Settings = Depends(get_app_settings),
) -> QueryResponse:
    query = request.to_domain(default_top_k=settings.retrieval_top_k)
    logger.info(
        "Query request: '%s' (company=%s, types=%s, top_k=%d)",
        request.query[:80], request.company_ticker, request.document_types, query.top_k,
    )
    try:
        record = await service.run_query(query)
    except (FinRAGError, ValueError) as e:
        logger.warning("Query failed: %s", e)
        raise to_http_error(e) from e
    return QueryResponse.from_record(record)


@router.get(
    "/queries",
    response_model=QueryHistoryResponse,
    summary="Recent query history",
)
async def query_history(
    limit: int = Query(default=20, ge=1, le=100),
    service: RAGService = Depends(get_rag_service),
) -> QueryHistoryResponse:
    records = await service.get_query_history(limit)
    return QueryHistoryResponse(
        queries=[QueryResponse.from_record(r) for r in records],
        count=len(records),
    )


@router.get(
    "/queries/{query_id}",
    response_model=QueryResponse,
    summary="A stored query and its answer",
)
async def get_query(
    query_id: str,
    service: RAGService = Depends(get_rag_service),
) -> QueryResponse:
    record = await service.get_query(query_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Query '{query_id}' not found")
    return QueryResponse.from_record(record)
