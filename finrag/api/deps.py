# =============================================================================
# API Dependencies — Service Injection & Error Mapping
# =============================================================================
#
# The RAGService and the ingestion worker pool are built once in the app
# lifespan (finrag/main.py) and stored on app.state. Route handlers get
# them through FastAPI dependencies, so tests can swap them via
# dependency_overrides or by passing a prebuilt service to create_app().
#
# ERROR MAPPING (typed pipeline errors → HTTP):
#   DocumentNotFoundError → 404
#   ValueError            → 422  (request the schema could not catch)
#   ConfigurationError    → 500  (fatal misconfiguration)
#   GenerationError       → 502  (found context, model call failed)
#   ProviderError         → 503  (provider outage, try again)
#   QueryTimeoutError     → 504
# NoResultsError never reaches the API: it becomes an insufficient-context
# answer with HTTP 200.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from finrag.config import Settings
from finrag.errors import (
    ConfigurationError,
    DocumentNotFoundError,
    FinRAGError,
    GenerationError,
    ProviderError,
    QueryTimeoutError,
)
from finrag.services.pipeline import RAGService
from finrag.workers.pool import IngestionWorkerPool

logger = logging.getLogger(__name__)


def get_rag_service(request: Request) -> RAGService:
    return request.app.state.rag_service


def get_worker_pool(request: Request) -> IngestionWorkerPool | None:
    return getattr(request.app.state, "worker_pool", None)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def to_http_error(exc: FinRAGError | ValueError) -> HTTPException:
    """Translate a pipeline exception into an HTTPException."""
    if isinstance(exc, DocumentNotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, QueryTimeoutError):
        return HTTPException(status_code=504, detail=exc.message)
    if isinstance(exc, ProviderError):
        return HTTPException(
            status_code=503,
            detail=f"Upstream provider unavailable, please try again: {exc}",
        )
    if isinstance(exc, GenerationError):
        return HTTPException(
            status_code=502,
            detail=f"Relevant documents were found but the answer could not be generated: {exc}",
        )
    if isinstance(exc, ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return HTTPException(status_code=500, detail=f"Service configuration error: {exc}")
    if isinstance(exc, ValueError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
