# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# create_app() wires configuration, logging, the RAGService and the
# in-process ingestion worker pool into a FastAPI app.
#
# LIFESPAN:
#   startup  — build RAGService (unless one was injected), create SQL
#              tables when a SQL store is configured, start the worker pool
#   shutdown — drain the worker pool, dispose database engines
#
# Run locally:
#   uvicorn finrag.main:app --reload
# =============================================================================

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from finrag.api import documents, query
from finrag.config import Settings, get_settings
from finrag.db.engine import dispose_engines, get_engine, init_models
from finrag.models.responses import HealthResponse
from finrag.services.pipeline import RAGService, build_rag_service
from finrag.workers.pool import IngestionWorkerPool

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    settings: Settings | None = None,
    service: RAGService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rag_service = service or build_rag_service(settings)

        uses_sql = settings.metadata_store_type == "sql"
        uses_pgvector = settings.vectorstore_type == "pgvector"
        if service is None and (uses_sql or uses_pgvector):
            await init_models(
                get_engine(settings.database_url, echo=settings.debug),
                with_pgvector=uses_pgvector,
            )

        pool = IngestionWorkerPool(rag_service, settings.ingestion_concurrency)
        if settings.ingestion_backend == "pool":
            await pool.start()

        app.state.settings = settings
        app.state.rag_service = rag_service
        app.state.worker_pool = pool
        logger.info(
            "%s v%s started (vectorstore=%s, metadata_store=%s, ingestion=%s)",
            settings.app_name, settings.app_version, settings.vectorstore_type,
            settings.metadata_store_type, settings.ingestion_backend,
        )
        yield
        await pool.stop()
        await dispose_engines()

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Retrieval-and-grounding pipeline for financial documents: "
            "ingest extracted text, ask questions, get cited answers."
        ),
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.include_router(documents.router)
    app.include_router(query.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            version=settings.app_version,
            service=settings.app_name,
            vectorstore=settings.vectorstore_type,
        )

    return app


app = create_app()
