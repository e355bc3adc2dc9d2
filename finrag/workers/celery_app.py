# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs document ingestion out of process and the periodic index
# reconciliation job:
#   intake → ingest_document task → chunk → embed → store
#   beat   → reconcile_index task (every reconcile_interval_seconds)
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
# │(producer)│     │(broker)│    │  (consumer)  │     │(result)│
# └──────────┘     └───────┘     └──────────────┘     └───────┘
#    db 0 ──────────┘                                    └── db 1
#
# Workers share state with the API only through the configured stores, so
# the Celery path needs metadata_store_type="sql" and a shared vector index
# (pgvector, or Chroma in client/server mode).
# =============================================================================

from celery import Celery

from finrag.config import get_settings

settings = get_settings()

# ---------------------------------------------------------------------------
# Create Celery Application
# ---------------------------------------------------------------------------
celery_app = Celery(
    "finrag.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# ---------------------------------------------------------------------------
# Celery Configuration
# ---------------------------------------------------------------------------
celery_app.conf.update(
    # --- Serialization ---
    # JSON only: pickle can execute arbitrary code during deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge after completion so a crashed worker's task is re-queued.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # One task at a time per worker process: ingestion jobs are long.
    worker_prefetch_multiplier=1,

    # --- Concurrency ---
    # Same bound as the in-process pool.
    worker_concurrency=settings.ingestion_concurrency,

    # --- Timeouts ---
    task_soft_time_limit=300,
    task_time_limit=600,

    # --- Results ---
    result_expires=3600,

    # --- Periodic Jobs ---
    beat_schedule={
        "reconcile-index": {
            "task": "reconcile_index",
            "schedule": float(settings.reconcile_interval_seconds),
        },
    },

    # --- Task Discovery ---
    include=["finrag.workers.tasks"],
)
