# =============================================================================
# Workers Package — Background Ingestion
# =============================================================================
# Two interchangeable backends (settings.ingestion_backend):
#   - pool.py: in-process asyncio worker pool (default, in-memory stores)
#   - celery_app.py / tasks.py: Celery tasks for multi-process deployments,
#     plus the periodic index reconciliation (beat)
#
# Either way the API answers 202 immediately and the client polls
# GET /documents/{document_id}/status.
# =============================================================================
