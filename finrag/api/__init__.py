# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - documents.py: ingestion, ingestion status, deletion, index statistics
#   - query.py: cited question answering and query history
#   - deps.py: app.state dependencies and error → HTTP status mapping
# =============================================================================
