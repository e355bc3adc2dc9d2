# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Defines request/response schemas for the API.
# These are SEPARATE from the domain dataclasses (finrag/services/types.py)
# and from the database rows (finrag/db/models.py): requests convert to
# domain objects with to_domain()/to_metadata(), responses are built with
# from_*() classmethods.
# =============================================================================
