# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for:
# 1. Request body validation (automatic 422 errors for invalid data)
# 2. OpenAPI documentation generation (visible at /docs)
#
# They are translated into the plain dataclasses of finrag/services/types.py
# before reaching the pipeline.
# =============================================================================

from datetime import date

from pydantic import BaseModel, ConfigDict, Field, field_validator

from finrag.services.types import DocumentMetadata, QueryRequest


class IngestRequest(BaseModel):
    """
    Request body for POST /documents/{document_id}/ingest.

    The text is the output of file-format extraction (done upstream); form
    feed characters mark page breaks.
    """

    text: str = Field(
        ...,
        min_length=1,
        description="Extracted plain text of the document",
    )
    company_ticker: str = Field(
        ...,
        min_length=1,
        max_length=16,
        description="Company ticker symbol, e.g. 'TSLA'",
        examples=["TSLA"],
    )
    document_type: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Document type, e.g. '10-K', '10-Q', 'earnings_call'",
        examples=["10-K"],
    )
    filing_date: date | None = Field(default=None, description="Filing date (ISO 8601)")
    fiscal_year: int | None = Field(
        default=None,
        ge=1900,
        le=2100,
        description="Fiscal year. Defaults to the filing date's year.",
    )

    @field_validator("company_ticker")
    @classmethod
    def _normalise_ticker(cls, value: str) -> str:
        return value.strip().upper()

    def to_metadata(self) -> DocumentMetadata:
        return DocumentMetadata(
            company_ticker=self.company_ticker,
            document_type=self.document_type,
            filing_date=self.filing_date,
            fiscal_year=self.fiscal_year,
        )


class SubmitQueryRequest(BaseModel):
    """
    Request body for POST /query — ask a question over ingested documents.

    Example:
        {
            "query": "What was Tesla's automotive revenue in 2023?",
            "company_ticker": "TSLA",
            "document_types": ["10-K"],
            "top_k": 5
        }
    """

    query: str = Field(
        ...,
        min_length=3,
        max_length=2000,
        description="The question to answer",
        examples=["What was Tesla's automotive revenue in 2023?"],
    )
    company_ticker: str | None = Field(
        default=None,
        max_length=16,
        description="Restrict retrieval to one company. Omit to search all.",
    )
    document_types: list[str] = Field(
        default_factory=list,
        description="Restrict retrieval to these document types. Empty = all.",
    )
    top_k: int | None = Field(
        default=None,
        ge=1,
        description=(
            "Number of passages to retrieve. Defaults to the configured "
            "retrieval_top_k; capped at retrieval_max_top_k."
        ),
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "query": "What was Tesla's automotive revenue in 2023?",
                    "company_ticker": "TSLA",
                    "document_types": ["10-K"],
                    "top_k": 5,
                },
                {
                    "query": "Which risks did management highlight?",
                },
            ]
        }
    )

    def to_domain(self, default_top_k: int) -> QueryRequest:
        return QueryRequest(
            text=self.query,
            company_filter=self.company_ticker or None,
            document_type_filter=tuple(self.document_types),
            top_k=self.top_k if self.top_k is not None else default_top_k,
        )
