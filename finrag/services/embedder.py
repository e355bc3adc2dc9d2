# =============================================================================
# Embedding Service — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Converts chunk and query text into fixed-length vectors using any
# OpenAI-compatible embeddings API (OpenAI, DashScope, Together, ...).
#
# DESIGN DECISION: Protocol (structural typing) over ABC, matching the
# VectorIndex and LLMProvider protocols. Tests pass any object with the
# same async methods.
#
# CONTRACT:
# - embed_batch() preserves input order 1:1. A response with a different
#   number of vectors fails the WHOLE batch (ProviderError); callers never
#   receive a short list they would have to realign.
# - Model and dimension are constructor configuration. A returned vector of
#   the wrong length is a ConfigurationError, not a retryable failure.
# - Transient API errors are retried with exponential backoff (see
#   resilience.py); after the last attempt they surface as ProviderError.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import openai
from openai import AsyncOpenAI

from finrag.config import Settings
from finrag.errors import ConfigurationError, ProviderError
from finrag.services.resilience import RetryPolicy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    """Interface shared by indexing (batch) and querying (single text)."""

    @property
    def model(self) -> str: ...

    @property
    def dimension(self) -> int: ...

    async def embed(self, text: str) -> list[float]:
        """Embed one text (e.g., a user query)."""
        ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed several texts in one provider call, preserving order."""
        ...


# ---------------------------------------------------------------------------
# Implementation: OpenAI-compatible embeddings API
# ---------------------------------------------------------------------------


def is_transient_openai_error(exc: BaseException) -> bool:
    """Connection/timeout, rate-limit and 5xx errors are worth retrying."""
    return isinstance(
        exc,
        (
            openai.APIConnectionError,  # includes APITimeoutError
            openai.RateLimitError,
            openai.InternalServerError,
        ),
    )


class OpenAIEmbeddingProvider:
    """
    Embedding provider backed by `openai.AsyncOpenAI`.

    `dimensions` is sent with every request (text-embedding-3 models
    support shortening), and every returned vector is checked against it.
    """

    provider_name = "openai_embedding"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-large",
        dimensions: int = 1536,
        base_url: str | None = None,
        retry_policy: RetryPolicy | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ConfigurationError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY in .env",
                    provider_name=self.provider_name,
                )
            client_kwargs: dict = {"api_key": api_key, "max_retries": 0}
            if base_url:
                client_kwargs["base_url"] = base_url
            client = AsyncOpenAI(**client_kwargs)

        if dimensions < 1:
            raise ConfigurationError(
                f"Embedding dimension must be positive, got {dimensions}"
            )

        self._client = client
        self._model = model
        self._dimension = dimensions
        self._retry = retry_policy or RetryPolicy()

        logger.info(
            "Initialized embedding client (model=%s, dimensions=%d, base_url=%s)",
            model, dimensions, base_url or "https://api.openai.com/v1",
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> OpenAIEmbeddingProvider:
        return cls(
            api_key=settings.openai_api_key or settings.llm_api_key or "",
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            base_url=settings.embedding_base_url,
            retry_policy=RetryPolicy.from_settings(settings),
        )

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed `texts` with a single API call.

        Raises:
            ProviderError: The API call failed after retries, or the
                response did not contain exactly one vector per input.
            ConfigurationError: A vector has the wrong dimension.
        """
        if not texts:
            return []

        batch = list(texts)

        async def _create():
            return await self._client.embeddings.create(
                model=self._model,
                input=batch,
                dimensions=self._dimension,
            )

        try:
            response = await self._retry.call(_create, is_transient_openai_error)
        except openai.OpenAIError as exc:
            raise ProviderError(
                f"Embedding request failed: {exc}",
                provider_name=self.provider_name,
                transient=is_transient_openai_error(exc),
            ) from exc

        if len(response.data) != len(batch):
            raise ProviderError(
                f"Embedding response returned {len(response.data)} vectors "
                f"for {len(batch)} inputs",
                provider_name=self.provider_name,
            )

        # Sort by item.index so output order always matches input order.
        vectors = [
            list(item.embedding)
            for item in sorted(response.data, key=lambda x: x.index)
        ]
        for vector in vectors:
            if len(vector) != self._dimension:
                raise ConfigurationError(
                    f"Embedding model '{self._model}' returned a "
                    f"{len(vector)}-dimensional vector; configured "
                    f"dimension is {self._dimension}",
                    provider_name=self.provider_name,
                )

        logger.debug(
            "Embedded batch of %d texts (%d prompt tokens)",
            len(batch),
            response.usage.prompt_tokens if response.usage else 0,
        )
        return vectors
