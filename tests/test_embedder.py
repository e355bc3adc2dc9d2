# =============================================================================
# Unit Tests — Embedding Provider (OpenAI-compatible)
# =============================================================================
#
# The AsyncOpenAI client is replaced by a mock, so no API key or network is
# needed. Retry waits are zero.
# =============================================================================

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from finrag.errors import ConfigurationError, ProviderError
from finrag.services.embedder import OpenAIEmbeddingProvider
from finrag.services.resilience import RetryPolicy

_NO_WAIT = RetryPolicy(max_attempts=3, backoff_min_seconds=0.0, backoff_max_seconds=0.0)
_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _response(vectors: list[list[float]], order: list[int] | None = None):
    indices = order or list(range(len(vectors)))
    return SimpleNamespace(
        data=[SimpleNamespace(index=i, embedding=vectors[i]) for i in indices],
        usage=SimpleNamespace(prompt_tokens=7),
    )


def _provider(create: AsyncMock, dimensions: int = 3) -> OpenAIEmbeddingProvider:
    client = MagicMock()
    client.embeddings.create = create
    return OpenAIEmbeddingProvider(
        api_key="unused",
        dimensions=dimensions,
        retry_policy=_NO_WAIT,
        client=client,
    )


class TestEmbedBatch:
    """Tests for OpenAIEmbeddingProvider.embed_batch()."""

    def test_preserves_input_order(self):
        vectors = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]
        create = AsyncMock(return_value=_response(vectors, order=[2, 0, 1]))
        provider = _provider(create)

        result = _run(provider.embed_batch(["a", "b", "c"]))

        assert result == vectors
        kwargs = create.call_args.kwargs
        assert kwargs["input"] == ["a", "b", "c"]
        assert kwargs["dimensions"] == 3

    def test_empty_input_makes_no_call(self):
        create = AsyncMock()
        assert _run(_provider(create).embed_batch([])) == []
        create.assert_not_called()

    def test_short_response_fails_whole_batch(self):
        create = AsyncMock(return_value=_response([[1.0, 0.0, 0.0]]))
        with pytest.raises(ProviderError):
            _run(_provider(create).embed_batch(["a", "b"]))

    def test_wrong_dimension_is_configuration_error(self):
        create = AsyncMock(return_value=_response([[1.0, 0.0]]))
        with pytest.raises(ConfigurationError):
            _run(_provider(create).embed_batch(["a"]))

    def test_embed_single_text(self):
        create = AsyncMock(return_value=_response([[0.5, 0.5, 0.0]]))
        assert _run(_provider(create).embed("revenue")) == [0.5, 0.5, 0.0]


class TestRetry:
    """Transient errors are retried, others are not."""

    def test_transient_error_is_retried(self):
        create = AsyncMock(side_effect=[
            openai.APIConnectionError(request=_REQUEST),
            _response([[1.0, 0.0, 0.0]]),
        ])
        result = _run(_provider(create).embed_batch(["a"]))
        assert result == [[1.0, 0.0, 0.0]]
        assert create.call_count == 2

    def test_transient_error_exhausts_attempts(self):
        create = AsyncMock(side_effect=openai.APIConnectionError(request=_REQUEST))
        with pytest.raises(ProviderError) as excinfo:
            _run(_provider(create).embed_batch(["a"]))
        assert excinfo.value.transient is True
        assert create.call_count == 3

    def test_bad_request_is_not_retried(self):
        error = openai.BadRequestError(
            "bad input",
            response=httpx.Response(400, request=_REQUEST),
            body=None,
        )
        create = AsyncMock(side_effect=error)
        with pytest.raises(ProviderError) as excinfo:
            _run(_provider(create).embed_batch(["a"]))
        assert excinfo.value.transient is False
        assert create.call_count == 1


class TestConstruction:
    def test_missing_api_key_raises(self):
        with pytest.raises(ConfigurationError, match="API key"):
            OpenAIEmbeddingProvider(api_key="")

    def test_model_and_dimension_are_configuration(self):
        provider = _provider(AsyncMock(), dimensions=1536)
        assert provider.dimension == 1536
        assert provider.model == "text-embedding-3-large"
