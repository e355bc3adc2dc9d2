# =============================================================================
# Test Helpers — Deterministic Fakes for Providers
# =============================================================================
#
# No API keys or network: the embedding fake hashes words into a small
# bag-of-words vector, so texts sharing words are similar; the LLM fake
# returns scripted answers and records every call.
# =============================================================================

from __future__ import annotations

import asyncio
import re
import zlib
from collections.abc import Sequence

from finrag.services.llm import LLMResponse
from finrag.services.types import RetrievalCandidate

DIM = 16

_WORD = re.compile(r"[a-z0-9]+")


def word_count(text: str) -> int:
    """Whitespace token counter, so chunk sizes in tests are easy to reason about."""
    return len(text.split())


def bag_of_words(text: str, dim: int = DIM) -> list[float]:
    vector = [0.0] * dim
    for word in _WORD.findall(text.lower()):
        vector[zlib.crc32(word.encode()) % dim] += 1.0
    return vector


class FakeEmbedder:
    """EmbeddingProvider fake; optionally fails on a given batch number or stalls."""

    def __init__(
        self, dim: int = DIM, fail_on_batch: int | None = None,
        exc: Exception | None = None, delay: float = 0.0,
    ):
        self._dim = dim
        self.delay = delay
        self.fail_on_batch = fail_on_batch
        self.exc = exc
        self.batches: list[list[str]] = []

    @property
    def model(self) -> str:
        return "fake-embedding"

    @property
    def dimension(self) -> int:
        return self._dim

    async def embed(self, text: str) -> list[float]:
        return bag_of_words(text, self._dim)

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        self.batches.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on_batch is not None and len(self.batches) == self.fail_on_batch:
            raise self.exc or RuntimeError("embedding batch failed")
        return [bag_of_words(t, self._dim) for t in texts]


class FakeLLM:
    """LLMProvider fake returning a fixed answer (or raising)."""

    def __init__(self, answer: str = "Revenue was $96.8 billion [1].", exc: Exception | None = None, delay: float = 0.0):
        self.answer = answer
        self.exc = exc
        self.delay = delay
        self.calls: list[dict] = []

    @property
    def model(self) -> str:
        return "fake-llm"

    async def complete(self, messages, system=None, temperature=None, max_tokens=None) -> LLMResponse:
        self.calls.append({"messages": messages, "system": system})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return LLMResponse(content=self.answer, model="fake-llm", input_tokens=10, output_tokens=5)


def candidate(chunk_id: str, text: str = "text", score: float = 0.5, **metadata) -> RetrievalCandidate:
    return RetrievalCandidate(chunk_id=chunk_id, text=text, score=score, metadata=metadata)
