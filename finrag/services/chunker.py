# =============================================================================
# Sentence-Aligned Token Chunker — tiktoken
# =============================================================================
#
# Splits extracted document text into overlapping chunks of bounded token
# length, cutting only at sentence boundaries.
#
# Token counts use tiktoken (cl100k_base by default), the same BPE
# tokenizer family as the OpenAI embedding models, so chunk sizes match
# what the embedding model and the LLM actually consume. The counter is a
# parameter: tests and alternative tokenizers can pass any
# `Callable[[str], int]`.
#
# ALGORITHM:
# 1. Split the text into pages on form feeds (\f), then into sentences
#    after terminal punctuation (. ! ?) followed by whitespace.
# 2. Accumulate sentences into a buffer while the joined buffer text fits
#    chunk_size (counted as one string, exactly like token_count).
# 3. When the next sentence does not fit, emit the buffer and seed the
#    next one with the longest trailing run of sentences that fits within
#    chunk_overlap.
# 4. A sentence longer than chunk_size becomes its own oversized chunk.
#    Content is never truncated or dropped.
# =============================================================================

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

import tiktoken

from finrag.errors import ConfigurationError

logger = logging.getLogger(__name__)

TokenCounter = Callable[[str], int]

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_PAGE_BREAK = "\f"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChunkCandidate:
    """
    A chunk before it is bound to a document id.

    `sentences` holds the sentences joined into `text`; the first
    `overlap_sentences` of them were carried over from the previous chunk.
    """

    text: str
    token_count: int
    ordinal_index: int
    sentences: tuple[str, ...]
    overlap_sentences: int = 0
    page_number: int | None = None

    @property
    def new_sentences(self) -> tuple[str, ...]:
        """Sentences that did not appear in the previous chunk."""
        return self.sentences[self.overlap_sentences:]


@dataclass(frozen=True)
class _Sentence:
    text: str
    tokens: int
    page: int | None


# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached per Encoding
# ---------------------------------------------------------------------------

_encoders: dict[str, tiktoken.Encoding] = {}


def _get_encoder(encoding_name: str) -> tiktoken.Encoding:
    """Lazily initialise and cache a tiktoken encoder."""
    encoder = _encoders.get(encoding_name)
    if encoder is None:
        encoder = tiktoken.get_encoding(encoding_name)
        _encoders[encoding_name] = encoder
    return encoder


def count_tokens(text: str, encoding_name: str = "cl100k_base") -> int:
    """Count subword tokens in `text` with tiktoken."""
    return len(_get_encoder(encoding_name).encode(text))


def make_token_counter(encoding_name: str = "cl100k_base") -> TokenCounter:
    """Return a single-argument counter bound to one tiktoken encoding."""

    def _count(text: str) -> int:
        return count_tokens(text, encoding_name)

    return _count


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def split_sentences(text: str) -> list[str]:
    """
    Split text into sentences after terminal punctuation.

    Text with no terminal punctuation comes back as a single sentence.
    """
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


def chunk_text(
    text: str,
    chunk_size: int = 800,
    chunk_overlap: int = 100,
    count: TokenCounter | None = None,
) -> list[ChunkCandidate]:
    """
    Split text into overlapping, sentence-aligned chunks.

    Args:
        text: Extracted document text. Form feeds mark page breaks.
        chunk_size: Maximum tokens per chunk (exceeded only by a single
            sentence that is itself longer than chunk_size).
        chunk_overlap: Token budget for sentences carried into the next chunk.
        count: Token counter. Defaults to tiktoken cl100k_base.

    Returns:
        ChunkCandidates in document order, ordinal_index starting at 0.

    Raises:
        ConfigurationError: If the size/overlap parameters are inconsistent.
    """
    if chunk_size < 1:
        raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ConfigurationError(
            f"chunk_overlap must be in [0, {chunk_size}), got {chunk_overlap}"
        )

    counter = count or make_token_counter()
    sentences = _collect_sentences(text, counter)
    if not sentences:
        logger.warning("No sentences to chunk (empty text)")
        return []

    chunks: list[ChunkCandidate] = []
    buffer: list[_Sentence] = []
    carried = 0  # leading sentences of `buffer` that came from the last chunk

    def emit(parts: list[_Sentence], overlap: int) -> None:
        chunks.append(_build_candidate(parts, overlap, len(chunks), counter))

    # Fit is measured on the joined text, the same string token_count is
    # computed from: BPE counts are not additive across the joining space.
    for sentence in sentences:
        if sentence.tokens > chunk_size:
            # Oversized sentence: flush what we have, then emit it alone.
            # It cannot fit in any overlap budget, so the next chunk starts empty.
            if len(buffer) > carried:
                emit(buffer, carried)
            emit([sentence], 0)
            buffer, carried = [], 0
            continue

        grown = buffer + [sentence]
        if len(buffer) > carried and _joined_tokens(grown, counter) > chunk_size:
            emit(buffer, carried)
            buffer = _overlap_tail(buffer, chunk_overlap, counter)
            carried = len(buffer)
            grown = buffer + [sentence]

        # Only carried sentences can remain here; drop them from the front
        # until the new sentence fits.
        while buffer and _joined_tokens(grown, counter) > chunk_size:
            buffer.pop(0)
            carried -= 1
            grown = buffer + [sentence]

        buffer = grown

    if len(buffer) > carried:
        emit(buffer, carried)

    logger.info(
        "Chunked %d sentences into %d chunks (chunk_size=%d, overlap=%d)",
        len(sentences), len(chunks), chunk_size, chunk_overlap,
    )
    return chunks


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _collect_sentences(text: str, counter: TokenCounter) -> list[_Sentence]:
    """Split into sentences, tagging each with its 1-based page (if paged)."""
    paged = _PAGE_BREAK in text
    sentences: list[_Sentence] = []
    for page_idx, page_text in enumerate(text.split(_PAGE_BREAK), 1):
        for sentence in split_sentences(page_text):
            sentences.append(_Sentence(
                text=sentence,
                tokens=counter(sentence),
                page=page_idx if paged else None,
            ))
    return sentences


def _joined_tokens(parts: list[_Sentence], counter: TokenCounter) -> int:
    return counter(" ".join(s.text for s in parts)) if parts else 0


def _overlap_tail(
    parts: list[_Sentence],
    budget: int,
    counter: TokenCounter,
) -> list[_Sentence]:
    """Longest trailing run of sentences whose joined text fits in budget."""
    tail: list[_Sentence] = []
    for sentence in reversed(parts):
        trial = [sentence] + tail
        if _joined_tokens(trial, counter) > budget:
            break
        tail = trial
    return tail


def _build_candidate(
    parts: list[_Sentence],
    overlap: int,
    ordinal_index: int,
    counter: TokenCounter,
) -> ChunkCandidate:
    text = " ".join(s.text for s in parts)
    first_new = parts[overlap]
    return ChunkCandidate(
        text=text,
        token_count=counter(text),
        ordinal_index=ordinal_index,
        sentences=tuple(s.text for s in parts),
        overlap_sentences=overlap,
        page_number=first_new.page,
    )
