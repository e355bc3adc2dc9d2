# =============================================================================
# Context Assembler — Numbered Context Blocks for the LLM
# =============================================================================
#
# Candidates become ContextBlocks with stable 1-based positions. The LLM
# cites blocks by position ([1], [2], ...) and the generator resolves those
# markers back to chunks, so position N must always mean the N-th block
# handed to the model.
#
# Rules:
# - Positions follow candidate order (no re-ranking).
# - Full chunk text, never truncated; the assembler never drops blocks.
#   Staying within the model's context budget is the caller's job
#   (smaller top_k).
# - Deduplicate by exact chunk_id only. Two different chunks with similar
#   text are both kept.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from finrag.services.types import ContextBlock, RetrievalCandidate

logger = logging.getLogger(__name__)


def source_ref(candidate: RetrievalCandidate) -> str:
    """
    Human-readable provenance label built from whatever metadata exists.

    Example: "TSLA 10-K (tsla-2023-10k), page 12"
    """
    metadata = candidate.metadata
    head = " ".join(
        str(metadata[key])
        for key in ("company_ticker", "document_type")
        if metadata.get(key)
    )
    document_id = metadata.get("document_id")
    if document_id:
        head = f"{head} ({document_id})" if head else str(document_id)
    if not head:
        head = candidate.chunk_id

    page = metadata.get("page_number")
    return f"{head}, page {page}" if page else head


class ContextAssembler:
    """Orders and numbers retrieval candidates for prompting."""

    def assemble(self, candidates: Sequence[RetrievalCandidate]) -> list[ContextBlock]:
        seen: set[str] = set()
        blocks: list[ContextBlock] = []
        for candidate in candidates:
            if candidate.chunk_id in seen:
                continue
            seen.add(candidate.chunk_id)
            blocks.append(ContextBlock(
                position=len(blocks) + 1,
                text=candidate.text,
                source_ref=source_ref(candidate),
                candidate=candidate,
            ))

        if len(blocks) < len(candidates):
            logger.debug(
                "Dropped %d duplicate candidates", len(candidates) - len(blocks),
            )
        return blocks


def format_context(blocks: Sequence[ContextBlock]) -> str:
    """
    Format blocks as the numbered context section of the prompt.

    Example output:
        [1] (TSLA 10-K (tsla-2023-10k), page 12):
        Revenue for 2023 was $96.8 billion...

        ---

        [2] (TSLA 10-Q (tsla-2024-q1)):
        Operating expenses decreased by 3%...
    """
    return "\n\n---\n\n".join(
        f"[{block.position}] ({block.source_ref}):\n{block.text}"
        for block in blocks
    )
