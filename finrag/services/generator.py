# =============================================================================
# Answer Generator — Grounded Answers with Verified Citations
# =============================================================================
#
# Takes the user's question and the numbered context blocks, asks the LLM
# for an answer grounded ONLY in that context, then resolves every [N]
# citation marker in the answer back to its block.
#
# DESIGN DECISION: Lenient citation validation.
# Markers outside [1, len(blocks)] are discarded and logged at WARNING;
# they never fail the answer. The answer text is returned as the model
# wrote it, but the citation list only ever contains real blocks.
#
# DESIGN DECISION: No retries here.
# Transient errors are retried in the LLM client layer (llm.py). Whatever
# still fails is wrapped in GenerationError so the API can tell "found
# context but couldn't answer" apart from "nothing found".
#
# Empty context short-circuits to a fixed insufficient-information answer
# WITHOUT calling the model.
# =============================================================================

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from finrag.errors import GenerationError, ProviderError
from finrag.services.context import format_context
from finrag.services.llm import LLMProvider
from finrag.services.types import AnswerResult, Citation, ContextBlock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompt & Constants
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = (
    "You are a financial analyst assistant. Answer the user's question "
    "using ONLY the provided context from financial documents.\n\n"
    "Rules:\n"
    "- Base your answer exclusively on the provided context\n"
    "- Cite every claim using [1], [2], etc. matching the context numbers\n"
    "- Be precise with financial figures — never round or estimate\n"
    "- If the context does not contain enough information to answer, "
    "say so clearly\n"
    "- Keep your answer concise and directly relevant"
)

INSUFFICIENT_INFORMATION = (
    "I don't have enough information in the available documents to answer "
    "this question. Try broadening the company or document type filters, "
    "or check that the relevant documents have been ingested."
)

CITATION_PATTERN = re.compile(r"\[(\d+)\]")

EXCERPT_LENGTH = 200


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def extract_citation_markers(answer_text: str) -> list[int]:
    """Distinct [N] markers in ascending order."""
    return sorted({int(match) for match in CITATION_PATTERN.findall(answer_text)})


def make_excerpt(text: str) -> str:
    if len(text) <= EXCERPT_LENGTH:
        return text
    return text[:EXCERPT_LENGTH] + "..."


def insufficient_answer(model: str = "n/a") -> AnswerResult:
    return AnswerResult(
        answer_text=INSUFFICIENT_INFORMATION,
        citations=(),
        model=model,
        chunks_retrieved=0,
        insufficient_context=True,
    )


class AnswerGenerator:
    """Calls the LLM with numbered context and validates its citations."""

    def __init__(self, llm: LLMProvider) -> None:
        self._llm = llm

    async def generate(
        self,
        query_text: str,
        blocks: Sequence[ContextBlock],
    ) -> AnswerResult:
        """
        Generate a cited answer.

        Raises:
            GenerationError: The LLM call failed.
        """
        if not blocks:
            logger.info("No context blocks, returning insufficient-information answer")
            return insufficient_answer()

        user_message = (
            f"Question: {query_text}\n\n"
            f"Context ({len(blocks)} document excerpts):\n\n"
            f"{format_context(blocks)}"
        )

        logger.info("Generating answer from %d context blocks", len(blocks))

        try:
            response = await self._llm.complete(
                messages=[{"role": "user", "content": user_message}],
                system=SYSTEM_PROMPT,
            )
        except ProviderError as exc:
            raise GenerationError(
                f"Answer generation failed: {exc.message}",
                provider_name=exc.provider_name,
            ) from exc
        except Exception as exc:
            raise GenerationError(f"Answer generation failed: {exc}") from exc

        citations = resolve_citations(response.content, blocks)

        logger.info(
            "Answer complete: model=%s, tokens=%d+%d, citations=%d",
            response.model, response.input_tokens, response.output_tokens,
            len(citations),
        )

        return AnswerResult(
            answer_text=response.content,
            citations=tuple(citations),
            model=response.model,
            chunks_retrieved=len(blocks),
            insufficient_context=False,
        )


def resolve_citations(answer_text: str, blocks: Sequence[ContextBlock]) -> list[Citation]:
    """Map [N] markers to blocks; out-of-range markers are dropped."""
    citations: list[Citation] = []
    for position in extract_citation_markers(answer_text):
        if not 1 <= position <= len(blocks):
            logger.warning(
                "Discarding citation marker [%d]: only %d context blocks",
                position, len(blocks),
            )
            continue
        block = blocks[position - 1]
        citations.append(Citation(
            position=position,
            chunk_id=block.candidate.chunk_id,
            document_id=block.candidate.metadata.get("document_id"),
            excerpt=make_excerpt(block.text),
            score=block.candidate.score,
        ))
    return citations
