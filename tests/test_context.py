# =============================================================================
# Unit Tests — Context Assembler
# =============================================================================

from finrag.services.context import ContextAssembler, format_context, source_ref
from tests.helpers import candidate


class TestSourceRef:
    def test_full_metadata(self):
        c = candidate(
            "c1", company_ticker="TSLA", document_type="10-K",
            document_id="tsla-2023-10k", page_number=12,
        )
        assert source_ref(c) == "TSLA 10-K (tsla-2023-10k), page 12"

    def test_document_id_only(self):
        assert source_ref(candidate("c1", document_id="doc-9")) == "doc-9"

    def test_falls_back_to_chunk_id(self):
        assert source_ref(candidate("doc_chunk_3")) == "doc_chunk_3"


class TestContextAssembler:
    """Tests for ContextAssembler.assemble()."""

    def test_positions_follow_candidate_order(self):
        blocks = ContextAssembler().assemble([
            candidate("b", text="second best", score=0.9),
            candidate("a", text="third best", score=0.4),
        ])
        assert [(b.position, b.candidate.chunk_id) for b in blocks] == [(1, "b"), (2, "a")]

    def test_duplicate_chunk_ids_are_dropped(self):
        blocks = ContextAssembler().assemble([
            candidate("x", text="same"),
            candidate("y", text="same"),
            candidate("x", text="same"),
        ])
        # Identical text under different ids is kept.
        assert [b.candidate.chunk_id for b in blocks] == ["x", "y"]
        assert [b.position for b in blocks] == [1, 2]

    def test_text_is_never_truncated(self):
        long_text = "revenue " * 2000
        blocks = ContextAssembler().assemble([candidate("c", text=long_text)])
        assert blocks[0].text == long_text

    def test_empty_input(self):
        assert ContextAssembler().assemble([]) == []


class TestFormatContext:
    def test_numbered_blocks_with_separator(self):
        blocks = ContextAssembler().assemble([
            candidate("c1", text="Revenue was up.", document_id="d1"),
            candidate("c2", text="Costs were down.", document_id="d2"),
        ])
        assert format_context(blocks) == (
            "[1] (d1):\nRevenue was up.\n\n---\n\n[2] (d2):\nCosts were down."
        )
