# =============================================================================
# Unit Tests — Chunker Service
# =============================================================================
#
# Tests the sentence-aligned chunking logic. Most tests use a whitespace
# word counter so token arithmetic is obvious; one test exercises the
# default tiktoken counter (needs the cl100k_base encoding file).
# =============================================================================

import pytest

from finrag.errors import ConfigurationError
from finrag.services.chunker import chunk_text, count_tokens, split_sentences
from tests.helpers import word_count

S1 = "Alpha beta gamma delta."
S2 = "Epsilon zeta eta theta."
S3 = "Iota kappa lambda mu."
S4 = "Nu xi omicron pi."


class TestSplitSentences:
    """Tests for split_sentences()."""

    def test_splits_after_terminal_punctuation(self):
        assert split_sentences("A b. C d! E f? G") == ["A b.", "C d!", "E f?", "G"]

    def test_decimal_points_do_not_split(self):
        assert split_sentences("Revenue was $4.2 billion. Up 15%.") == [
            "Revenue was $4.2 billion.",
            "Up 15%.",
        ]

    def test_no_punctuation_is_one_sentence(self):
        assert split_sentences("revenue grew strongly") == ["revenue grew strongly"]


class TestChunkText:
    """Tests for chunk_text()."""

    def test_empty_text_returns_no_chunks(self):
        assert chunk_text("", 10, 2, count=word_count) == []
        assert chunk_text("   \n ", 10, 2, count=word_count) == []

    def test_three_short_sentences_make_one_chunk(self):
        text = f"{S1} {S2} {S3}"
        chunks = chunk_text(text, chunk_size=50, chunk_overlap=5, count=word_count)
        assert len(chunks) == 1
        assert chunks[0].text == text
        assert chunks[0].ordinal_index == 0
        assert chunks[0].token_count == 12
        assert chunks[0].overlap_sentences == 0

    def test_forced_split_shares_boundary_sentence(self):
        text = f"{S1} {S2} {S3} {S4}"
        chunks = chunk_text(text, chunk_size=10, chunk_overlap=4, count=word_count)

        assert [c.sentences for c in chunks] == [(S1, S2), (S2, S3), (S3, S4)]
        for previous, current in zip(chunks, chunks[1:]):
            assert current.sentences[0] == previous.sentences[-1]
            assert current.overlap_sentences == 1

    def test_zero_overlap_shares_nothing(self):
        text = f"{S1} {S2} {S3} {S4}"
        chunks = chunk_text(text, chunk_size=8, chunk_overlap=0, count=word_count)
        assert [c.sentences for c in chunks] == [(S1, S2), (S3, S4)]
        assert all(c.overlap_sentences == 0 for c in chunks)

    def test_oversized_sentence_is_its_own_chunk(self):
        big = "This sentence has far too many words in it."
        text = f"Short one. {big} Tail end."
        chunks = chunk_text(text, chunk_size=5, chunk_overlap=1, count=word_count)

        assert [c.text for c in chunks] == ["Short one.", big, "Tail end."]
        assert chunks[1].token_count == 9

    def test_text_without_punctuation_is_single_chunk(self):
        text = "revenue grew strongly in the quarter"
        chunks = chunk_text(text, chunk_size=100, chunk_overlap=10, count=word_count)
        assert len(chunks) == 1
        assert chunks[0].text == text

    def test_ordinal_indices_are_sequential(self):
        text = " ".join(f"Sentence number {i} is here." for i in range(20))
        chunks = chunk_text(text, chunk_size=12, chunk_overlap=5, count=word_count)
        assert len(chunks) > 1
        assert [c.ordinal_index for c in chunks] == list(range(len(chunks)))

    def test_new_sentences_cover_input_exactly(self):
        sentences = [
            " ".join(["word"] * (1 + i % 5)) + f" end{i}." for i in range(40)
        ]
        text = " ".join(sentences)
        chunks = chunk_text(text, chunk_size=15, chunk_overlap=6, count=word_count)

        rebuilt = [s for c in chunks for s in c.new_sentences]
        assert rebuilt == sentences

    def test_overlap_and_size_bounds(self):
        sentences = [
            " ".join(["token"] * (1 + (i * 7) % 6)) + "." for i in range(50)
        ]
        chunks = chunk_text(" ".join(sentences), chunk_size=20, chunk_overlap=7, count=word_count)

        for chunk in chunks:
            overlap_tokens = sum(word_count(s) for s in chunk.sentences[:chunk.overlap_sentences])
            assert overlap_tokens <= 7
            assert chunk.token_count <= 20

    def test_size_is_measured_on_joined_text(self):
        # A character counter charges the joining space, like a BPE space
        # token: "Aaaa. Bbbb." is 11, not 5 + 5.
        chunks = chunk_text("Aaaa. Bbbb. Cccc. Dddd.", chunk_size=10, chunk_overlap=5, count=len)

        assert [c.sentences for c in chunks] == [("Aaaa.",), ("Bbbb.",), ("Cccc.",), ("Dddd.",)]
        for chunk in chunks:
            assert chunk.token_count <= 10
            assert chunk.token_count == len(chunk.text)

    def test_overlap_is_measured_on_joined_text(self):
        text = "Aa. Bb. Cc. Dd. Ee. Ff."
        chunks = chunk_text(text, chunk_size=11, chunk_overlap=7, count=len)

        assert all(c.token_count <= 11 for c in chunks)
        for chunk in chunks:
            carried = " ".join(chunk.sentences[:chunk.overlap_sentences])
            assert len(carried) <= 7
        assert [s for c in chunks for s in c.new_sentences] == text.split(" ")

    def test_page_numbers_follow_form_feeds(self):
        text = "First page sentence.\fSecond page sentence. Another one."
        chunks = chunk_text(text, chunk_size=3, chunk_overlap=0, count=word_count)
        assert [c.page_number for c in chunks] == [1, 2, 2]

    def test_no_form_feed_means_no_page_number(self):
        chunks = chunk_text(f"{S1} {S2}", chunk_size=50, chunk_overlap=0, count=word_count)
        assert chunks[0].page_number is None

    def test_overlap_must_be_smaller_than_size(self):
        with pytest.raises(ConfigurationError):
            chunk_text(S1, chunk_size=10, chunk_overlap=10, count=word_count)

    def test_size_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            chunk_text(S1, chunk_size=0, chunk_overlap=0, count=word_count)

    def test_negative_overlap_rejected(self):
        with pytest.raises(ConfigurationError):
            chunk_text(S1, chunk_size=10, chunk_overlap=-1, count=word_count)


class TestTiktokenCounter:
    """The default counter uses subword tokens, not words or characters."""

    def test_count_tokens(self):
        assert count_tokens("hello world") == 2

    def test_default_counter_used_by_chunk_text(self):
        chunks = chunk_text("Revenue increased. Margins improved.", 800, 100)
        assert len(chunks) == 1
        assert chunks[0].token_count == count_tokens(chunks[0].text)
