# =============================================================================
# Unit Tests — Retriever
# =============================================================================

import asyncio

import pytest

from finrag.errors import NoResultsError
from finrag.services.retriever import Retriever, build_filter
from finrag.services.types import IndexEntry, QueryRequest
from finrag.services.vectorstore import InMemoryVectorIndex
from tests.helpers import DIM, FakeEmbedder, bag_of_words


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _index_with(*rows):
    index = InMemoryVectorIndex(DIM)
    entries = [
        IndexEntry(
            chunk_id=chunk_id,
            vector=tuple(bag_of_words(text)),
            text=text,
            metadata={"document_id": doc_id, "company_ticker": ticker, "document_type": doc_type},
        )
        for chunk_id, text, doc_id, ticker, doc_type in rows
    ]
    _run(index.upsert(entries))
    return index


_ROWS = (
    ("t1", "Tesla revenue grew to 96.8 billion", "tsla-10k", "TSLA", "10-K"),
    ("t2", "Tesla quarterly revenue and margins", "tsla-10q", "TSLA", "10-Q"),
    ("a1", "Apple revenue grew on iPhone sales", "aapl-10k", "AAPL", "10-K"),
)


class TestBuildFilter:
    """Tests for build_filter()."""

    def test_no_filters_is_empty(self):
        assert build_filter(QueryRequest(text="q")).is_empty

    def test_company_is_upper_cased(self):
        flt = build_filter(QueryRequest(text="q", company_filter=" tsla "))
        assert flt.equals == {"company_ticker": "TSLA"}

    def test_document_types_become_one_of(self):
        flt = build_filter(QueryRequest(text="q", document_type_filter=("10-K", "10-Q")))
        assert flt.one_of == {"document_type": ("10-K", "10-Q")}
        assert flt.equals == {}


class TestRetriever:
    """Tests for Retriever.retrieve()."""

    def test_company_filter_is_applied(self):
        retriever = Retriever(FakeEmbedder(), _index_with(*_ROWS))
        results = _run(retriever.retrieve(
            QueryRequest(text="revenue grew", company_filter="TSLA", top_k=5),
        ))
        assert results
        assert all(r.metadata["company_ticker"] == "TSLA" for r in results)

    def test_type_filter_is_applied(self):
        retriever = Retriever(FakeEmbedder(), _index_with(*_ROWS))
        results = _run(retriever.retrieve(
            QueryRequest(text="revenue", document_type_filter=("10-Q",), top_k=5),
        ))
        assert [r.chunk_id for r in results] == ["t2"]

    def test_top_k_bounds_results(self):
        retriever = Retriever(FakeEmbedder(), _index_with(*_ROWS))
        results = _run(retriever.retrieve(QueryRequest(text="revenue", top_k=2)))
        assert len(results) == 2

    def test_order_is_index_order(self):
        index = _index_with(*_ROWS)
        retriever = Retriever(FakeEmbedder(), index)
        request = QueryRequest(text="Apple revenue grew", top_k=3)

        results = _run(retriever.retrieve(request))
        direct = _run(index.search(bag_of_words(request.text), 3))
        assert [r.chunk_id for r in results] == [r.chunk_id for r in direct]

    def test_no_match_raises_no_results(self):
        retriever = Retriever(FakeEmbedder(), _index_with(*_ROWS))
        with pytest.raises(NoResultsError):
            _run(retriever.retrieve(QueryRequest(text="revenue", company_filter="MSFT")))

    def test_empty_index_raises_no_results(self):
        retriever = Retriever(FakeEmbedder(), InMemoryVectorIndex(DIM))
        with pytest.raises(NoResultsError):
            _run(retriever.retrieve(QueryRequest(text="revenue")))
