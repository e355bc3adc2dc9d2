# =============================================================================
# Unit Tests — Vector Index (in-memory and ChromaDB backends)
# =============================================================================
#
# ChromaDB runs in-process (no external services needed). pgvector tests
# are not included here — they require a running PostgreSQL instance.
# =============================================================================

import asyncio
import itertools

import chromadb
import pytest

from finrag.errors import ConfigurationError
from finrag.services.types import IndexEntry, MetadataFilter
from finrag.services.vectorstore import (
    ChromaVectorIndex,
    InMemoryVectorIndex,
    _translate_filter,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _entry(chunk_id, vector, document_id="doc-1", ticker="TSLA", doc_type="10-K", text=None):
    return IndexEntry(
        chunk_id=chunk_id,
        vector=tuple(vector),
        text=text or f"text of {chunk_id}",
        metadata={
            "document_id": document_id,
            "company_ticker": ticker,
            "document_type": doc_type,
            "ordinal_index": 0,
        },
    )


def _seed(index):
    _run(index.upsert([
        _entry("tsla-1", [1.0, 0.0, 0.0], "tsla-10k", "TSLA", "10-K"),
        _entry("tsla-2", [0.9, 0.1, 0.0], "tsla-10q", "TSLA", "10-Q"),
        _entry("aapl-1", [1.0, 0.0, 0.0], "aapl-10k", "AAPL", "10-K"),
        _entry("aapl-2", [0.0, 1.0, 0.0], "aapl-10k", "AAPL", "10-K"),
    ]))


class TestInMemoryVectorIndex:
    """Tests for InMemoryVectorIndex."""

    def test_search_best_first(self):
        index = InMemoryVectorIndex(3)
        _seed(index)
        results = _run(index.search([1.0, 0.0, 0.0], top_k=4))
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert results[-1].chunk_id == "aapl-2"

    def test_top_k_limits_results(self):
        index = InMemoryVectorIndex(3)
        _seed(index)
        assert len(_run(index.search([1.0, 0.0, 0.0], top_k=2))) == 2

    def test_empty_index_returns_empty_list(self):
        index = InMemoryVectorIndex(3)
        assert _run(index.search([1.0, 0.0, 0.0], top_k=5)) == []

    def test_company_filter_never_returns_other_ticker(self):
        index = InMemoryVectorIndex(3)
        _seed(index)
        flt = MetadataFilter(equals={"company_ticker": "TSLA"})
        results = _run(index.search([1.0, 0.0, 0.0], top_k=10, filter=flt))
        assert {r.metadata["company_ticker"] for r in results} == {"TSLA"}
        assert len(results) == 2

    def test_one_of_filter(self):
        index = InMemoryVectorIndex(3)
        _seed(index)
        flt = MetadataFilter(one_of={"document_type": ("10-Q",)})
        results = _run(index.search([1.0, 0.0, 0.0], top_k=10, filter=flt))
        assert [r.chunk_id for r in results] == ["tsla-2"]

    def test_non_matching_filter_returns_empty(self):
        index = InMemoryVectorIndex(3)
        _seed(index)
        flt = MetadataFilter(equals={"company_ticker": "MSFT"})
        assert _run(index.search([1.0, 0.0, 0.0], top_k=10, filter=flt)) == []

    def test_ties_keep_insertion_order(self):
        index = InMemoryVectorIndex(3)
        _seed(index)
        results = _run(index.search([1.0, 0.0, 0.0], top_k=2))
        # tsla-1 and aapl-1 have identical vectors; tsla-1 was inserted first.
        assert [r.chunk_id for r in results] == ["tsla-1", "aapl-1"]

    def test_upsert_replaces_by_chunk_id(self):
        index = InMemoryVectorIndex(3)
        _seed(index)
        _run(index.upsert([_entry("tsla-1", [0.0, 0.0, 1.0], "tsla-10k", text="replaced")]))

        assert _run(index.count()) == 4
        top = _run(index.search([0.0, 0.0, 1.0], top_k=1))[0]
        assert top.chunk_id == "tsla-1"
        assert top.text == "replaced"

    def test_dimension_mismatch_rejects_whole_write(self):
        index = InMemoryVectorIndex(3)
        with pytest.raises(ConfigurationError):
            _run(index.upsert([
                _entry("ok", [1.0, 0.0, 0.0]),
                _entry("bad", [1.0, 0.0]),
            ]))
        assert _run(index.count()) == 0

    def test_query_dimension_mismatch(self):
        index = InMemoryVectorIndex(3)
        with pytest.raises(ConfigurationError):
            _run(index.search([1.0, 0.0], top_k=1))

    def test_delete_removes_all_entries_of_document(self):
        index = InMemoryVectorIndex(3)
        _seed(index)
        assert _run(index.delete("aapl-10k")) == 2
        assert _run(index.count("aapl-10k")) == 0
        assert _run(index.count()) == 2

    def test_delete_chunks_and_list(self):
        index = InMemoryVectorIndex(3)
        _seed(index)
        assert _run(index.delete_chunks(["tsla-1", "missing"])) == 1
        assert sorted(_run(index.list_chunk_ids())) == ["aapl-1", "aapl-2", "tsla-2"]

    def test_concurrent_search_sees_whole_writes(self):
        index = InMemoryVectorIndex(3)

        async def scenario():
            async def writer():
                for i in range(20):
                    await index.upsert([
                        _entry(f"c{i}-{j}", [1.0, float(j), 0.0], f"doc-{i}") for j in range(5)
                    ])
                    await asyncio.sleep(0)

            async def reader():
                counts = []
                for _ in range(40):
                    results = await index.search([1.0, 0.0, 0.0], top_k=1000)
                    counts.append(len(results))
                    await asyncio.sleep(0)
                return counts

            _, counts = await asyncio.gather(writer(), reader())
            return counts

        counts = _run(scenario())
        assert all(c % 5 == 0 for c in counts)


class TestChromaVectorIndex:
    """Tests for ChromaVectorIndex (in-process mode)."""

    _names = itertools.count()

    def _make_index(self) -> ChromaVectorIndex:
        """Fresh collection per test to avoid dimension conflicts."""
        return ChromaVectorIndex(
            dimension=3,
            collection_name=f"test_collection_{next(self._names)}",
            client=chromadb.Client(),
        )

    def test_search_returns_results(self):
        index = self._make_index()
        _seed(index)
        results = _run(index.search([1.0, 0.0, 0.0], top_k=2))
        assert len(results) == 2
        assert results[0].score >= results[1].score
        assert results[0].score == pytest.approx(1.0, abs=1e-4)

    def test_filters(self):
        index = self._make_index()
        _seed(index)
        flt = MetadataFilter(
            equals={"company_ticker": "TSLA"},
            one_of={"document_type": ("10-K",)},
        )
        results = _run(index.search([1.0, 0.0, 0.0], top_k=10, filter=flt))
        assert [r.chunk_id for r in results] == ["tsla-1"]

    def test_empty_collection(self):
        assert _run(self._make_index().search([1.0, 0.0, 0.0], top_k=3)) == []

    def test_delete_by_document(self):
        index = self._make_index()
        _seed(index)
        assert _run(index.delete("aapl-10k")) == 2
        assert _run(index.count()) == 2

    def test_upsert_is_idempotent(self):
        index = self._make_index()
        _seed(index)
        _seed(index)
        assert _run(index.count()) == 4

    def test_dimension_mismatch(self):
        with pytest.raises(ConfigurationError):
            _run(self._make_index().upsert([_entry("bad", [1.0])]))


class TestTranslateFilter:
    def test_empty_filter(self):
        assert _translate_filter(MetadataFilter()) is None

    def test_single_clause_not_wrapped(self):
        assert _translate_filter(MetadataFilter(equals={"company_ticker": "TSLA"})) == {
            "company_ticker": {"$eq": "TSLA"},
        }

    def test_multiple_clauses_use_and(self):
        where = _translate_filter(MetadataFilter(
            equals={"company_ticker": "TSLA"},
            one_of={"document_type": ("10-K", "10-Q")},
        ))
        assert where == {"$and": [
            {"company_ticker": {"$eq": "TSLA"}},
            {"document_type": {"$in": ["10-K", "10-Q"]}},
        ]}
