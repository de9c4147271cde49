"""Unit tests for the retriever."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from knowledge_rag.rag.models import QueryContext, RetrievalResult, SourceType
from knowledge_rag.rag.retriever import Retriever, apply_diversity_cap


def _result(i, similarity, source_type=SourceType.DOCUMENT):
    return RetrievalResult(
        chunk_id=f"chunk-{i}",
        knowledge_base_id=f"entry-{i}",
        content=f"content {i}",
        chunk_index=0,
        similarity=similarity,
        title=f"Title {i}",
        source_type=source_type,
    )


@pytest.fixture
def mock_gateway():
    gateway = MagicMock()
    gateway.embed_query = AsyncMock(return_value=[1.0, 0.0])
    return gateway


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.strategy.name = "linear"
    store.similarity_search = AsyncMock(return_value=[
        _result(1, 0.95, SourceType.PRODUCT),
        _result(2, 0.90, SourceType.PRODUCT),
        _result(3, 0.85, SourceType.PRODUCT),
        _result(4, 0.80, SourceType.MANUAL),
        _result(5, 0.40, SourceType.MANUAL),
    ])
    return store


async def test_threshold_filters_results(mock_gateway, mock_store):
    retriever = Retriever(mock_gateway, mock_store)

    results = await retriever.retrieve(QueryContext(query="pump", tenant_id="t1", limit=10, similarity_threshold=0.5))

    assert [r.chunk_id for r in results] == ["chunk-1", "chunk-2", "chunk-3", "chunk-4"]
    mock_gateway.embed_query.assert_awaited_once_with("pump")


async def test_limit_truncates(mock_gateway, mock_store):
    retriever = Retriever(mock_gateway, mock_store)

    results = await retriever.retrieve(QueryContext(query="pump", tenant_id="t1", limit=2, similarity_threshold=0.0))

    assert [r.chunk_id for r in results] == ["chunk-1", "chunk-2"]
    args = mock_store.similarity_search.await_args.args
    assert args[0] == "t1"
    assert args[3] == 2


async def test_threshold_above_all_scores_is_empty(mock_gateway, mock_store):
    retriever = Retriever(mock_gateway, mock_store)

    results = await retriever.retrieve(QueryContext(query="pump", tenant_id="t1", similarity_threshold=1.5))

    assert results == []


async def test_diversity_cap_overfetches(mock_gateway, mock_store):
    retriever = Retriever(mock_gateway, mock_store)

    results = await retriever.retrieve(
        QueryContext(query="pump", tenant_id="t1", limit=3, similarity_threshold=0.0, diversity_cap=2)
    )

    assert [r.chunk_id for r in results] == ["chunk-1", "chunk-2", "chunk-4"]
    assert mock_store.similarity_search.await_args.args[3] == 9


def test_apply_diversity_cap_preserves_order():
    results = [_result(1, 0.9), _result(2, 0.8, SourceType.EMAIL_ARCHIVE), _result(3, 0.7), _result(4, 0.6)]
    capped = apply_diversity_cap(results, 1)
    assert [r.chunk_id for r in capped] == ["chunk-1", "chunk-2"]


def test_query_context_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        QueryContext(query="pump", tenant_id="t1", limit=0)
