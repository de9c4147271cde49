"""Unit tests for the embedding cache."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from knowledge_rag.rag.cache import EmbeddingCache


@pytest.fixture
def mock_pipeline():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, True])
    return pipe


@pytest.fixture
def mock_redis(mock_pipeline):
    """Create a mock Redis client."""
    redis = MagicMock()
    redis.mget = AsyncMock()
    redis.pipeline.return_value.__aenter__.return_value = mock_pipeline
    return redis


async def test_get_many_returns_hits_and_misses(mock_redis):
    mock_redis.mget.return_value = [json.dumps([0.1, 0.2]), None]
    cache = EmbeddingCache(mock_redis)

    vectors = await cache.get_many("openai:text-embedding-3-small", ["cached", "missing"])

    assert vectors == [[0.1, 0.2], None]
    keys = mock_redis.mget.await_args.args[0]
    assert all(key.startswith("rag:emb:openai:text-embedding-3-small:") for key in keys)
    assert keys[0] != keys[1]


async def test_keys_depend_on_model_version(mock_redis):
    cache = EmbeddingCache(mock_redis)
    assert cache._make_key("openai:a", "text") != cache._make_key("openai:b", "text")


async def test_read_failure_is_a_miss(mock_redis):
    mock_redis.mget.side_effect = ConnectionError("redis down")
    cache = EmbeddingCache(mock_redis)

    assert await cache.get_many("m", ["a", "b"]) == [None, None]


async def test_corrupt_values_are_misses(mock_redis):
    mock_redis.mget.return_value = [b"[0.1, 0.2", json.dumps({"not": "a vector"}), b"\xff\xfe", json.dumps([0.5, 0.5])]
    cache = EmbeddingCache(mock_redis)

    vectors = await cache.get_many("m", ["truncated", "object", "binary", "good"])

    assert vectors == [None, None, None, [0.5, 0.5]]


async def test_set_many_writes_with_ttl(mock_redis, mock_pipeline):
    cache = EmbeddingCache(mock_redis, ttl=60)

    assert await cache.set_many("m", ["a", "b"], [[1.0], [2.0]]) is True

    assert mock_pipeline.set.call_count == 2
    assert mock_pipeline.set.call_args.kwargs["ex"] == 60
    mock_redis.pipeline.assert_called_once_with(transaction=False)


async def test_write_failure_returns_false(mock_redis, mock_pipeline):
    mock_pipeline.execute.side_effect = ConnectionError("redis down")
    cache = EmbeddingCache(mock_redis)

    assert await cache.set_many("m", ["a"], [[1.0]]) is False


async def test_empty_inputs():
    cache = EmbeddingCache(MagicMock())
    assert await cache.get_many("m", []) == []
    assert await cache.set_many("m", [], []) is True
