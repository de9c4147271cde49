"""Cache Module for the RAG Knowledge Base

Redis-backed cache of embedding vectors, keyed by the embedding model version
and a hash of the embedded text, so re-ingesting unchanged chunks does not
call the provider again. Cache failures never fail the calling operation.
"""

import json
import hashlib
from typing import List, Optional

import structlog
from redis.asyncio import Redis

from knowledge_rag.core.metrics import CACHE_HITS, CACHE_MISSES

logger = structlog.get_logger(__name__)


class EmbeddingCache:
    """Cache for embedding vectors."""

    def __init__(self, redis: Redis, prefix: str = "rag:emb", ttl: int = 7 * 24 * 3600):
        """Initialize the embedding cache.

        Args:
            redis: Redis client
            prefix: Cache key prefix
            ttl: Time to live in seconds
        """
        self.redis = redis
        self.prefix = prefix
        self.default_ttl = ttl

    async def get_many(self, model_version: str, texts: List[str]) -> List[Optional[List[float]]]:
        """Get cached vectors, ``None`` for each miss.

        Args:
            model_version: Embedding provider/model tag
            texts: Texts to look up

        Returns:
            One entry per text, in order
        """
        if not texts:
            return []

        keys = [self._make_key(model_version, text) for text in texts]

        try:
            raw = await self.redis.mget(keys)
        except Exception as e:
            logger.error("Error reading embeddings from cache", count=len(keys), error=str(e))
            CACHE_MISSES.labels(cache_type="embedding").inc(len(keys))
            return [None] * len(texts)

        vectors = [self._decode(key, item) if item else None for key, item in zip(keys, raw)]
        hits = sum(1 for v in vectors if v is not None)
        CACHE_HITS.labels(cache_type="embedding").inc(hits)
        CACHE_MISSES.labels(cache_type="embedding").inc(len(vectors) - hits)
        return vectors

    async def set_many(self, model_version: str, texts: List[str], vectors: List[List[float]]) -> bool:
        """Cache vectors for texts.

        Args:
            model_version: Embedding provider/model tag
            texts: Embedded texts
            vectors: Vectors in the same order

        Returns:
            Success status
        """
        if not texts:
            return True

        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                for text, vector in zip(texts, vectors):
                    pipe.set(self._make_key(model_version, text), json.dumps(vector), ex=self.default_ttl)
                await pipe.execute()

            logger.debug("Embeddings cached", count=len(texts), model_version=model_version)
            return True

        except Exception as e:
            logger.error("Error caching embeddings", count=len(texts), error=str(e))
            return False

    @staticmethod
    def _decode(key: str, item) -> Optional[List[float]]:
        """Decode a cached vector; unreadable values count as misses."""
        try:
            vector = json.loads(item)
        except (TypeError, ValueError) as e:
            logger.warning("Discarding unreadable cached embedding", key=key, error=str(e))
            return None
        if not isinstance(vector, list) or not all(isinstance(x, (int, float)) for x in vector):
            logger.warning("Discarding malformed cached embedding", key=key)
            return None
        return vector

    def _make_key(self, model_version: str, text: str) -> str:
        """Create a cache key from the model version and text hash."""
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{self.prefix}:{model_version}:{digest}"
