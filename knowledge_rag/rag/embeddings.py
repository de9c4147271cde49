"""Embedding Gateway for the RAG Knowledge Base

This module maps chunk texts to embedding vectors through an external provider.
Requests are batched up to the provider's limit, run under bounded concurrency
with a per-call timeout, and transient failures are retried with bounded
exponential backoff. Every vector is checked against the deployment's embedding
dimension and tagged with the provider/model version that produced it.
"""

from typing import List, Optional
from abc import ABC, abstractmethod
import asyncio

import structlog
import numpy as np
from openai import AsyncOpenAI

from knowledge_rag.config.settings import AISettings, RAGSettings
from knowledge_rag.core.exceptions import (
    ConfigurationError,
    PermanentProviderError,
    TransientProviderError,
)
from knowledge_rag.core.metrics import EMBEDDING_REQUESTS, EMBEDDING_RETRIES
from knowledge_rag.rag.cache import EmbeddingCache
from knowledge_rag.rag.models import EmbeddingBatch
from knowledge_rag.services.llm_service import classify_provider_error

logger = structlog.get_logger(__name__)


class EmbeddingProvider(ABC):
    """A remote or local model that turns texts into vectors."""

    name: str = "base"
    max_batch_size: int = 64

    def __init__(self, model: str):
        self.model = model

    @property
    def model_version(self) -> str:
        """Provenance tag stored with every vector."""
        return f"{self.name}:{self.model}"

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of at most ``max_batch_size`` texts.

        Raises:
            TransientProviderError: On timeouts, rate limits and upstream 5xx
            PermanentProviderError: On credential or request errors
        """

    async def close(self) -> None:
        """Release client resources."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings API."""

    name = "openai"
    max_batch_size = 2048

    def __init__(self, model: str, api_key: Optional[str] = None, timeout: float = 30.0,
                 client: Optional[AsyncOpenAI] = None):
        super().__init__(model)
        if client is None and not api_key:
            raise ConfigurationError("embeddings", "OpenAI API key is required for the openai embedding provider")
        # Retries are owned by the gateway
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=texts)
        except Exception as e:
            raise classify_provider_error(self.name, "embed", e) from e

        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

    async def close(self) -> None:
        await self.client.close()


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """Local sentence-transformers model (``local`` extra)."""

    name = "sentence_transformers"
    max_batch_size = 256

    def __init__(self, model: str):
        super().__init__(model)
        from sentence_transformers import SentenceTransformer

        self._model = SentenceTransformer(model)
        logger.info(
            "Embedding model initialized",
            model=model,
            vector_size=self._model.get_sentence_embedding_dimension()
        )

    async def embed(self, texts: List[str]) -> List[List[float]]:
        loop = asyncio.get_running_loop()
        try:
            embeddings = await loop.run_in_executor(None, self._encode, texts)
        except Exception as e:
            raise PermanentProviderError(self.name, "embed", type(e).__name__) from e
        return [embedding.tolist() for embedding in embeddings]

    def _encode(self, texts: List[str]) -> np.ndarray:
        return self._model.encode(texts, normalize_embeddings=True, convert_to_numpy=True)


def create_embedding_provider(rag: RAGSettings, ai: AISettings) -> EmbeddingProvider:
    """Build the embedding provider named in settings.

    Raises:
        ConfigurationError: For unknown provider names or missing credentials
    """
    if rag.embedding_provider == "openai":
        api_key = ai.openai_api_key.get_secret_value() if ai.openai_api_key else None
        return OpenAIEmbeddingProvider(rag.embedding_model, api_key=api_key, timeout=rag.embedding_timeout)
    if rag.embedding_provider in ("sentence_transformers", "local"):
        return SentenceTransformerEmbeddingProvider(rag.embedding_model)
    raise ConfigurationError("embeddings", f"Unknown embedding provider: {rag.embedding_provider}")


class EmbeddingGateway:
    """Batched, rate-bounded and retrying front door to an embedding provider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        dimension: int,
        batch_size: int = 100,
        max_concurrency: int = 4,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        cache: Optional[EmbeddingCache] = None,
    ):
        """Initialize the gateway.

        Args:
            provider: Embedding provider
            dimension: Expected vector dimension for this deployment
            batch_size: Requested batch size, capped at the provider limit
            max_concurrency: Concurrent provider calls allowed
            timeout: Per-call timeout in seconds
            max_retries: Retries after the first attempt for transient failures
            backoff_base: First backoff delay in seconds
            backoff_max: Upper bound for a single backoff delay
            cache: Optional embedding cache
        """
        self.provider = provider
        self.dimension = dimension
        self.batch_size = max(1, min(batch_size, provider.max_batch_size))
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.cache = cache
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @classmethod
    def from_settings(cls, provider: EmbeddingProvider, rag: RAGSettings,
                      cache: Optional[EmbeddingCache] = None) -> "EmbeddingGateway":
        return cls(
            provider,
            dimension=rag.embedding_dimension,
            batch_size=rag.embedding_batch_size,
            max_concurrency=rag.embedding_max_concurrency,
            timeout=rag.embedding_timeout,
            max_retries=rag.embedding_max_retries,
            backoff_base=rag.embedding_backoff_base,
            backoff_max=rag.embedding_backoff_max,
            cache=cache,
        )

    @property
    def model_version(self) -> str:
        return self.provider.model_version

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)

    async def embed_texts(self, texts: List[str]) -> EmbeddingBatch:
        """Embed texts, preserving order.

        Args:
            texts: Texts to embed

        Returns:
            Vectors tagged with the model version

        Raises:
            TransientProviderError: When retries are exhausted
            PermanentProviderError: On non-retryable provider failures or dimension mismatch
        """
        vectors: List[Optional[List[float]]] = [None] * len(texts)

        if self.cache and texts:
            cached = await self.cache.get_many(self.model_version, texts)
            for i, vector in enumerate(cached):
                if vector is not None and len(vector) == self.dimension:
                    vectors[i] = vector

        pending = [i for i, v in enumerate(vectors) if v is None]
        batches = [pending[i:i + self.batch_size] for i in range(0, len(pending), self.batch_size)]

        if batches:
            tasks = [
                asyncio.ensure_future(self._embed_batch([texts[i] for i in batch]))
                for batch in batches
            ]
            try:
                results = await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise

            fresh_texts, fresh_vectors = [], []
            for batch, batch_vectors in zip(batches, results):
                for i, vector in zip(batch, batch_vectors):
                    vectors[i] = vector
                    fresh_texts.append(texts[i])
                    fresh_vectors.append(vector)

            if self.cache:
                await self.cache.set_many(self.model_version, fresh_texts, fresh_vectors)

        logger.debug(
            "Texts embedded",
            count=len(texts),
            provider_calls=len(batches),
            model_version=self.model_version,
        )
        return EmbeddingBatch(vectors=vectors, model_version=self.model_version, dimension=self.dimension)

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query text."""
        batch = await self.embed_texts([text])
        return batch.vectors[0]

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        attempt = 0
        while True:
            try:
                async with self._semaphore:
                    EMBEDDING_REQUESTS.labels(provider=self.provider.name, model=self.provider.model).inc()
                    vectors = await asyncio.wait_for(self.provider.embed(texts), timeout=self.timeout)
                break
            except asyncio.TimeoutError:
                error = TransientProviderError(
                    self.provider.name, "embed", f"timed out after {self.timeout}s",
                    details={"batch_size": len(texts)},
                )
            except TransientProviderError as e:
                error = e

            if attempt >= self.max_retries:
                logger.error(
                    "Embedding retries exhausted",
                    provider=self.provider.name,
                    attempts=attempt + 1,
                )
                raise error

            delay = self.backoff_delay(attempt)
            EMBEDDING_RETRIES.labels(provider=self.provider.name).inc()
            logger.warning(
                "Transient embedding failure, retrying",
                provider=self.provider.name,
                attempt=attempt + 1,
                delay=delay,
            )
            await asyncio.sleep(delay)
            attempt += 1

        return self._validate(texts, vectors)

    def _validate(self, texts: List[str], vectors: List[List[float]]) -> List[List[float]]:
        if len(vectors) != len(texts):
            raise PermanentProviderError(
                self.provider.name, "embed",
                f"expected {len(texts)} vectors, got {len(vectors)}",
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise PermanentProviderError(
                    self.provider.name, "embed",
                    f"embedding dimension {len(vector)} does not match configured dimension {self.dimension}",
                    details={"model_version": self.model_version},
                )
        return [[float(x) for x in vector] for vector in vectors]

    async def close(self) -> None:
        await self.provider.close()
