"""Test configuration for pytest.

Provides an in-memory SQLite knowledge store and deterministic fakes for the
embedding and language model providers.
"""

import hashlib
import math
import re
from typing import List

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from knowledge_rag.config.settings import AISettings, DatabaseSettings, RAGSettings
from knowledge_rag.database.connection import DatabaseManager
from knowledge_rag.models.database import Base
from knowledge_rag.rag.embeddings import EmbeddingGateway, EmbeddingProvider
from knowledge_rag.rag.generator import Generator
from knowledge_rag.rag.models import IngestContent, SourceType
from knowledge_rag.rag.service import RAGService
from knowledge_rag.rag.similarity import LinearScanSimilarity
from knowledge_rag.rag.vector_store import KnowledgeStore
from knowledge_rag.services.llm_service import BaseLLMProvider, LLMRequest, LLMResponse, LLMService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_DIMENSION = 256

WORD_RE = re.compile(r"[a-z]{3,}")
STOP_WORDS = {"the", "and", "for", "with", "what", "which", "how", "are", "was", "this", "that", "from", "does"}


def content_words(text: str) -> List[str]:
    return [w for w in WORD_RE.findall(text.lower()) if w not in STOP_WORDS]


def hash_embed(text: str, dimension: int = TEST_DIMENSION) -> List[float]:
    """Normalized bag-of-words vector with md5 bucketing."""
    vector = [0.0] * dimension
    for word in content_words(text):
        vector[int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimension] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic local embedder: texts sharing words get similar vectors."""

    name = "hashing"
    max_batch_size = 16

    def __init__(self, dimension: int = TEST_DIMENSION):
        super().__init__("bag-of-words")
        self.dimension = dimension
        self.calls: List[List[str]] = []

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [hash_embed(text, self.dimension) for text in texts]


class ContextEchoLLMProvider(BaseLLMProvider):
    """Answers with the context lines that share words with the question."""

    name = "openai"

    def __init__(self):
        self.requests: List[LLMRequest] = []

    async def generate(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        question = set(content_words(request.messages[-1].content))
        context = request.system_prompt.split("Context Information:")[1].split("Instructions:")[0]

        lines = [
            line.strip()
            for line in context.splitlines()
            if line.strip() and not line.startswith("[") and question & set(content_words(line))
        ]
        if lines:
            answer = "According to [1]: " + " ".join(lines)
        else:
            answer = "There is not enough information in the context to answer."

        return LLMResponse(content=answer, model=request.model, tokens_used=len(answer.split()))


@pytest.fixture
async def engine():
    """In-memory SQLite engine with the knowledge base schema."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_manager(engine):
    manager = DatabaseManager(DatabaseSettings(url_override=TEST_DATABASE_URL), engine=engine)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def rag_settings():
    return RAGSettings(
        embedding_dimension=TEST_DIMENSION,
        embedding_backoff_base=0.0,
        embedding_max_retries=2,
        similarity_threshold=0.3,
        chunk_size=400,
        chunk_overlap=80,
        min_chunk_size=5,
    )


@pytest.fixture
def ai_settings():
    return AISettings(default_model="gpt-4o-mini", request_timeout=5.0, max_concurrency=2)


@pytest.fixture
def embedding_provider():
    return HashingEmbeddingProvider()


@pytest.fixture
def llm_provider():
    return ContextEchoLLMProvider()


@pytest.fixture
def store(db_manager):
    return KnowledgeStore(db_manager, LinearScanSimilarity(), TEST_DIMENSION)


@pytest.fixture
def gateway(embedding_provider, rag_settings):
    return EmbeddingGateway.from_settings(embedding_provider, rag_settings)


@pytest.fixture
def llm_service(ai_settings, llm_provider):
    return LLMService(ai_settings, providers={"openai": llm_provider})


@pytest.fixture
def generator(llm_service, ai_settings, rag_settings):
    return Generator.from_settings(llm_service, ai_settings, rag_settings)


@pytest.fixture
def rag_service(db_manager, store, gateway, generator, rag_settings):
    return RAGService(db_manager, store, gateway, generator, rag_settings)


@pytest.fixture
def pump_manual():
    return IngestContent(
        title="Pump P-300 Manual",
        content=(
            "Pump P-300 Manual\n\n"
            "The P-300 pump delivers a steady flow.\n"
            "Flow Rate: 300 L/min\n"
            "Max Pressure: 8 bar"
        ),
        source_type=SourceType.MANUAL,
        source_id="manual-p300",
    )
