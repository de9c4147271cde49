"""Similarity strategies for the knowledge store.

Two interchangeable ways of ranking a tenant's chunks against a query vector:
the engine's native nearest-neighbour search (pgvector cosine distance) and a
linear scan that ranks a metadata-narrowed candidate set with numpy. Both
scope every statement by tenant on the chunk and on its owning entry.
"""

from typing import List, Optional
from abc import ABC, abstractmethod

import numpy as np
import structlog
from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_rag.core.exceptions import ConfigurationError
from knowledge_rag.models.database import Chunk, KnowledgeBaseEntry
from knowledge_rag.rag.models import RetrievalResult, SearchFilters, SourceType

logger = structlog.get_logger(__name__)

_RESULT_COLUMNS = (
    Chunk.id,
    Chunk.knowledge_base_id,
    Chunk.content,
    Chunk.chunk_index,
    Chunk.metadata_.label("chunk_metadata"),
    KnowledgeBaseEntry.title,
    KnowledgeBaseEntry.source_type,
    KnowledgeBaseEntry.source_id,
)


def tenant_scoped(stmt: Select, tenant_id: str, filters: Optional[SearchFilters]) -> Select:
    """Join chunks to their entries and restrict both to one tenant."""
    stmt = stmt.join(KnowledgeBaseEntry, KnowledgeBaseEntry.id == Chunk.knowledge_base_id).where(
        Chunk.tenant_id == tenant_id,
        KnowledgeBaseEntry.tenant_id == tenant_id,
    )
    if filters and filters.source_types:
        stmt = stmt.where(KnowledgeBaseEntry.source_type.in_([SourceType(s).value for s in filters.source_types]))
    if filters and filters.knowledge_base_ids:
        stmt = stmt.where(Chunk.knowledge_base_id.in_(filters.knowledge_base_ids))
    return stmt


def _to_result(row, similarity: float) -> RetrievalResult:
    return RetrievalResult(
        chunk_id=row.id,
        knowledge_base_id=row.knowledge_base_id,
        content=row.content,
        chunk_index=row.chunk_index,
        similarity=similarity,
        title=row.title,
        source_type=row.source_type,
        source_id=row.source_id,
        metadata=row.chunk_metadata or {},
    )


class SimilarityStrategy(ABC):
    """Ranks a tenant's chunks by cosine similarity to a query vector."""

    name: str = "base"

    @abstractmethod
    async def search(
        self,
        session: AsyncSession,
        tenant_id: str,
        query_embedding: List[float],
        filters: Optional[SearchFilters],
        limit: int,
    ) -> List[RetrievalResult]:
        """Return at most ``limit`` results ordered by descending similarity."""


class NativeVectorSimilarity(SimilarityStrategy):
    """pgvector cosine distance ordered by the database engine."""

    name = "native"

    async def search(self, session, tenant_id, query_embedding, filters, limit):
        distance = Chunk.embedding.cosine_distance(query_embedding).label("distance")
        stmt = tenant_scoped(select(*_RESULT_COLUMNS, distance), tenant_id, filters)
        stmt = stmt.order_by(distance, Chunk.knowledge_base_id, Chunk.chunk_index).limit(limit)

        rows = (await session.execute(stmt)).all()
        return [_to_result(row, 1.0 - float(row.distance)) for row in rows]


class LinearScanSimilarity(SimilarityStrategy):
    """Brute-force cosine similarity over the narrowed candidate set."""

    name = "linear"

    def __init__(self, max_candidates: int = 10_000):
        self.max_candidates = max_candidates

    async def search(self, session, tenant_id, query_embedding, filters, limit):
        stmt = tenant_scoped(select(*_RESULT_COLUMNS, Chunk.embedding), tenant_id, filters)
        stmt = stmt.order_by(Chunk.knowledge_base_id, Chunk.chunk_index)
        rows = (await session.execute(stmt)).all()
        if not rows:
            return []

        if len(rows) > self.max_candidates:
            logger.warning(
                "Linear scan candidate set exceeds threshold, native index recommended",
                tenant_id=tenant_id,
                candidates=len(rows),
                threshold=self.max_candidates,
            )

        matrix = np.asarray([np.asarray(row.embedding, dtype=np.float64) for row in rows])
        query = np.asarray(query_embedding, dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        # Stable sort keeps (entry, chunk_index) order among ties
        order = np.argsort(-scores, kind="stable")[:limit]
        return [_to_result(rows[i], float(scores[i])) for i in order]


def create_similarity_strategy(mode: str, dialect_name: str, max_candidates: int = 10_000) -> SimilarityStrategy:
    """Pick a similarity strategy.

    Args:
        mode: ``native``, ``linear`` or ``auto`` (native on PostgreSQL, linear otherwise)
        dialect_name: SQL dialect of the store's engine
        max_candidates: Linear scan warning threshold

    Raises:
        ConfigurationError: If native search is requested on an engine without it
    """
    if mode == "auto":
        mode = "native" if dialect_name == "postgresql" else "linear"

    if mode == "native":
        if dialect_name != "postgresql":
            raise ConfigurationError("similarity", f"native vector search is not available on {dialect_name}")
        return NativeVectorSimilarity()
    if mode == "linear":
        return LinearScanSimilarity(max_candidates=max_candidates)
    raise ConfigurationError("similarity", f"Unknown similarity strategy: {mode}")
