"""Retriever for the RAG Knowledge Base

Embeds a query, runs tenant-scoped similarity search and post-filters the
ranked chunks by similarity threshold and an optional per-source-type cap.
"""

from typing import Dict, List
import time

import structlog

from knowledge_rag.core.metrics import record_query_metrics
from knowledge_rag.rag.embeddings import EmbeddingGateway
from knowledge_rag.rag.models import QueryContext, RetrievalResult, SearchFilters
from knowledge_rag.rag.vector_store import KnowledgeStore

logger = structlog.get_logger(__name__)

# Candidate multiplier when a diversity cap may discard top results
_DIVERSITY_OVERFETCH = 3


def apply_diversity_cap(results: List[RetrievalResult], cap: int) -> List[RetrievalResult]:
    """Keep at most ``cap`` results per source type, preserving rank order."""
    per_type: Dict[str, int] = {}
    kept = []
    for result in results:
        key = result.source_type.value
        if per_type.get(key, 0) < cap:
            per_type[key] = per_type.get(key, 0) + 1
            kept.append(result)
    return kept


class Retriever:
    """Query-time retrieval over the knowledge store."""

    def __init__(self, gateway: EmbeddingGateway, store: KnowledgeStore):
        self.gateway = gateway
        self.store = store

    async def retrieve(self, context: QueryContext) -> List[RetrievalResult]:
        """Retrieve the chunks most relevant to a query.

        Args:
            context: Query, tenant and ranking options

        Returns:
            Results at or above the similarity threshold, best first. Empty is valid.
        """
        start_time = time.perf_counter()

        query_embedding = await self.gateway.embed_query(context.query)

        fetch_limit = context.limit
        if context.diversity_cap:
            fetch_limit = context.limit * _DIVERSITY_OVERFETCH

        candidates = await self.store.similarity_search(
            context.tenant_id,
            query_embedding,
            SearchFilters(source_types=context.source_types),
            fetch_limit,
        )

        results = [r for r in candidates if r.similarity >= context.similarity_threshold]
        if context.diversity_cap:
            results = apply_diversity_cap(results, context.diversity_cap)
        results = results[:context.limit]

        duration = time.perf_counter() - start_time
        record_query_metrics(self.store.strategy.name, duration)
        logger.info(
            "Retrieval completed",
            tenant_id=context.tenant_id,
            candidates=len(candidates),
            results=len(results),
            threshold=context.similarity_threshold,
            duration_ms=round(duration * 1000, 2),
        )
        return results
