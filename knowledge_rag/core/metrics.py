"""
Metrics configuration for monitoring and observability.
"""
from prometheus_client import Counter, Histogram
import structlog

logger = structlog.get_logger(__name__)

# Ingestion metrics
RAG_ENTRIES_INGESTED = Counter('knowledge_rag_entries_ingested_total', 'Total entries ingested', ['source_type', 'outcome'])
RAG_CHUNKS_CREATED = Counter('knowledge_rag_chunks_created_total', 'Total chunks written', ['source_type'])
RAG_INGEST_TIME = Histogram('knowledge_rag_ingest_duration_seconds', 'Ingestion time', ['source_type'])
RAG_ENTRIES_DELETED = Counter('knowledge_rag_entries_deleted_total', 'Total entries deleted')

# Retrieval metrics
RAG_QUERIES = Counter('knowledge_rag_queries_total', 'Total retrieval queries', ['strategy'])
RAG_QUERY_TIME = Histogram('knowledge_rag_query_duration_seconds', 'Retrieval query time', ['strategy'])

# Generation metrics
RAG_GENERATIONS = Counter('knowledge_rag_generations_total', 'Total generations', ['outcome'])
RAG_GENERATION_TIME = Histogram('knowledge_rag_generation_duration_seconds', 'Generation time')

# Provider metrics
EMBEDDING_REQUESTS = Counter('knowledge_rag_embedding_requests_total', 'Total embedding provider calls', ['provider', 'model'])
EMBEDDING_RETRIES = Counter('knowledge_rag_embedding_retries_total', 'Total embedding retries', ['provider'])
AI_MODEL_REQUESTS = Counter('knowledge_rag_ai_model_requests_total', 'Total AI model requests', ['provider', 'model'])
AI_MODEL_TOKENS_USED = Counter('knowledge_rag_ai_model_tokens_total', 'Total tokens used', ['provider', 'model'])

# Cache metrics
CACHE_HITS = Counter('knowledge_rag_cache_hits_total', 'Total cache hits', ['cache_type'])
CACHE_MISSES = Counter('knowledge_rag_cache_misses_total', 'Total cache misses', ['cache_type'])


def record_ingest_metrics(source_type: str, duration: float, chunks: int, success: bool = True):
    """Record ingestion-related metrics."""
    try:
        outcome = "success" if success else "failure"
        RAG_ENTRIES_INGESTED.labels(source_type=source_type, outcome=outcome).inc()
        if success:
            RAG_CHUNKS_CREATED.labels(source_type=source_type).inc(chunks)
            RAG_INGEST_TIME.labels(source_type=source_type).observe(duration)
    except Exception as e:
        logger.error("Failed to record ingest metrics", error=str(e))


def record_query_metrics(strategy: str, duration: float):
    """Record retrieval metrics."""
    try:
        RAG_QUERIES.labels(strategy=strategy).inc()
        RAG_QUERY_TIME.labels(strategy=strategy).observe(duration)
    except Exception as e:
        logger.error("Failed to record query metrics", error=str(e))


def record_generation_metrics(duration: float, degraded: bool):
    """Record generation metrics."""
    try:
        RAG_GENERATIONS.labels(outcome="degraded" if degraded else "grounded").inc()
        RAG_GENERATION_TIME.observe(duration)
    except Exception as e:
        logger.error("Failed to record generation metrics", error=str(e))


def record_ai_model_metrics(provider: str, model: str, tokens: int):
    """Record language model usage."""
    try:
        AI_MODEL_REQUESTS.labels(provider=provider, model=model).inc()
        AI_MODEL_TOKENS_USED.labels(provider=provider, model=model).inc(tokens)
    except Exception as e:
        logger.error("Failed to record AI model metrics", error=str(e))
