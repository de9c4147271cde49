"""RAG Service Module

This module provides the main RAG service that wires the normalizer, chunker,
embedding gateway, knowledge store, retriever and generator together and
exposes the knowledge base operations: ingestion, retrieval, generation,
deletion and statistics.
"""

from typing import List, Optional
import asyncio
import time

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncEngine

from knowledge_rag.config.settings import RAGSettings, Settings, get_settings
from knowledge_rag.core.exceptions import KnowledgeBaseException, TransientProviderError, ValidationError
from knowledge_rag.core.metrics import RAG_ENTRIES_DELETED, record_ingest_metrics
from knowledge_rag.database.connection import DatabaseManager
from knowledge_rag.rag.cache import EmbeddingCache
from knowledge_rag.rag.chunker import Chunker
from knowledge_rag.rag.embeddings import EmbeddingGateway, EmbeddingProvider, create_embedding_provider
from knowledge_rag.rag.generator import Generator, resolve_source_types
from knowledge_rag.rag.models import (
    BatchIngestError,
    BatchIngestResult,
    ChunkRecord,
    ChunkSummary,
    EntryDetail,
    EntryFilters,
    EntryRecord,
    EntrySummary,
    GenerateOptions,
    GenerationResult,
    IngestContent,
    IngestOptions,
    IngestResult,
    KnowledgeBaseStats,
    QueryContext,
    QueryLogEntry,
    QueryOptions,
    QueryResult,
    SourceType,
)
from knowledge_rag.rag.normalizer import Normalizer
from knowledge_rag.rag.retriever import Retriever
from knowledge_rag.rag.similarity import create_similarity_strategy
from knowledge_rag.rag.vector_store import KnowledgeStore
from knowledge_rag.services.llm_service import LLMService

logger = structlog.get_logger(__name__)


def _require_tenant(tenant_id: str) -> None:
    if not tenant_id or not tenant_id.strip():
        raise ValidationError("tenant_id must not be empty")


class RAGService:
    """Main service for the multi-tenant knowledge base."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        store: KnowledgeStore,
        gateway: EmbeddingGateway,
        generator: Generator,
        rag_settings: RAGSettings,
        normalizer: Optional[Normalizer] = None,
        chunker: Optional[Chunker] = None,
    ):
        """Initialize the RAG service.

        Args:
            db_manager: Initialized database manager
            store: Knowledge store
            gateway: Embedding gateway
            generator: Answer generator
            rag_settings: RAG settings used for defaults
            normalizer: Content normalizer, built from settings if omitted
            chunker: Chunker, built from settings if omitted
        """
        self.db_manager = db_manager
        self.store = store
        self.gateway = gateway
        self.generator = generator
        self.rag_settings = rag_settings
        self.normalizer = normalizer or Normalizer(rag_settings.max_content_chars)
        self.chunker = chunker or Chunker(
            rag_settings.chunk_size, rag_settings.chunk_overlap, rag_settings.min_chunk_size
        )
        self.retriever = Retriever(gateway, store)

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        llm_service: Optional[LLMService] = None,
    ) -> "RAGService":
        """Build and initialize the full component graph.

        Args:
            settings: Application settings, the global settings if omitted
            engine: Pre-built SQL engine, created from settings if omitted
            embedding_provider: Embedding provider, created from settings if omitted
            llm_service: LLM service, created from settings if omitted

        Returns:
            Ready-to-use service; call ``close()`` to release its resources
        """
        settings = settings or get_settings()

        db_manager = DatabaseManager(settings.database, settings.redis, engine=engine)
        await db_manager.initialize()

        try:
            strategy = create_similarity_strategy(
                settings.rag.similarity_strategy,
                db_manager.dialect_name,
                settings.rag.linear_scan_max_candidates,
            )
            store = KnowledgeStore(
                db_manager,
                strategy,
                settings.rag.embedding_dimension,
                write_retries=settings.rag.write_retries,
            )

            redis = db_manager.get_redis_client()
            cache = EmbeddingCache(redis, ttl=settings.redis.embedding_cache_ttl) if redis else None

            provider = embedding_provider or create_embedding_provider(settings.rag, settings.ai)
            gateway = EmbeddingGateway.from_settings(provider, settings.rag, cache)

            llm_service = llm_service or LLMService(settings.ai)
            generator = Generator.from_settings(llm_service, settings.ai, settings.rag)
        except Exception:
            await db_manager.close()
            raise

        logger.info(
            "RAG service initialized",
            similarity_strategy=strategy.name,
            embedding_model=gateway.model_version,
            cache_enabled=cache is not None,
        )
        return cls(db_manager, store, gateway, generator, settings.rag)

    async def close(self):
        """Release provider clients and database connections."""
        await self.gateway.close()
        await self.generator.llm_service.close()
        await self.db_manager.close()
        logger.info("RAG service closed")

    async def ingest(
        self,
        tenant_id: str,
        content: IngestContent,
        options: Optional[IngestOptions] = None,
    ) -> IngestResult:
        """Ingest content into a tenant's knowledge base.

        Content is normalized, chunked and embedded before anything is written;
        the entry and its complete chunk set are then stored in one transaction.

        Args:
            tenant_id: Owning tenant
            content: Raw content
            options: Chunking overrides and re-ingestion behaviour

        Returns:
            Ingestion result

        Raises:
            ValidationError: On invalid content or options
            NotFoundError: If ``options.knowledge_base_id`` names no entry of the tenant
            TransientProviderError: When embedding retries are exhausted
            PermanentProviderError: On non-retryable embedding failures
            StorageError: On database failures
        """
        options = options or IngestOptions()
        start_time = time.perf_counter()
        source_type = SourceType(content.source_type).value
        log = logger.bind(tenant_id=tenant_id, operation="ingest", source_type=source_type, source_id=content.source_id)

        try:
            _require_tenant(tenant_id)
            normalized = self.normalizer.normalize(content)
            content_hash = normalized.metadata["content_hash"]

            if options.skip_if_unchanged:
                existing = await self._find_existing(tenant_id, content, options)
                if (
                    existing is not None
                    and existing.content_hash == content_hash
                    and existing.title == normalized.title
                    and existing.metadata == normalized.metadata
                ):
                    log.info("Content unchanged, ingestion skipped", knowledge_base_id=existing.id)
                    return IngestResult(
                        knowledge_base_id=existing.id,
                        chunks_created=0,
                        tokens_processed=0,
                        processing_time_ms=round((time.perf_counter() - start_time) * 1000, 2),
                        skipped=True,
                    )

            chunks = self.chunker.chunk(normalized.text, options.chunk_size, options.chunk_overlap)
            batch = await self.gateway.embed_texts([c.content for c in chunks])

            records = [
                ChunkRecord(
                    tenant_id=tenant_id,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    embedding=vector,
                    token_count=chunk.token_count,
                    embedding_model_version=batch.model_version,
                    metadata={
                        "start_offset": chunk.start_offset,
                        "end_offset": chunk.end_offset,
                    },
                )
                for chunk, vector in zip(chunks, batch.vectors)
            ]
            entry = EntryRecord(
                id=options.knowledge_base_id,
                tenant_id=tenant_id,
                source_type=content.source_type,
                source_id=content.source_id,
                title=normalized.title,
                content=normalized.text,
                content_hash=content_hash,
                metadata=normalized.metadata,
            )
            summary = await self.store.upsert(entry, records)

        except KnowledgeBaseException as e:
            record_ingest_metrics(source_type, time.perf_counter() - start_time, 0, success=False)
            log.error("Ingestion failed", error_code=e.error_code, error=e.message)
            raise

        duration = time.perf_counter() - start_time
        tokens_processed = sum(c.token_count for c in chunks)
        record_ingest_metrics(source_type, duration, len(records))
        log.info(
            "Content ingested",
            knowledge_base_id=summary.id,
            chunks_created=len(records),
            tokens_processed=tokens_processed,
            replaced=summary.version > 1,
            duration_ms=round(duration * 1000, 2),
        )

        return IngestResult(
            knowledge_base_id=summary.id,
            chunks_created=len(records),
            tokens_processed=tokens_processed,
            processing_time_ms=round(duration * 1000, 2),
            replaced=summary.version > 1,
        )

    async def _find_existing(
        self, tenant_id: str, content: IngestContent, options: IngestOptions
    ) -> Optional[EntrySummary]:
        if options.knowledge_base_id:
            return await self.store.get_entry(options.knowledge_base_id, tenant_id)
        if content.source_id:
            return await self.store.find_by_source(tenant_id, content.source_type, content.source_id)
        return None

    async def ingest_batch(
        self,
        tenant_id: str,
        contents: List[IngestContent],
        options: Optional[IngestOptions] = None,
    ) -> BatchIngestResult:
        """Ingest many items concurrently, reporting per-item outcomes.

        A failing item never aborts the rest of the batch.
        """
        _require_tenant(tenant_id)
        # A fixed entry id cannot apply to more than one item
        options = (options or IngestOptions()).model_copy(update={"knowledge_base_id": None})
        semaphore = asyncio.Semaphore(self.rag_settings.batch_concurrency)

        async def run(index: int, content: IngestContent):
            async with semaphore:
                try:
                    return await self.ingest(tenant_id, content, options), None
                except KnowledgeBaseException as e:
                    error_code, message = e.error_code, e.user_message
                except Exception as e:
                    logger.error(
                        "Unexpected error in batch item",
                        tenant_id=tenant_id,
                        index=index,
                        error=str(e),
                        exc_info=True,
                    )
                    error_code, message = "INTERNAL_ERROR", "An unexpected error occurred"
                return None, BatchIngestError(
                    index=index,
                    title=content.title,
                    source_id=content.source_id,
                    error_code=error_code,
                    message=message,
                )

        outcomes = await asyncio.gather(*(run(i, c) for i, c in enumerate(contents)))

        result = BatchIngestResult(processed=len(contents))
        for ingest_result, error in outcomes:
            if error is None:
                result.results.append(ingest_result)
            else:
                result.errors.append(error)
        result.successful = len(result.results)
        result.failed = len(result.errors)

        logger.info(
            "Batch ingestion completed",
            tenant_id=tenant_id,
            processed=result.processed,
            successful=result.successful,
            failed=result.failed,
        )
        return result

    def _query_context(
        self,
        tenant_id: str,
        query_text: str,
        source_types: Optional[List[SourceType]],
        limit: Optional[int],
        similarity_threshold: Optional[float],
        diversity_cap: Optional[int],
    ) -> QueryContext:
        _require_tenant(tenant_id)
        if not query_text or not query_text.strip():
            raise ValidationError("Query must not be empty", details={"tenant_id": tenant_id})

        try:
            return QueryContext(
                query=query_text.strip(),
                tenant_id=tenant_id,
                source_types=source_types,
                limit=limit if limit is not None else self.rag_settings.max_results,
                similarity_threshold=(
                    similarity_threshold if similarity_threshold is not None
                    else self.rag_settings.similarity_threshold
                ),
                diversity_cap=diversity_cap if diversity_cap is not None else self.rag_settings.diversity_cap,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid query options",
                details={"tenant_id": tenant_id, "errors": [err["msg"] for err in e.errors()]},
            ) from e

    async def query(
        self,
        tenant_id: str,
        query_text: str,
        options: Optional[QueryOptions] = None,
    ) -> QueryResult:
        """Retrieve the chunks most relevant to a query.

        Args:
            tenant_id: Tenant whose knowledge base is searched
            query_text: Natural-language query
            options: Filters and ranking overrides

        Returns:
            Ranked chunks; an empty list is a valid result
        """
        options = options or QueryOptions()
        start_time = time.perf_counter()

        context = self._query_context(
            tenant_id,
            query_text,
            options.source_type_filter,
            options.limit,
            options.similarity_threshold,
            options.diversity_cap,
        )
        chunks = await self.retriever.retrieve(context)
        processing_time_ms = round((time.perf_counter() - start_time) * 1000, 2)

        query_id = await self.store.log_query(
            tenant_id, "query", context.query, context.source_types, chunks, processing_time_ms
        )
        return QueryResult(
            query=context.query,
            query_id=query_id,
            chunks=chunks,
            total_found=len(chunks),
            processing_time_ms=processing_time_ms,
        )

    async def generate(
        self,
        tenant_id: str,
        query_text: str,
        options: Optional[GenerateOptions] = None,
    ) -> GenerationResult:
        """Answer a query from the tenant's knowledge base.

        Without an explicit source type filter the query (and intent) is routed
        to the source types most likely to answer it.

        Returns:
            Generation result; check ``degraded`` before trusting the answer

        Raises:
            ValidationError: On an empty tenant or query
            PermanentProviderError: On non-retryable embedding or model failures
        """
        options = options or GenerateOptions()
        start_time = time.perf_counter()

        source_types = options.source_type_filter or resolve_source_types(query_text or "", options.intent)
        context = self._query_context(
            tenant_id,
            query_text,
            source_types,
            options.limit,
            options.similarity_threshold,
            None,
        )

        try:
            results = await self.retriever.retrieve(context)
        except TransientProviderError as e:
            logger.warning(
                "Retrieval unavailable, answering without context",
                tenant_id=tenant_id,
                user_id=options.user_id,
                error_code=e.error_code,
            )
            results = []
            generation = self.generator.retrieval_unavailable(context.query)
        else:
            generation = await self.generator.generate(
                context.query, results, user_id=options.user_id, tenant_id=tenant_id
            )
        generation.processing_time_ms = round((time.perf_counter() - start_time) * 1000, 2)
        generation.query_id = await self.store.log_query(
            tenant_id,
            "generate",
            context.query,
            source_types,
            results,
            generation.processing_time_ms,
            degraded=generation.degraded,
        )

        logger.info(
            "Answer generated",
            tenant_id=tenant_id,
            user_id=options.user_id,
            source_types=[s.value for s in source_types] if source_types else None,
            citations=len(generation.citations),
            degraded=generation.degraded,
            confidence=generation.confidence,
        )
        return generation

    async def delete(self, tenant_id: str, knowledge_base_id: str) -> bool:
        """Delete an entry and all of its chunks.

        Returns:
            False if the tenant has no such entry
        """
        _require_tenant(tenant_id)
        deleted = await self.store.delete(knowledge_base_id, tenant_id)
        if deleted:
            RAG_ENTRIES_DELETED.inc()
            logger.info("Entry deleted", tenant_id=tenant_id, knowledge_base_id=knowledge_base_id)
        else:
            logger.info("Entry to delete not found", tenant_id=tenant_id, knowledge_base_id=knowledge_base_id)
        return deleted

    async def stats(self, tenant_id: str) -> KnowledgeBaseStats:
        """Get knowledge base statistics for a tenant."""
        _require_tenant(tenant_id)
        return await self.store.stats(tenant_id)

    async def list_entries(self, tenant_id: str, filters: Optional[EntryFilters] = None) -> List[EntrySummary]:
        """List a tenant's entries without content."""
        _require_tenant(tenant_id)
        return await self.store.list_entries(tenant_id, filters)

    async def get_entry(self, tenant_id: str, knowledge_base_id: str) -> Optional[EntryDetail]:
        """Get one of a tenant's entries, None if missing."""
        _require_tenant(tenant_id)
        return await self.store.get_entry(knowledge_base_id, tenant_id)

    async def list_chunks(self, tenant_id: str, knowledge_base_id: str) -> List[ChunkSummary]:
        """List an entry's chunks in order."""
        _require_tenant(tenant_id)
        return await self.store.list_chunks(knowledge_base_id, tenant_id)

    async def recent_queries(self, tenant_id: str, limit: int = 50) -> List[QueryLogEntry]:
        """The tenant's logged queries and generations, newest first."""
        _require_tenant(tenant_id)
        return await self.store.recent_queries(tenant_id, limit)

    async def health_check(self) -> dict:
        """Health of the storage backends and configured providers."""
        health = await self.db_manager.health_check()
        health["embedding_model"] = self.gateway.model_version
        health["llm_providers"] = self.generator.llm_service.get_available_providers()
        health["similarity_strategy"] = self.store.strategy.name
        return health
