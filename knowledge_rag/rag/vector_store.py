"""Knowledge Store for the RAG Knowledge Base

This module persists knowledge base entries and their embedded chunks in SQL,
replaces an entry's chunk set atomically, and runs tenant-scoped similarity
search through a pluggable similarity strategy.
"""

from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Dict, List, Optional
import asyncio
import uuid

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from knowledge_rag.core.exceptions import NotFoundError, StorageError, ValidationError
from knowledge_rag.database.connection import DatabaseManager
from knowledge_rag.models.database import Chunk, KnowledgeBaseEntry, QueryLog
from knowledge_rag.rag.models import (
    ChunkRecord,
    ChunkSummary,
    EntryDetail,
    EntryFilters,
    EntryRecord,
    EntrySummary,
    KnowledgeBaseStats,
    QueryLogEntry,
    RetrievalResult,
    SearchFilters,
    SourceType,
)
from knowledge_rag.rag.similarity import SimilarityStrategy

logger = structlog.get_logger(__name__)

_SUMMARY_COLUMNS = (
    KnowledgeBaseEntry.id,
    KnowledgeBaseEntry.tenant_id,
    KnowledgeBaseEntry.source_type,
    KnowledgeBaseEntry.source_id,
    KnowledgeBaseEntry.title,
    KnowledgeBaseEntry.content_hash,
    KnowledgeBaseEntry.metadata_.label("entry_metadata"),
    KnowledgeBaseEntry.version,
    KnowledgeBaseEntry.created_at,
    KnowledgeBaseEntry.updated_at,
)


def _summary_from_row(row) -> EntrySummary:
    return EntrySummary(
        id=row.id,
        tenant_id=row.tenant_id,
        source_type=row.source_type,
        source_id=row.source_id,
        title=row.title,
        content_hash=row.content_hash,
        metadata=row.entry_metadata or {},
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _summary_from_entry(entry: KnowledgeBaseEntry) -> EntrySummary:
    return EntrySummary(
        id=entry.id,
        tenant_id=entry.tenant_id,
        source_type=entry.source_type,
        source_id=entry.source_id,
        title=entry.title,
        content_hash=entry.content_hash,
        metadata=entry.metadata_ or {},
        version=entry.version,
        created_at=entry.created_at,
        updated_at=entry.updated_at,
    )


class KnowledgeStore:
    """Transactional, tenant-scoped store of entries and chunks."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        strategy: SimilarityStrategy,
        embedding_dimension: int,
        write_retries: int = 3,
    ):
        """Initialize the knowledge store.

        Args:
            db_manager: Initialized database manager
            strategy: Similarity strategy used by ``similarity_search``
            embedding_dimension: Dimension every stored vector must have
            write_retries: Retries for writes that lost a concurrent race
        """
        self.db_manager = db_manager
        self.strategy = strategy
        self.embedding_dimension = embedding_dimension
        self.write_retries = write_retries
        # SQLite has no row locks; serialize writers in-process
        self._write_lock = asyncio.Lock() if db_manager.dialect_name == "sqlite" else None

    def _write_guard(self):
        return self._write_lock if self._write_lock is not None else nullcontext()

    def _validate_upsert(self, entry: EntryRecord, chunks: List[ChunkRecord]) -> None:
        details = {"tenant_id": entry.tenant_id, "source_id": entry.source_id}
        if not chunks:
            raise ValidationError("An entry must have at least one chunk", details=details)

        indices = sorted(c.chunk_index for c in chunks)
        if indices != list(range(len(chunks))):
            raise ValidationError("chunk_index values must be contiguous from 0", details=details)

        for chunk in chunks:
            if chunk.tenant_id != entry.tenant_id:
                raise ValidationError("Chunk tenant does not match entry tenant", details=details)
            if len(chunk.embedding) != self.embedding_dimension:
                raise ValidationError(
                    f"Embedding dimension {len(chunk.embedding)} does not match "
                    f"configured dimension {self.embedding_dimension}",
                    details=details,
                )

    async def upsert(self, entry: EntryRecord, chunks: List[ChunkRecord]) -> EntrySummary:
        """Create an entry or replace an existing entry's chunk set in one transaction.

        The existing entry is matched by ``entry.id`` or by the logical source
        (tenant, source_type, source_id). Its old chunks are deleted and the
        new ones inserted before commit, so readers see either the old or the
        new chunk set.

        Args:
            entry: Entry values
            chunks: Complete new chunk set

        Returns:
            Stored entry summary; ``version > 1`` means an existing entry was replaced

        Raises:
            ValidationError: On invalid chunk sets, checked before any write
            NotFoundError: If ``entry.id`` is set but the tenant has no such entry
            StorageError: On database failures or repeated write conflicts
        """
        self._validate_upsert(entry, chunks)

        attempt = 0
        while True:
            try:
                async with self._write_guard():
                    return await self._upsert_once(entry, chunks)
            except (IntegrityError, StaleDataError) as e:
                if attempt >= self.write_retries:
                    raise StorageError(
                        "upsert",
                        "conflicting concurrent writes",
                        details={"tenant_id": entry.tenant_id, "source_id": entry.source_id, "attempts": attempt + 1},
                    ) from e
                attempt += 1
                logger.warning(
                    "Write conflict on entry upsert, retrying",
                    tenant_id=entry.tenant_id,
                    source_id=entry.source_id,
                    attempt=attempt,
                )
                await asyncio.sleep(0.05 * attempt)
            except SQLAlchemyError as e:
                raise StorageError(
                    "upsert",
                    type(e).__name__,
                    details={"tenant_id": entry.tenant_id, "source_id": entry.source_id},
                ) from e

    async def _upsert_once(self, entry: EntryRecord, chunks: List[ChunkRecord]) -> EntrySummary:
        source_type = SourceType(entry.source_type).value

        async with self.db_manager.session() as session:
            async with session.begin():
                row = await self._lock_existing(session, entry, source_type)
                now = datetime.now(timezone.utc)

                # An explicit id only ever targets an entry the tenant already owns
                if row is None and entry.id:
                    raise NotFoundError(
                        "knowledge_base_entry",
                        entry.id,
                        details={"tenant_id": entry.tenant_id, "knowledge_base_id": entry.id},
                    )

                if row is None:
                    row = KnowledgeBaseEntry(
                        id=str(uuid.uuid4()),
                        tenant_id=entry.tenant_id,
                        source_type=source_type,
                        source_id=entry.source_id,
                        title=entry.title,
                        content=entry.content,
                        content_hash=entry.content_hash,
                        metadata_=entry.metadata,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                else:
                    if row.source_type != source_type:
                        raise ValidationError(
                            "source_type of an existing entry cannot change",
                            details={"knowledge_base_id": row.id, "source_type": row.source_type},
                        )
                    await session.execute(
                        delete(Chunk).where(
                            Chunk.knowledge_base_id == row.id,
                            Chunk.tenant_id == entry.tenant_id,
                        )
                    )
                    row.title = entry.title
                    row.content = entry.content
                    row.content_hash = entry.content_hash
                    row.metadata_ = entry.metadata
                    row.updated_at = now

                # Entry row first so the chunk foreign keys resolve
                await session.flush()

                session.add_all([
                    Chunk(
                        knowledge_base_id=row.id,
                        tenant_id=entry.tenant_id,
                        content=c.content,
                        embedding=c.embedding,
                        chunk_index=c.chunk_index,
                        chunk_size=len(c.content),
                        token_count=c.token_count,
                        embedding_model_version=c.embedding_model_version,
                        metadata_=c.metadata,
                        created_at=now,
                    )
                    for c in chunks
                ])
                await session.flush()

            return _summary_from_entry(row)

    async def _lock_existing(self, session, entry: EntryRecord, source_type: str) -> Optional[KnowledgeBaseEntry]:
        if entry.id:
            stmt = select(KnowledgeBaseEntry).where(
                KnowledgeBaseEntry.id == entry.id,
                KnowledgeBaseEntry.tenant_id == entry.tenant_id,
            )
        elif entry.source_id:
            stmt = select(KnowledgeBaseEntry).where(
                KnowledgeBaseEntry.tenant_id == entry.tenant_id,
                KnowledgeBaseEntry.source_type == source_type,
                KnowledgeBaseEntry.source_id == entry.source_id,
            )
        else:
            return None

        result = await session.execute(stmt.with_for_update())
        return result.scalar_one_or_none()

    async def delete(self, entry_id: str, tenant_id: str) -> bool:
        """Delete an entry and all of its chunks.

        Returns:
            False if no such entry exists for the tenant
        """
        try:
            async with self._write_guard():
                async with self.db_manager.session() as session:
                    async with session.begin():
                        existing = await session.execute(
                            select(KnowledgeBaseEntry.id)
                            .where(KnowledgeBaseEntry.id == entry_id, KnowledgeBaseEntry.tenant_id == tenant_id)
                            .with_for_update()
                        )
                        if existing.scalar_one_or_none() is None:
                            return False

                        await session.execute(
                            delete(Chunk).where(Chunk.knowledge_base_id == entry_id, Chunk.tenant_id == tenant_id)
                        )
                        await session.execute(
                            delete(KnowledgeBaseEntry).where(
                                KnowledgeBaseEntry.id == entry_id,
                                KnowledgeBaseEntry.tenant_id == tenant_id,
                            )
                        )
            return True

        except SQLAlchemyError as e:
            raise StorageError(
                "delete", type(e).__name__, details={"tenant_id": tenant_id, "knowledge_base_id": entry_id}
            ) from e

    async def get_entry(self, entry_id: str, tenant_id: str) -> Optional[EntryDetail]:
        """Get an entry with its content and chunk count."""
        try:
            async with self.db_manager.session() as session:
                entry = (await session.execute(
                    select(KnowledgeBaseEntry).where(
                        KnowledgeBaseEntry.id == entry_id,
                        KnowledgeBaseEntry.tenant_id == tenant_id,
                    )
                )).scalar_one_or_none()
                if entry is None:
                    return None

                chunk_count = (await session.execute(
                    select(func.count(Chunk.id)).where(
                        Chunk.knowledge_base_id == entry_id,
                        Chunk.tenant_id == tenant_id,
                    )
                )).scalar_one()

        except SQLAlchemyError as e:
            raise StorageError(
                "get_entry", type(e).__name__, details={"tenant_id": tenant_id, "knowledge_base_id": entry_id}
            ) from e

        summary = _summary_from_entry(entry)
        return EntryDetail(**summary.model_dump(), content=entry.content, chunk_count=chunk_count)

    async def find_by_source(self, tenant_id: str, source_type: SourceType, source_id: str) -> Optional[EntrySummary]:
        """Find the entry for a logical source."""
        filters = EntryFilters(source_types=[source_type], source_id=source_id, limit=1)
        entries = await self.list_entries(tenant_id, filters)
        return entries[0] if entries else None

    async def list_entries(self, tenant_id: str, filters: Optional[EntryFilters] = None) -> List[EntrySummary]:
        """List entry metadata for a tenant, most recently updated first."""
        filters = filters or EntryFilters()
        stmt = select(*_SUMMARY_COLUMNS).where(KnowledgeBaseEntry.tenant_id == tenant_id)

        if filters.source_types:
            stmt = stmt.where(KnowledgeBaseEntry.source_type.in_([SourceType(s).value for s in filters.source_types]))
        if filters.source_id:
            stmt = stmt.where(KnowledgeBaseEntry.source_id == filters.source_id)
        if filters.title_contains:
            stmt = stmt.where(KnowledgeBaseEntry.title.ilike(f"%{filters.title_contains}%"))
        if filters.updated_since:
            stmt = stmt.where(KnowledgeBaseEntry.updated_at >= filters.updated_since)

        stmt = stmt.order_by(KnowledgeBaseEntry.updated_at.desc(), KnowledgeBaseEntry.id)
        stmt = stmt.limit(filters.limit).offset(filters.offset)

        try:
            async with self.db_manager.session() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise StorageError("list_entries", type(e).__name__, details={"tenant_id": tenant_id}) from e

        return [_summary_from_row(row) for row in rows]

    async def list_chunks(self, entry_id: str, tenant_id: str) -> List[ChunkSummary]:
        """List an entry's chunks in index order, without embeddings."""
        stmt = (
            select(
                Chunk.id,
                Chunk.knowledge_base_id,
                Chunk.chunk_index,
                Chunk.content,
                Chunk.chunk_size,
                Chunk.token_count,
                Chunk.embedding_model_version,
                Chunk.metadata_.label("chunk_metadata"),
            )
            .where(Chunk.knowledge_base_id == entry_id, Chunk.tenant_id == tenant_id)
            .order_by(Chunk.chunk_index)
        )
        try:
            async with self.db_manager.session() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise StorageError(
                "list_chunks", type(e).__name__, details={"tenant_id": tenant_id, "knowledge_base_id": entry_id}
            ) from e

        return [
            ChunkSummary(
                id=row.id,
                knowledge_base_id=row.knowledge_base_id,
                chunk_index=row.chunk_index,
                content=row.content,
                chunk_size=row.chunk_size,
                token_count=row.token_count,
                embedding_model_version=row.embedding_model_version,
                metadata=row.chunk_metadata or {},
            )
            for row in rows
        ]

    async def similarity_search(
        self,
        tenant_id: str,
        query_embedding: List[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 5,
    ) -> List[RetrievalResult]:
        """Rank the tenant's chunks by similarity to a query vector.

        Tenant scoping is applied here, independent of ``filters``.

        Returns:
            Results ordered by descending similarity
        """
        if len(query_embedding) != self.embedding_dimension:
            raise ValidationError(
                f"Query embedding dimension {len(query_embedding)} does not match "
                f"configured dimension {self.embedding_dimension}",
                details={"tenant_id": tenant_id},
            )

        try:
            async with self.db_manager.session() as session:
                results = await self.strategy.search(session, tenant_id, query_embedding, filters, limit)
        except SQLAlchemyError as e:
            raise StorageError(
                "similarity_search", type(e).__name__,
                details={"tenant_id": tenant_id, "strategy": self.strategy.name},
            ) from e

        logger.debug(
            "Similarity search completed",
            tenant_id=tenant_id,
            strategy=self.strategy.name,
            results=len(results),
        )
        return results

    async def stats(self, tenant_id: str) -> KnowledgeBaseStats:
        """Aggregate statistics for a tenant's knowledge base."""
        try:
            async with self.db_manager.session() as session:
                breakdown_rows = (await session.execute(
                    select(KnowledgeBaseEntry.source_type, func.count(KnowledgeBaseEntry.id))
                    .where(KnowledgeBaseEntry.tenant_id == tenant_id)
                    .group_by(KnowledgeBaseEntry.source_type)
                )).all()

                last_updated = (await session.execute(
                    select(func.max(KnowledgeBaseEntry.updated_at)).where(KnowledgeBaseEntry.tenant_id == tenant_id)
                )).scalar_one()

                chunk_count, average_size = (await session.execute(
                    select(func.count(Chunk.id), func.avg(Chunk.chunk_size)).where(Chunk.tenant_id == tenant_id)
                )).one()

        except SQLAlchemyError as e:
            raise StorageError("stats", type(e).__name__, details={"tenant_id": tenant_id}) from e

        breakdown: Dict[str, int] = {source_type: count for source_type, count in breakdown_rows}
        return KnowledgeBaseStats(
            total_knowledge_bases=sum(breakdown.values()),
            total_chunks=chunk_count or 0,
            average_chunk_size=round(float(average_size or 0.0), 2),
            source_type_breakdown=breakdown,
            last_updated=last_updated,
        )

    async def log_query(
        self,
        tenant_id: str,
        operation: str,
        query: str,
        source_types: Optional[List[SourceType]],
        results: List[RetrievalResult],
        processing_time_ms: float,
        degraded: bool = False,
    ) -> Optional[str]:
        """Record a query in the audit trail.

        Logging is best effort: a failed write is logged and never fails the
        query it describes.

        Returns:
            Id of the audit record, None if it could not be written
        """
        query_id = str(uuid.uuid4())
        record = QueryLog(
            id=query_id,
            tenant_id=tenant_id,
            operation=operation,
            query_text=query,
            source_types=[SourceType(s).value for s in source_types] if source_types else None,
            chunk_ids=[r.chunk_id for r in results],
            result_count=len(results),
            degraded=degraded,
            processing_time_ms=processing_time_ms,
            created_at=datetime.now(timezone.utc),
        )
        try:
            async with self._write_guard():
                async with self.db_manager.session() as session:
                    async with session.begin():
                        session.add(record)
        except SQLAlchemyError as e:
            logger.warning(
                "Failed to record query history",
                tenant_id=tenant_id,
                operation=operation,
                error=type(e).__name__,
            )
            return None
        return query_id

    async def recent_queries(self, tenant_id: str, limit: int = 50) -> List[QueryLogEntry]:
        """A tenant's logged queries, newest first."""
        stmt = (
            select(QueryLog)
            .where(QueryLog.tenant_id == tenant_id)
            .order_by(QueryLog.created_at.desc(), QueryLog.id)
            .limit(limit)
        )
        try:
            async with self.db_manager.session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError("recent_queries", type(e).__name__, details={"tenant_id": tenant_id}) from e

        return [
            QueryLogEntry(
                id=row.id,
                tenant_id=row.tenant_id,
                operation=row.operation,
                query=row.query_text,
                source_types=row.source_types,
                chunk_ids=row.chunk_ids or [],
                result_count=row.result_count,
                degraded=row.degraded,
                processing_time_ms=row.processing_time_ms,
                created_at=row.created_at,
            )
            for row in rows
        ]
