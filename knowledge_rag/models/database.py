"""
Database models for the Knowledge RAG service.

Schema migration happens outside this package; ``Base.metadata`` is only used
directly for development databases and tests.
"""
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from uuid import uuid4
from sqlalchemy import String, Text, Integer, Float, Boolean, DateTime, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from knowledge_rag.config.settings import get_settings

settings = get_settings()

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# One embedding dimension per deployment
EmbeddingType = Vector(settings.rag.embedding_dimension).with_variant(JSON(), "sqlite")


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeBaseEntry(Base):
    """A single ingested source (document, product, ERP record, manual, e-mail)."""

    __tablename__ = "knowledge_base_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint('tenant_id', 'source_type', 'source_id', name='uq_kb_entries_tenant_source'),
        Index('idx_kb_entries_tenant_type', 'tenant_id', 'source_type'),
        Index('idx_kb_entries_tenant_updated', 'tenant_id', 'updated_at'),
    )


class Chunk(Base):
    """An embeddable slice of an entry's normalized content."""

    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    knowledge_base_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("knowledge_base_entries.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[List[float]] = mapped_column(EmbeddingType, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)
    embedding_model_version: Mapped[str] = mapped_column(String(255), nullable=False)
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint('knowledge_base_id', 'chunk_index', name='uq_chunks_entry_index'),
        Index('idx_chunks_tenant', 'tenant_id'),
        Index('idx_chunks_knowledge_base', 'knowledge_base_id'),
    )


class QueryLog(Base):
    """Audit record of a retrieval or generation request."""

    __tablename__ = "rag_query_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(16), nullable=False)
    query_text: Mapped[str] = mapped_column("query", Text, nullable=False)
    source_types: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)
    chunk_ids: Mapped[List[str]] = mapped_column(JSONType, default=list)
    result_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    degraded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processing_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index('idx_query_history_tenant_created', 'tenant_id', 'created_at'),
    )
