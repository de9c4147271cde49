"""RAG Knowledge Base Data Models

This module defines the data models shared by the ingestion pipeline, the
knowledge store, retrieval and generation, including the per-source payload
variants accepted at ingestion.
"""

from typing import Dict, List, Optional, Any, Union, Type, Literal
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class SourceType(str, Enum):
    """Kind of source an entry was ingested from."""
    DOCUMENT = "document"
    PRODUCT = "product"
    ERP_RECORD = "erp_record"
    MANUAL = "manual"
    EMAIL_ARCHIVE = "email_archive"


# Source payload variants

class DocumentPayload(BaseModel):
    """Free-form document text."""
    source_type: Literal["document"] = "document"
    text: str
    mime_type: Literal["text/plain", "text/markdown", "text/html"] = "text/plain"


class ManualPayload(BaseModel):
    """Product or process manual."""
    source_type: Literal["manual"] = "manual"
    text: str
    product_model: Optional[str] = None
    version: Optional[str] = None
    mime_type: Literal["text/plain", "text/markdown", "text/html"] = "text/plain"


class ProductPayload(BaseModel):
    """Catalog product record."""
    source_type: Literal["product"] = "product"
    name: str
    sku: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[str] = None
    price: Optional[float] = None
    currency: str = "EUR"
    stock_quantity: Optional[float] = None
    specifications: Dict[str, Any] = Field(default_factory=dict)
    attributes: Dict[str, Any] = Field(default_factory=dict)


class ErpRecordPayload(BaseModel):
    """ERP entity (customer, order, invoice, ...) flattened to named fields."""
    source_type: Literal["erp_record"] = "erp_record"
    entity_type: str
    reference: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    items: List[Dict[str, Any]] = Field(default_factory=list)
    notes: Optional[str] = None


class EmailArchivePayload(BaseModel):
    """Archived e-mail message."""
    source_type: Literal["email_archive"] = "email_archive"
    subject: str
    sender: str
    recipients: List[str] = Field(default_factory=list)
    sent_at: Optional[datetime] = None
    body: str
    is_html: bool = False


SourcePayload = Union[
    DocumentPayload, ManualPayload, ProductPayload, ErpRecordPayload, EmailArchivePayload
]

PAYLOAD_TYPES: Dict[SourceType, Type[BaseModel]] = {
    SourceType.DOCUMENT: DocumentPayload,
    SourceType.MANUAL: ManualPayload,
    SourceType.PRODUCT: ProductPayload,
    SourceType.ERP_RECORD: ErpRecordPayload,
    SourceType.EMAIL_ARCHIVE: EmailArchivePayload,
}


# Ingestion

class IngestContent(BaseModel):
    """Raw content submitted for ingestion."""
    title: str
    content: Union[str, Dict[str, Any]]
    source_type: SourceType
    source_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IngestOptions(BaseModel):
    """Per-call ingestion overrides."""
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    skip_if_unchanged: bool = False
    knowledge_base_id: Optional[str] = None


class IngestResult(BaseModel):
    """Outcome of a single ingestion."""
    knowledge_base_id: str
    chunks_created: int
    tokens_processed: int
    processing_time_ms: float
    replaced: bool = False
    skipped: bool = False


class BatchIngestError(BaseModel):
    """A failed item of a bulk ingestion."""
    index: int
    title: str
    source_id: Optional[str] = None
    error_code: str
    message: str


class BatchIngestResult(BaseModel):
    """Per-item counts of a bulk ingestion."""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    results: List[IngestResult] = Field(default_factory=list)
    errors: List[BatchIngestError] = Field(default_factory=list)


class NormalizedContent(BaseModel):
    """Normalizer output: plain text plus enriched metadata."""
    title: str
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    truncated: bool = False


class TextChunk(BaseModel):
    """Chunker output; ``content == text[start_offset:end_offset]``."""
    content: str
    chunk_index: int
    start_offset: int
    end_offset: int
    token_count: int


class EmbeddingBatch(BaseModel):
    """Vectors returned by the embedding gateway, tagged with provenance."""
    vectors: List[List[float]]
    model_version: str
    dimension: int


# Storage

class EntryRecord(BaseModel):
    """Entry values handed to the store for create/replace."""
    id: Optional[str] = None
    tenant_id: str
    source_type: SourceType
    source_id: Optional[str] = None
    title: str
    content: str
    content_hash: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChunkRecord(BaseModel):
    """Chunk values handed to the store."""
    tenant_id: str
    chunk_index: int
    content: str
    embedding: List[float]
    token_count: int
    embedding_model_version: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EntrySummary(BaseModel):
    """Metadata-only view of an entry."""
    id: str
    tenant_id: str
    source_type: SourceType
    source_id: Optional[str] = None
    title: str
    content_hash: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int
    created_at: datetime
    updated_at: datetime


class EntryDetail(EntrySummary):
    """Full entry including its normalized content."""
    content: str
    chunk_count: int = 0


class ChunkSummary(BaseModel):
    """Stored chunk without its embedding."""
    id: str
    knowledge_base_id: str
    chunk_index: int
    content: str
    chunk_size: int
    token_count: int
    embedding_model_version: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EntryFilters(BaseModel):
    """Filters for listing entries."""
    source_types: Optional[List[SourceType]] = None
    source_id: Optional[str] = None
    title_contains: Optional[str] = None
    updated_since: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class SearchFilters(BaseModel):
    """Narrowing filters for similarity search. Tenant scoping is not a filter."""
    source_types: Optional[List[SourceType]] = None
    knowledge_base_ids: Optional[List[str]] = None


class KnowledgeBaseStats(BaseModel):
    """Per-tenant knowledge base statistics."""
    total_knowledge_bases: int = 0
    total_chunks: int = 0
    average_chunk_size: float = 0.0
    source_type_breakdown: Dict[str, int] = Field(default_factory=dict)
    last_updated: Optional[datetime] = None


# Retrieval

class QueryContext(BaseModel):
    """Everything the retriever needs for one query."""
    query: str
    tenant_id: str
    source_types: Optional[List[SourceType]] = None
    limit: int = 5
    similarity_threshold: float = 0.7
    diversity_cap: Optional[int] = None

    @field_validator("limit")
    @classmethod
    def validate_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("limit must be positive")
        return v


class RetrievalResult(BaseModel):
    """A ranked chunk with its provenance."""
    chunk_id: str
    knowledge_base_id: str
    content: str
    chunk_index: int
    similarity: float
    title: str
    source_type: SourceType
    source_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QueryOptions(BaseModel):
    """Options accepted by ``RAGService.query``."""
    source_type_filter: Optional[List[SourceType]] = None
    limit: Optional[int] = None
    similarity_threshold: Optional[float] = None
    diversity_cap: Optional[int] = None


class QueryResult(BaseModel):
    """Result of a retrieval query."""
    query: str
    query_id: Optional[str] = None
    chunks: List[RetrievalResult] = Field(default_factory=list)
    total_found: int = 0
    processing_time_ms: float = 0.0


# Generation

class GenerateOptions(BaseModel):
    """Options accepted by ``RAGService.generate``."""
    user_id: Optional[str] = None
    intent: Optional[str] = None
    source_type_filter: Optional[List[SourceType]] = None
    limit: Optional[int] = None
    similarity_threshold: Optional[float] = None


class Citation(BaseModel):
    """A chunk that was placed in the prompt."""
    chunk_id: str
    knowledge_base_id: str
    title: str
    source_type: SourceType
    excerpt: str
    score: float


class SourceReference(BaseModel):
    """A distinct entry that contributed to an answer."""
    knowledge_base_id: str
    title: str
    source_type: SourceType
    source_id: Optional[str] = None


class GenerationResult(BaseModel):
    """Answer with provenance. ``degraded`` marks answers not authored by the model."""
    query: str
    answer: str
    confidence: float = 0.0
    citations: List[Citation] = Field(default_factory=list)
    sources: List[SourceReference] = Field(default_factory=list)
    degraded: bool = False
    degraded_reason: Optional[str] = None
    model: Optional[str] = None
    tokens_used: int = 0
    processing_time_ms: float = 0.0
    query_id: Optional[str] = None


# Query audit trail

class QueryLogEntry(BaseModel):
    """A logged retrieval or generation request."""
    id: str
    tenant_id: str
    operation: Literal["query", "generate"]
    query: str
    source_types: Optional[List[SourceType]] = None
    chunk_ids: List[str] = Field(default_factory=list)
    result_count: int = 0
    degraded: bool = False
    processing_time_ms: float = 0.0
    created_at: datetime
