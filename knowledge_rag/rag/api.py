"""RAG API Module

This module provides the tenant-scoped HTTP endpoints of the knowledge base:
ingestion, listing, deletion, retrieval, generation and statistics. Domain
errors propagate to the application's exception handler, which maps them to
status codes.
"""

from typing import Any, Dict, List, Optional, Union
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from knowledge_rag.core.exceptions import NotFoundError
from knowledge_rag.rag.dependencies import get_rag_service
from knowledge_rag.rag.models import (
    BatchIngestResult,
    EntryDetail,
    EntryFilters,
    EntrySummary,
    GenerateOptions,
    GenerationResult,
    IngestContent,
    IngestOptions,
    IngestResult,
    KnowledgeBaseStats,
    QueryLogEntry,
    QueryOptions,
    QueryResult,
    SourceType,
)
from knowledge_rag.rag.service import RAGService

router = APIRouter(prefix="/rag", tags=["rag"])


# API Models
class IngestRequest(BaseModel):
    """Single ingestion request."""
    title: str
    content: Union[str, Dict[str, Any]]
    source_type: SourceType
    source_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    options: IngestOptions = Field(default_factory=IngestOptions)

    def to_content(self) -> IngestContent:
        return IngestContent(
            title=self.title,
            content=self.content,
            source_type=self.source_type,
            source_id=self.source_id,
            metadata=self.metadata,
        )


class BatchIngestRequest(BaseModel):
    """Bulk ingestion request."""
    items: List[IngestContent] = Field(..., min_length=1, max_length=500)
    options: IngestOptions = Field(default_factory=IngestOptions)


class QueryRequest(BaseModel):
    """Retrieval request."""
    query: str
    source_type_filter: Optional[List[SourceType]] = None
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    similarity_threshold: Optional[float] = None
    diversity_cap: Optional[int] = Field(default=None, ge=1)


class GenerateRequest(BaseModel):
    """Answer generation request."""
    query: str
    user_id: Optional[str] = None
    intent: Optional[str] = None
    source_type_filter: Optional[List[SourceType]] = None
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    similarity_threshold: Optional[float] = None


class DeleteResponse(BaseModel):
    """Deletion outcome."""
    deleted: bool


# API Endpoints
@router.post(
    "/tenants/{tenant_id}/knowledge",
    response_model=IngestResult,
    status_code=status.HTTP_201_CREATED,
)
async def ingest_knowledge(
    tenant_id: str,
    request: IngestRequest,
    rag_service: RAGService = Depends(get_rag_service),
):
    """Ingest content into the tenant's knowledge base."""
    return await rag_service.ingest(tenant_id, request.to_content(), request.options)


@router.post("/tenants/{tenant_id}/knowledge/batch", response_model=BatchIngestResult)
async def ingest_knowledge_batch(
    tenant_id: str,
    request: BatchIngestRequest,
    rag_service: RAGService = Depends(get_rag_service),
):
    """Ingest many items; failures are reported per item."""
    return await rag_service.ingest_batch(tenant_id, request.items, request.options)


@router.get("/tenants/{tenant_id}/knowledge", response_model=List[EntrySummary])
async def list_knowledge(
    tenant_id: str,
    source_type: Optional[List[SourceType]] = Query(None, description="Restrict to source types"),
    source_id: Optional[str] = Query(None),
    title_contains: Optional[str] = Query(None),
    updated_since: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    rag_service: RAGService = Depends(get_rag_service),
):
    """List the tenant's entries, most recently updated first."""
    filters = EntryFilters(
        source_types=source_type,
        source_id=source_id,
        title_contains=title_contains,
        updated_since=updated_since,
        limit=limit,
        offset=offset,
    )
    return await rag_service.list_entries(tenant_id, filters)


@router.get("/tenants/{tenant_id}/knowledge/{knowledge_base_id}", response_model=EntryDetail)
async def get_knowledge(
    tenant_id: str,
    knowledge_base_id: str,
    rag_service: RAGService = Depends(get_rag_service),
):
    """Get an entry with its content."""
    entry = await rag_service.get_entry(tenant_id, knowledge_base_id)
    if entry is None:
        raise NotFoundError("knowledge_base_entry", knowledge_base_id, details={"tenant_id": tenant_id})
    return entry


@router.delete("/tenants/{tenant_id}/knowledge/{knowledge_base_id}", response_model=DeleteResponse)
async def delete_knowledge(
    tenant_id: str,
    knowledge_base_id: str,
    rag_service: RAGService = Depends(get_rag_service),
):
    """Delete an entry and its chunks."""
    deleted = await rag_service.delete(tenant_id, knowledge_base_id)
    return DeleteResponse(deleted=deleted)


@router.post("/tenants/{tenant_id}/query", response_model=QueryResult)
async def query_knowledge(
    tenant_id: str,
    request: QueryRequest,
    rag_service: RAGService = Depends(get_rag_service),
):
    """Retrieve the chunks most relevant to a query."""
    options = QueryOptions(
        source_type_filter=request.source_type_filter,
        limit=request.limit,
        similarity_threshold=request.similarity_threshold,
        diversity_cap=request.diversity_cap,
    )
    return await rag_service.query(tenant_id, request.query, options)


@router.post("/tenants/{tenant_id}/generate", response_model=GenerationResult)
async def generate_answer(
    tenant_id: str,
    request: GenerateRequest,
    rag_service: RAGService = Depends(get_rag_service),
):
    """Answer a query from the tenant's knowledge base, with citations."""
    options = GenerateOptions(
        user_id=request.user_id,
        intent=request.intent,
        source_type_filter=request.source_type_filter,
        limit=request.limit,
        similarity_threshold=request.similarity_threshold,
    )
    return await rag_service.generate(tenant_id, request.query, options)


@router.get("/tenants/{tenant_id}/stats", response_model=KnowledgeBaseStats)
async def knowledge_stats(
    tenant_id: str,
    rag_service: RAGService = Depends(get_rag_service),
):
    """Get knowledge base statistics for the tenant."""
    return await rag_service.stats(tenant_id)


@router.get("/tenants/{tenant_id}/queries", response_model=List[QueryLogEntry])
async def query_history(
    tenant_id: str,
    limit: int = Query(50, ge=1, le=500),
    rag_service: RAGService = Depends(get_rag_service),
):
    """Recent retrieval and generation requests of the tenant, newest first."""
    return await rag_service.recent_queries(tenant_id, limit)
