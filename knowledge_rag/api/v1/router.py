"""API v1 router configuration for the Knowledge RAG service."""
from fastapi import APIRouter

from knowledge_rag.config.settings import get_settings
from knowledge_rag.rag.api import router as rag_router

# Get settings
settings = get_settings()

# Create the main API router
api_router = APIRouter()

# Include RAG router if enabled
if settings.rag.enabled:
    api_router.include_router(rag_router)
