"""Dependency functions for the RAG API.

Provides dependency injection functions for FastAPI endpoints that need access to the RAG service.
"""

from fastapi import HTTPException, Request, status

from knowledge_rag.rag.service import RAGService


async def get_rag_service(request: Request) -> RAGService:
    """Dependency function to get the RAG service instance.

    Args:
        request: The FastAPI request object

    Returns:
        RAGService: The service built during application startup

    Raises:
        HTTPException: If the RAG service was not initialized
    """
    rag_service = getattr(request.app.state, "rag_service", None)
    if rag_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="RAG service unavailable",
        )
    return rag_service
