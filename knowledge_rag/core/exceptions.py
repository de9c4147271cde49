"""
Centralized exception handling for the Knowledge RAG service.
"""
from typing import Any, Dict, Optional
import structlog

logger = structlog.get_logger(__name__)


class KnowledgeBaseException(Exception):
    """Base exception for the Knowledge RAG service."""

    def __init__(
        self,
        message: str,
        error_code: str = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
        user_message: Optional[str] = None
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.status_code = status_code
        self.user_message = user_message or message

        super().__init__(self.message)

        # Log the exception
        logger.error(
            "Knowledge base exception raised",
            error_code=self.error_code,
            message=self.message,
            details=self.details,
            status_code=self.status_code
        )


class ValidationError(KnowledgeBaseException):
    """Invalid input rejected before any side effect (empty content, unknown source type)."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details=details,
            status_code=400
        )


class NotFoundError(KnowledgeBaseException):
    """Resource not found errors."""

    def __init__(self, resource_type: str, resource_id: str, details: Optional[Dict[str, Any]] = None):
        message = f"{resource_type} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            error_code="NOT_FOUND",
            details=details or {"resource_type": resource_type, "resource_id": resource_id},
            status_code=404
        )


class ProviderError(KnowledgeBaseException):
    """Base class for embedding and language model provider failures."""

    def __init__(
        self,
        provider: str,
        operation: str,
        message: str,
        error_code: str,
        status_code: int,
        details: Optional[Dict[str, Any]] = None
    ):
        self.provider = provider
        self.operation = operation
        merged = {"provider": provider, "operation": operation}
        merged.update(details or {})
        super().__init__(
            message=f"{provider} {operation} failed: {message}",
            error_code=error_code,
            details=merged,
            status_code=status_code
        )


class TransientProviderError(ProviderError):
    """Timeouts, rate limits and upstream 5xx. Safe to retry."""

    def __init__(self, provider: str, operation: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            provider=provider,
            operation=operation,
            message=message,
            error_code="TRANSIENT_PROVIDER_ERROR",
            status_code=503,
            details=details
        )


class PermanentProviderError(ProviderError):
    """Bad credentials or malformed requests. Never retried."""

    def __init__(self, provider: str, operation: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            provider=provider,
            operation=operation,
            message=message,
            error_code="PERMANENT_PROVIDER_ERROR",
            status_code=502,
            details=details
        )


class StorageError(KnowledgeBaseException):
    """Database operation errors. The enclosing transaction has been rolled back."""

    def __init__(self, operation: str, message: str, details: Optional[Dict[str, Any]] = None):
        merged = {"operation": operation}
        merged.update(details or {})
        super().__init__(
            message=f"Storage {operation} failed: {message}",
            error_code="STORAGE_ERROR",
            details=merged,
            status_code=500
        )


class ConfigurationError(KnowledgeBaseException):
    """Configuration and setup errors."""

    def __init__(self, component: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Configuration error in {component}: {message}",
            error_code="CONFIGURATION_ERROR",
            details=details or {"component": component},
            status_code=500
        )


def handle_exception(exc: Exception) -> Dict[str, Any]:
    """Convert any exception to a standardized error response."""
    if isinstance(exc, KnowledgeBaseException):
        return {
            "error": exc.error_code,
            "message": exc.user_message,
            "details": exc.details,
            "status_code": exc.status_code,
        }

    # Handle unexpected exceptions
    logger.error("Unexpected exception", error=str(exc), exc_info=True)

    return {
        "error": "INTERNAL_ERROR",
        "message": "An unexpected error occurred",
        "details": {},
        "status_code": 500,
    }


def is_client_error(exc: Exception) -> bool:
    """Check if the exception represents a client error (4xx)."""
    if isinstance(exc, KnowledgeBaseException):
        return 400 <= exc.status_code < 500
    return False


def should_retry(exc: Exception) -> bool:
    """Determine if an operation should be retried."""
    return isinstance(exc, TransientProviderError)
