"""
Main FastAPI application for the Knowledge RAG service.
"""
import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from knowledge_rag.api.v1.router import api_router
from knowledge_rag.config.settings import Settings, get_settings
from knowledge_rag.core.exceptions import KnowledgeBaseException, handle_exception
from knowledge_rag.core.logging import configure_logging
from knowledge_rag.rag.kafka_integration import KafkaSyncConsumer
from knowledge_rag.rag.service import RAGService

logger = structlog.get_logger(__name__)

# Prometheus metrics
REQUEST_COUNT = Counter('http_requests_total', 'Total HTTP requests', ['method', 'endpoint', 'status'])
REQUEST_LATENCY = Histogram('http_request_duration_seconds', 'HTTP request latency')


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings
    configure_logging(settings.monitoring)
    logger.info(
        "Starting Knowledge RAG service",
        version=settings.service.version,
        environment=settings.service.environment,
    )

    # A service injected before startup is owned by the caller
    owns_service = getattr(app.state, "rag_service", None) is None
    kafka_consumer: Optional[KafkaSyncConsumer] = None

    try:
        if owns_service:
            app.state.rag_service = await RAGService.create(settings)

        if settings.kafka.enabled:
            kafka_consumer = KafkaSyncConsumer(app.state.rag_service, settings.kafka)
            await kafka_consumer.start()

        yield

    except Exception as e:
        logger.error("Failed to start service", error=str(e))
        raise

    finally:
        logger.info("Shutting down Knowledge RAG service")

        if kafka_consumer:
            await kafka_consumer.stop()

        rag_service = getattr(app.state, "rag_service", None)
        if owns_service and rag_service is not None:
            await rag_service.close()
            app.state.rag_service = None

        logger.info("Service shutdown completed")


def create_app(settings: Optional[Settings] = None, rag_service: Optional[RAGService] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Application settings, the global settings if omitted
        rag_service: Pre-built service; when given, the lifespan does not create or close one

    Returns:
        Configured application
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Knowledge RAG Service",
        description="Multi-tenant knowledge base with retrieval-augmented generation for ERP systems",
        version=settings.service.version,
        docs_url="/docs" if settings.service.debug else None,
        redoc_url="/redoc" if settings.service.debug else None,
        openapi_url="/openapi.json" if settings.service.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.rag_service = rag_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record metrics for all requests."""
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            REQUEST_COUNT.labels(method=request.method, endpoint=request.url.path, status=500).inc()
            raise

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        REQUEST_LATENCY.observe(process_time)
        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code
        ).inc()
        return response

    @app.exception_handler(KnowledgeBaseException)
    async def knowledge_base_exception_handler(request: Request, exc: KnowledgeBaseException):
        """Map domain errors to their status codes."""
        body = handle_exception(exc)
        body["timestamp"] = time.time()
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors."""
        logger.warning("Validation error", path=request.url.path, errors=exc.errors())

        return JSONResponse(
            status_code=422,
            content={
                "error": "REQUEST_VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": {"errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
                ]},
                "timestamp": time.time(),
            }
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions."""
        logger.warning("HTTP exception", path=request.url.path, status_code=exc.status_code, detail=exc.detail)

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTP_ERROR",
                "message": exc.detail,
                "status_code": exc.status_code,
                "timestamp": time.time(),
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        body = handle_exception(exc)
        body["timestamp"] = time.time()
        return JSONResponse(status_code=500, content=body)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Knowledge RAG Service is running",
            "version": settings.service.version,
            "timestamp": time.time()
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        rag_service: Optional[RAGService] = getattr(request.app.state, "rag_service", None)
        if rag_service is None:
            return JSONResponse(
                status_code=503,
                content={"status": "unavailable", "timestamp": time.time()},
            )

        components = await rag_service.health_check()
        healthy = components["sql"]["status"] == "healthy" and components["redis"]["status"] in ("healthy", "disabled")

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "components": components,
                "timestamp": time.time()
            },
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
