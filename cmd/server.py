"""
Knowledge RAG - Server Entry Point

Starts the HTTP API, or an interactive question loop against one tenant's
knowledge base for testing.

Usage:
    python cmd/server.py --mode api

Or with schema creation for a development database:
    python cmd/server.py --create-schema --mode api --port 8080
    python cmd/server.py --mode interactive --tenant acme
"""

import asyncio
import argparse
import sys

import structlog
import uvicorn
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from knowledge_rag.config.settings import get_settings
from knowledge_rag.core.exceptions import KnowledgeBaseException
from knowledge_rag.core.logging import configure_logging
from knowledge_rag.models.database import Base
from knowledge_rag.rag.service import RAGService

logger = structlog.get_logger(__name__)
settings = get_settings()


async def create_schema():
    """Create the knowledge base tables (development only; production uses migrations)."""
    engine = create_async_engine(settings.database.url)
    try:
        async with engine.begin() as conn:
            if engine.dialect.name == "postgresql":
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()
    logger.info("Database schema created", dialect=engine.dialect.name)


async def interactive_mode(tenant_id: str):
    """Run in interactive mode for testing."""
    service = await RAGService.create(settings)
    print(f"Interactive mode for tenant '{tenant_id}' - type 'exit' to quit")

    try:
        while True:
            try:
                query = input("\nQuestion: ").strip()
            except (KeyboardInterrupt, EOFError):
                break

            if query.lower() in ["exit", "quit", "q"]:
                break
            if not query:
                continue

            try:
                result = await service.generate(tenant_id, query)
            except KnowledgeBaseException as e:
                print(f"Error: {e.user_message}")
                continue

            print(f"\n{result.answer}")
            if result.degraded:
                print(f"(degraded: {result.degraded_reason})")
            for i, citation in enumerate(result.citations, start=1):
                print(f"  [{i}] {citation.title} ({citation.source_type.value}, score {citation.score})")
            print(f"confidence: {result.confidence}")
    finally:
        await service.close()


def main():
    """Main application entry point."""
    parser = argparse.ArgumentParser(description="Knowledge RAG service")
    parser.add_argument("--mode", choices=["api", "interactive"], default="api", help="Run mode")
    parser.add_argument("--host", default=settings.service.host, help="API host")
    parser.add_argument("--port", type=int, default=settings.service.port, help="API port")
    parser.add_argument("--workers", type=int, default=settings.service.workers, help="API worker processes")
    parser.add_argument("--tenant", help="Tenant for interactive mode")
    parser.add_argument("--create-schema", action="store_true", help="Create database tables before starting")

    args = parser.parse_args()
    configure_logging(settings.monitoring)

    try:
        if args.create_schema:
            asyncio.run(create_schema())

        if args.mode == "api":
            uvicorn.run(
                "knowledge_rag.main:app",
                host=args.host,
                port=args.port,
                workers=args.workers,
                log_config=None,
            )
        else:
            if not args.tenant:
                parser.error("--tenant is required in interactive mode")
            asyncio.run(interactive_mode(args.tenant))

    except KnowledgeBaseException as e:
        print(f"Failed to start: {e.user_message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
