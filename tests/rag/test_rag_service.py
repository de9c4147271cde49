"""Tests for the RAG service.

Runs the full pipeline (normalize, chunk, embed, store, retrieve, generate)
against in-memory SQLite with deterministic providers.
"""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest

from knowledge_rag.core.exceptions import (
    NotFoundError,
    PermanentProviderError,
    TransientProviderError,
    ValidationError,
)
from knowledge_rag.models.database import QueryLog
from knowledge_rag.rag.models import (
    EntryFilters,
    GenerateOptions,
    IngestContent,
    IngestOptions,
    QueryOptions,
    SourceType,
)


async def test_ingest_and_query_pump_manual(rag_service, pump_manual):
    ingested = await rag_service.ingest("tenant-a", pump_manual)

    assert ingested.chunks_created == 1
    assert ingested.replaced is False
    assert ingested.skipped is False

    result = await rag_service.query("tenant-a", "pump flow rate")

    assert result.total_found >= 1
    top = result.chunks[0]
    assert "300 L/min" in top.content
    assert top.similarity >= 0.5
    assert top.knowledge_base_id == ingested.knowledge_base_id
    assert top.source_type == SourceType.MANUAL


async def test_generate_answer_cites_manual(rag_service, pump_manual, llm_provider):
    await rag_service.ingest("tenant-a", pump_manual)

    result = await rag_service.generate(
        "tenant-a", "What is the flow rate of pump P-300?", GenerateOptions(user_id="user-1")
    )

    assert result.degraded is False
    assert "300" in result.answer
    assert result.citations[0].title == "Pump P-300 Manual"
    assert result.sources[0].source_id == "manual-p300"
    assert 0.0 < result.confidence <= 1.0
    assert len(llm_provider.requests) == 1


async def test_generate_without_context_is_degraded(rag_service, llm_provider):
    result = await rag_service.generate("tenant-a", "What is the flow rate of pump P-300?")

    assert result.degraded is True
    assert result.degraded_reason == "no_relevant_context"
    assert llm_provider.requests == []


async def test_queries_are_tenant_isolated(rag_service, pump_manual):
    await rag_service.ingest("tenant-a", pump_manual)

    result = await rag_service.query("tenant-b", "pump flow rate")

    assert result.chunks == []
    assert (await rag_service.stats("tenant-b")).total_knowledge_bases == 0


async def test_delete_removes_entry_from_results(rag_service, pump_manual):
    ingested = await rag_service.ingest("tenant-a", pump_manual)

    assert await rag_service.delete("tenant-a", ingested.knowledge_base_id) is True

    result = await rag_service.query("tenant-a", "pump flow rate")
    assert result.total_found == 0
    assert await rag_service.get_entry("tenant-a", ingested.knowledge_base_id) is None
    assert await rag_service.delete("tenant-a", ingested.knowledge_base_id) is False


async def test_reingest_replaces_entry(rag_service, pump_manual):
    first = await rag_service.ingest("tenant-a", pump_manual)
    updated = pump_manual.model_copy(update={"content": pump_manual.content.replace("300 L/min", "320 L/min")})

    second = await rag_service.ingest("tenant-a", updated)

    assert second.knowledge_base_id == first.knowledge_base_id
    assert second.replaced is True
    entry = await rag_service.get_entry("tenant-a", first.knowledge_base_id)
    assert "320 L/min" in entry.content
    assert entry.version == 2
    assert (await rag_service.stats("tenant-a")).total_knowledge_bases == 1


async def test_skip_if_unchanged(rag_service, pump_manual, embedding_provider):
    first = await rag_service.ingest("tenant-a", pump_manual)
    embedding_provider.calls.clear()

    second = await rag_service.ingest("tenant-a", pump_manual, IngestOptions(skip_if_unchanged=True))

    assert second.skipped is True
    assert second.knowledge_base_id == first.knowledge_base_id
    assert second.chunks_created == 0
    assert embedding_provider.calls == []


async def test_skip_if_unchanged_still_applies_title_and_metadata(rag_service, pump_manual):
    first = await rag_service.ingest("tenant-a", pump_manual)
    skip = IngestOptions(skip_if_unchanged=True)

    retitled = await rag_service.ingest(
        "tenant-a", pump_manual.model_copy(update={"title": "Pump P-300 Operating Manual"}), skip
    )
    assert retitled.skipped is False
    assert retitled.knowledge_base_id == first.knowledge_base_id

    retagged = await rag_service.ingest(
        "tenant-a",
        pump_manual.model_copy(update={"title": "Pump P-300 Operating Manual", "metadata": {"plant": "Leipzig"}}),
        skip,
    )
    assert retagged.skipped is False

    entry = await rag_service.get_entry("tenant-a", first.knowledge_base_id)
    assert entry.title == "Pump P-300 Operating Manual"
    assert entry.metadata["plant"] == "Leipzig"
    assert entry.version == 3


async def test_failed_reingest_keeps_previous_version(rag_service, pump_manual, embedding_provider):
    first = await rag_service.ingest("tenant-a", pump_manual)
    embedding_provider.embed = AsyncMock(
        side_effect=PermanentProviderError("hashing", "embed", "invalid api key")
    )
    updated = pump_manual.model_copy(update={"content": "Completely different text about valves."})

    with pytest.raises(PermanentProviderError):
        await rag_service.ingest("tenant-a", updated)

    entry = await rag_service.get_entry("tenant-a", first.knowledge_base_id)
    assert "300 L/min" in entry.content
    assert entry.version == 1
    chunks = await rag_service.list_chunks("tenant-a", first.knowledge_base_id)
    assert len(chunks) == 1


async def test_failed_first_ingest_writes_nothing(rag_service, pump_manual, embedding_provider):
    embedding_provider.embed = AsyncMock(
        side_effect=PermanentProviderError("hashing", "embed", "invalid api key")
    )

    with pytest.raises(PermanentProviderError):
        await rag_service.ingest("tenant-a", pump_manual)

    assert await rag_service.list_entries("tenant-a") == []


async def test_chunk_metadata_records_offsets(rag_service, pump_manual):
    ingested = await rag_service.ingest("tenant-a", pump_manual)
    entry = await rag_service.get_entry("tenant-a", ingested.knowledge_base_id)

    chunks = await rag_service.list_chunks("tenant-a", ingested.knowledge_base_id)

    assert chunks[0].metadata["start_offset"] == 0
    assert chunks[0].metadata["end_offset"] == len(entry.content)
    assert chunks[0].embedding_model_version == "hashing:bag-of-words"


async def test_concurrent_ingests(rag_service):
    contents = [
        IngestContent(
            title=f"Product note {i}",
            content=f"Product note number {i} about spare part {i} for the warehouse.",
            source_type=SourceType.DOCUMENT,
            source_id=f"note-{i}",
        )
        for i in range(50)
    ]

    results = await asyncio.gather(*(rag_service.ingest("tenant-a", c) for c in contents))

    assert len({r.knowledge_base_id for r in results}) == 50
    stats = await rag_service.stats("tenant-a")
    assert stats.total_knowledge_bases == 50
    assert stats.total_chunks == 50


async def test_ingest_batch_reports_failures(rag_service, pump_manual):
    items = [
        pump_manual,
        IngestContent(title="   ", content="No title here", source_type=SourceType.DOCUMENT),
        IngestContent(
            title="Valve V-20",
            content={"name": "Valve V-20", "sku": "V-20", "description": "Brass check valve."},
            source_type=SourceType.PRODUCT,
            source_id="V-20",
        ),
    ]

    result = await rag_service.ingest_batch("tenant-a", items)

    assert result.processed == 3
    assert result.successful == 2
    assert result.failed == 1
    assert result.errors[0].index == 1
    assert result.errors[0].error_code == "VALIDATION_ERROR"

    entries = await rag_service.list_entries("tenant-a", EntryFilters(source_types=[SourceType.PRODUCT]))
    assert [e.title for e in entries] == ["Valve V-20"]


async def test_empty_tenant_rejected(rag_service, pump_manual):
    with pytest.raises(ValidationError):
        await rag_service.ingest("", pump_manual)
    with pytest.raises(ValidationError):
        await rag_service.query("  ", "pump")


async def test_empty_query_rejected(rag_service):
    with pytest.raises(ValidationError):
        await rag_service.query("tenant-a", "   ")
    with pytest.raises(ValidationError):
        await rag_service.generate("tenant-a", "")


async def test_invalid_query_limit_rejected(rag_service):
    with pytest.raises(ValidationError):
        await rag_service.query("tenant-a", "pump", QueryOptions(limit=0))


async def test_threshold_above_maximum_returns_nothing(rag_service, pump_manual):
    await rag_service.ingest("tenant-a", pump_manual)

    result = await rag_service.query("tenant-a", "pump flow rate", QueryOptions(similarity_threshold=1.5))

    assert result.chunks == []


async def test_source_type_filter(rag_service, pump_manual):
    await rag_service.ingest("tenant-a", pump_manual)

    result = await rag_service.query(
        "tenant-a", "pump flow rate", QueryOptions(source_type_filter=[SourceType.PRODUCT])
    )

    assert result.chunks == []


async def test_health_check(rag_service):
    health = await rag_service.health_check()

    assert health["embedding_model"] == "hashing:bag-of-words"
    assert health["llm_providers"] == ["openai"]
    assert health["similarity_strategy"] == "linear"


async def test_generate_degrades_when_query_embedding_unavailable(rag_service, pump_manual, embedding_provider, llm_provider):
    await rag_service.ingest("tenant-a", pump_manual)
    embedding_provider.embed = AsyncMock(side_effect=TransientProviderError("hashing", "embed", "rate limited"))

    result = await rag_service.generate("tenant-a", "What is the flow rate of pump P-300?")

    assert result.degraded is True
    assert result.degraded_reason == "retrieval_unavailable"
    assert result.confidence == 0.0
    assert result.citations == []
    assert llm_provider.requests == []
    assert embedding_provider.embed.await_count == 3


async def test_generate_propagates_permanent_embedding_failure(rag_service, pump_manual, embedding_provider, llm_provider):
    await rag_service.ingest("tenant-a", pump_manual)
    embedding_provider.embed = AsyncMock(side_effect=PermanentProviderError("hashing", "embed", "invalid api key"))

    with pytest.raises(PermanentProviderError):
        await rag_service.generate("tenant-a", "What is the flow rate of pump P-300?")
    assert llm_provider.requests == []


async def test_foreign_entry_id_is_not_found(rag_service, pump_manual):
    owned = await rag_service.ingest("tenant-a", pump_manual)

    with pytest.raises(NotFoundError):
        await rag_service.ingest(
            "tenant-b",
            pump_manual.model_copy(update={"content": "Tenant B overwrite attempt.", "source_id": None}),
            IngestOptions(knowledge_base_id=owned.knowledge_base_id),
        )

    entry = await rag_service.get_entry("tenant-a", owned.knowledge_base_id)
    assert "300 L/min" in entry.content
    assert entry.version == 1
    assert (await rag_service.stats("tenant-b")).total_knowledge_bases == 0


async def test_queries_are_recorded(rag_service, store, pump_manual):
    await rag_service.ingest("tenant-a", pump_manual)

    queried = await rag_service.query("tenant-a", "pump flow rate")
    generated = await rag_service.generate("tenant-a", "What is the flow rate of pump P-300?")

    assert queried.query_id is not None
    assert generated.query_id is not None

    history = {entry.id: entry for entry in await store.recent_queries("tenant-a")}
    assert history[queried.query_id].operation == "query"
    assert history[queried.query_id].query == "pump flow rate"
    assert history[queried.query_id].chunk_ids == [c.chunk_id for c in queried.chunks]
    assert history[queried.query_id].result_count == queried.total_found
    assert history[generated.query_id].operation == "generate"
    assert history[generated.query_id].degraded is False
    assert await store.recent_queries("tenant-b") == []


async def test_query_survives_history_write_failure(rag_service, engine, pump_manual):
    await rag_service.ingest("tenant-a", pump_manual)
    async with engine.begin() as conn:
        await conn.run_sync(QueryLog.__table__.drop)

    result = await rag_service.query("tenant-a", "pump flow rate")

    assert result.total_found >= 1
    assert result.query_id is None


def _block_after_chunk_write(db_manager, blocked: asyncio.Event):
    """Make the next upsert hang inside its transaction, after its chunks are flushed."""
    open_session = db_manager.session

    @asynccontextmanager
    async def session():
        async with open_session() as s:
            real_flush = s.flush
            flushes = 0

            async def flush(*args, **kwargs):
                nonlocal flushes
                await real_flush(*args, **kwargs)
                flushes += 1
                if flushes == 2 and not blocked.is_set():
                    blocked.set()
                    await asyncio.Event().wait()

            s.flush = flush
            yield s

    db_manager.session = session


async def test_cancelled_first_ingest_writes_nothing(rag_service, db_manager, pump_manual):
    blocked = asyncio.Event()
    _block_after_chunk_write(db_manager, blocked)

    task = asyncio.create_task(rag_service.ingest("tenant-a", pump_manual))
    await blocked.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    stats = await rag_service.stats("tenant-a")
    assert stats.total_knowledge_bases == 0
    assert stats.total_chunks == 0


async def test_cancelled_reingest_keeps_previous_chunks(rag_service, db_manager, pump_manual):
    first = await rag_service.ingest("tenant-a", pump_manual)
    before = await rag_service.list_chunks("tenant-a", first.knowledge_base_id)

    blocked = asyncio.Event()
    _block_after_chunk_write(db_manager, blocked)
    updated = pump_manual.model_copy(update={"content": "Replacement text about valve V-20 maintenance."})

    task = asyncio.create_task(rag_service.ingest("tenant-a", updated))
    await blocked.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    after = await rag_service.list_chunks("tenant-a", first.knowledge_base_id)
    assert [(c.id, c.content) for c in after] == [(c.id, c.content) for c in before]
    entry = await rag_service.get_entry("tenant-a", first.knowledge_base_id)
    assert entry.version == 1
