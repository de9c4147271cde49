"""Tests for the Kafka sync consumer.

Message handling runs against the real service; the Kafka client is mocked.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from knowledge_rag.config.settings import KafkaSettings
from knowledge_rag.rag.kafka_integration import KafkaSyncConsumer

INGEST_TOPIC = "knowledge-sync-ingest"
DELETE_TOPIC = "knowledge-sync-delete"


def _ingest_message(**overrides):
    message = {
        "tenant_id": "tenant-a",
        "title": "Pump P-300 Manual",
        "content": "The P-300 pump delivers a steady flow.\nFlow Rate: 300 L/min",
        "source_type": "manual",
        "source_id": "manual-p300",
    }
    message.update(overrides)
    return json.dumps(message).encode("utf-8")


@pytest.fixture
def mock_kafka_consumer():
    """Create a mock Kafka consumer."""
    consumer = MagicMock()
    consumer.start = AsyncMock()
    consumer.stop = AsyncMock()
    consumer.__aiter__.return_value = []
    return consumer


@pytest.fixture
def sync_consumer(rag_service, mock_kafka_consumer):
    return KafkaSyncConsumer(rag_service, KafkaSettings(), consumer=mock_kafka_consumer)


async def test_ingest_message(sync_consumer, rag_service):
    assert await sync_consumer.handle_message(INGEST_TOPIC, _ingest_message()) is True

    entries = await rag_service.list_entries("tenant-a")
    assert [e.source_id for e in entries] == ["manual-p300"]


async def test_repeated_ingest_message_replaces(sync_consumer, rag_service):
    await sync_consumer.handle_message(INGEST_TOPIC, _ingest_message())
    await sync_consumer.handle_message(INGEST_TOPIC, _ingest_message(content="Flow Rate: 320 L/min"))

    entries = await rag_service.list_entries("tenant-a")
    assert len(entries) == 1
    assert entries[0].version == 2


async def test_delete_by_id(sync_consumer, rag_service):
    await sync_consumer.handle_message(INGEST_TOPIC, _ingest_message())
    entry = (await rag_service.list_entries("tenant-a"))[0]

    message = json.dumps({"tenant_id": "tenant-a", "knowledge_base_id": entry.id})
    assert await sync_consumer.handle_message(DELETE_TOPIC, message) is True

    assert await rag_service.list_entries("tenant-a") == []


async def test_delete_by_source(sync_consumer, rag_service):
    await sync_consumer.handle_message(INGEST_TOPIC, _ingest_message())

    message = {"tenant_id": "tenant-a", "source_type": "manual", "source_id": "manual-p300"}
    assert await sync_consumer.handle_message(DELETE_TOPIC, message) is True

    assert await rag_service.list_entries("tenant-a") == []


async def test_delete_without_identifiers_is_rejected(sync_consumer):
    assert await sync_consumer.handle_message(DELETE_TOPIC, {"tenant_id": "tenant-a"}) is False


async def test_invalid_json_is_skipped(sync_consumer):
    assert await sync_consumer.handle_message(INGEST_TOPIC, b"{not json") is False


async def test_invalid_payload_is_skipped(sync_consumer):
    assert await sync_consumer.handle_message(INGEST_TOPIC, _ingest_message(tenant_id="")) is False


async def test_failed_ingest_is_skipped(sync_consumer, rag_service):
    assert await sync_consumer.handle_message(INGEST_TOPIC, _ingest_message(content="   ")) is False
    assert await rag_service.list_entries("tenant-a") == []


async def test_unknown_topic_is_ignored(sync_consumer):
    assert await sync_consumer.handle_message("other-topic", _ingest_message()) is False


async def test_start_consumes_and_stop_closes(sync_consumer, mock_kafka_consumer, rag_service):
    mock_kafka_consumer.__aiter__.return_value = [
        SimpleNamespace(topic=INGEST_TOPIC, value=_ingest_message()),
        SimpleNamespace(topic=INGEST_TOPIC, value=b"garbage"),
        SimpleNamespace(topic=INGEST_TOPIC, value=_ingest_message(source_id="manual-p400")),
    ]

    await sync_consumer.start()
    await sync_consumer._task
    await sync_consumer.stop()

    mock_kafka_consumer.start.assert_awaited_once()
    mock_kafka_consumer.stop.assert_awaited_once()
    assert len(await rag_service.list_entries("tenant-a")) == 2
