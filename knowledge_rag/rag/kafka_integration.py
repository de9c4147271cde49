"""Kafka Integration for the RAG Knowledge Base

This module consumes knowledge sync messages published by the ERP side and
feeds them into the service's write entry points. Each message is handled in
isolation: a malformed or failing message is logged and skipped, never
stopping the consumer.
"""

import json
from typing import Any, Dict, Optional, Union
import asyncio

import structlog
from aiokafka import AIOKafkaConsumer
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from knowledge_rag.config.settings import KafkaSettings
from knowledge_rag.core.exceptions import KnowledgeBaseException, ValidationError
from knowledge_rag.rag.models import EntryFilters, IngestContent, IngestOptions, SourceType
from knowledge_rag.rag.service import RAGService

logger = structlog.get_logger(__name__)


class IngestMessage(IngestContent):
    """Ingestion request received over Kafka."""
    tenant_id: str = Field(..., min_length=1)
    options: IngestOptions = Field(default_factory=IngestOptions)


class DeleteMessage(BaseModel):
    """Deletion request, by entry id or by logical source."""
    tenant_id: str = Field(..., min_length=1)
    knowledge_base_id: Optional[str] = None
    source_type: Optional[SourceType] = None
    source_id: Optional[str] = None


class KafkaSyncConsumer:
    """Consumer for knowledge sync topics."""

    def __init__(
        self,
        rag_service: RAGService,
        kafka_settings: KafkaSettings,
        consumer: Optional[AIOKafkaConsumer] = None,
    ):
        """Initialize the sync consumer.

        Args:
            rag_service: Service receiving the ingest and delete calls
            kafka_settings: Kafka settings
            consumer: Pre-built consumer, created from settings if omitted
        """
        self.rag_service = rag_service
        self.settings = kafka_settings
        self.consumer = consumer
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start consuming in a background task."""
        if self.consumer is None:
            self.consumer = AIOKafkaConsumer(
                self.settings.ingest_topic,
                self.settings.delete_topic,
                bootstrap_servers=self.settings.bootstrap_servers,
                client_id=self.settings.client_id,
                group_id=self.settings.group_id,
                auto_offset_reset=self.settings.auto_offset_reset,
            )

        await self.consumer.start()
        self._task = asyncio.create_task(self._consume_messages())
        logger.info(
            "Kafka sync consumer started",
            topics=[self.settings.ingest_topic, self.settings.delete_topic],
            bootstrap_servers=self.settings.bootstrap_servers,
        )

    async def stop(self):
        """Stop consuming and close the consumer."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self.consumer:
            await self.consumer.stop()
            logger.info("Kafka sync consumer stopped")

    async def _consume_messages(self):
        async for message in self.consumer:
            await self.handle_message(message.topic, message.value)

    async def handle_message(self, topic: str, value: Union[bytes, str, Dict[str, Any]]) -> bool:
        """Handle one sync message.

        Args:
            topic: Topic the message was read from
            value: Raw message value (JSON)

        Returns:
            True if the message was applied
        """
        try:
            payload = json.loads(value) if isinstance(value, (bytes, str)) else value

            if topic == self.settings.ingest_topic:
                await self._handle_ingest(IngestMessage.model_validate(payload))
            elif topic == self.settings.delete_topic:
                await self._handle_delete(DeleteMessage.model_validate(payload))
            else:
                logger.warning("Message from unexpected topic ignored", topic=topic)
                return False
            return True

        except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError) as e:
            logger.error("Invalid sync message format", topic=topic, error=str(e))
        except KnowledgeBaseException as e:
            logger.error("Sync message failed", topic=topic, error_code=e.error_code, error=e.message)
        except Exception as e:
            logger.error("Error processing sync message", topic=topic, error=str(e), exc_info=True)
        return False

    async def _handle_ingest(self, message: IngestMessage):
        content = IngestContent(
            title=message.title,
            content=message.content,
            source_type=message.source_type,
            source_id=message.source_id,
            metadata=message.metadata,
        )
        result = await self.rag_service.ingest(message.tenant_id, content, message.options)
        logger.info(
            "Sync ingest applied",
            tenant_id=message.tenant_id,
            source_id=message.source_id,
            knowledge_base_id=result.knowledge_base_id,
            skipped=result.skipped,
        )

    async def _handle_delete(self, message: DeleteMessage):
        knowledge_base_id = message.knowledge_base_id
        if knowledge_base_id is None:
            if message.source_type is None or message.source_id is None:
                raise ValidationError(
                    "Delete message needs knowledge_base_id or source_type and source_id",
                    details={"tenant_id": message.tenant_id},
                )
            entries = await self.rag_service.list_entries(
                message.tenant_id,
                EntryFilters(source_types=[message.source_type], source_id=message.source_id, limit=1),
            )
            if not entries:
                logger.info("Entry to delete not found", tenant_id=message.tenant_id, source_id=message.source_id)
                return
            knowledge_base_id = entries[0].id

        await self.rag_service.delete(message.tenant_id, knowledge_base_id)
