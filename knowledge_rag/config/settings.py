"""
Configuration settings for the Knowledge RAG service.
"""
from typing import List, Optional
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""

    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    name: str = Field(default="erp_knowledge")
    user: str = Field(default="postgres")
    password: SecretStr = Field(default=SecretStr("postgres"))
    # Full SQLAlchemy URL, overrides the discrete fields (e.g. sqlite+aiosqlite:///kb.db)
    url_override: Optional[str] = Field(default=None)
    max_connections: int = Field(default=20)
    pool_timeout: int = Field(default=30)
    echo: bool = Field(default=False)

    @property
    def url(self) -> str:
        """Get async database connection URL."""
        if self.url_override:
            return self.url_override
        return (
            f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}"
            f"@{self.host}:{self.port}/{self.name}"
        )

    model_config = SettingsConfigDict(env_prefix="DB_")


class RedisSettings(BaseSettings):
    """Redis configuration settings."""

    enabled: bool = Field(default=False)
    host: str = Field(default="localhost")
    port: int = Field(default=6379)
    password: Optional[SecretStr] = Field(default=None)
    db: int = Field(default=0)
    pool_size: int = Field(default=10)
    embedding_cache_ttl: int = Field(default=7 * 24 * 3600)

    @property
    def url(self) -> str:
        """Get Redis connection URL."""
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"

    model_config = SettingsConfigDict(env_prefix="REDIS_")


class KafkaSettings(BaseSettings):
    """Kafka configuration settings for the sync consumer."""

    enabled: bool = Field(default=False)
    brokers: str = Field(default="localhost:9092")
    client_id: str = Field(default="knowledge-rag-service")
    group_id: str = Field(default="knowledge-rag-sync")
    ingest_topic: str = Field(default="knowledge-sync-ingest")
    delete_topic: str = Field(default="knowledge-sync-delete")
    auto_offset_reset: str = Field(default="earliest")

    @property
    def bootstrap_servers(self) -> List[str]:
        """Parse the comma separated brokers string."""
        return [broker.strip() for broker in self.brokers.split(",") if broker.strip()]

    model_config = SettingsConfigDict(env_prefix="KAFKA_")


class AISettings(BaseSettings):
    """Language model configuration settings."""

    openai_api_key: Optional[SecretStr] = Field(default=None)
    anthropic_api_key: Optional[SecretStr] = Field(default=None)
    ollama_base_url: str = Field(default="http://localhost:11434")
    enable_ollama: bool = Field(default=False)
    default_model: str = Field(default="gpt-4o-mini")
    max_tokens: int = Field(default=500)
    temperature: float = Field(default=0.3)
    request_timeout: float = Field(default=30.0)
    max_concurrency: int = Field(default=4)

    model_config = SettingsConfigDict(env_prefix="AI_")


class RAGSettings(BaseSettings):
    """RAG (Retrieval-Augmented Generation) configuration settings."""

    enabled: bool = Field(default=True)

    # Embedding gateway
    embedding_provider: str = Field(default="openai")
    embedding_model: str = Field(default="text-embedding-3-small")
    embedding_dimension: int = Field(default=1536)
    embedding_batch_size: int = Field(default=100)
    embedding_max_concurrency: int = Field(default=4)
    embedding_timeout: float = Field(default=30.0)
    embedding_max_retries: int = Field(default=3)
    embedding_backoff_base: float = Field(default=0.5)
    embedding_backoff_max: float = Field(default=8.0)

    # Normalization and chunking (sizes are in whitespace-delimited tokens)
    max_content_chars: int = Field(default=200_000)
    chunk_size: int = Field(default=400)
    chunk_overlap: int = Field(default=80)
    min_chunk_size: int = Field(default=20)

    # Storage and retrieval
    similarity_strategy: str = Field(default="auto")
    linear_scan_max_candidates: int = Field(default=10_000)
    write_retries: int = Field(default=3)
    similarity_threshold: float = Field(default=0.7)
    max_results: int = Field(default=5)
    diversity_cap: Optional[int] = Field(default=None)

    # Generation
    context_token_budget: int = Field(default=1500)
    excerpt_length: int = Field(default=200)

    # Bulk ingestion
    batch_concurrency: int = Field(default=4)

    @field_validator("similarity_strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        """Restrict the similarity strategy to the supported modes."""
        v = v.lower()
        if v not in ("auto", "native", "linear"):
            raise ValueError("similarity_strategy must be one of: auto, native, linear")
        return v

    model_config = SettingsConfigDict(env_prefix="RAG_")


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    metrics_enabled: bool = Field(default=True)
    log_level: str = Field(default="info")
    log_format: str = Field(default="json")

    model_config = SettingsConfigDict(env_prefix="MONITORING_")


class ServiceSettings(BaseSettings):
    """Main service configuration settings."""

    name: str = Field(default="knowledge-rag")
    version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)

    # HTTP server settings
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    workers: int = Field(default=1)

    model_config = SettingsConfigDict(env_prefix="SERVICE_")


class Settings(BaseSettings):
    """Main settings class that combines all configuration sections."""

    # Service configuration
    service: ServiceSettings = Field(default_factory=ServiceSettings)

    # Storage
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    # External services
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)

    # AI and RAG
    ai: AISettings = Field(default_factory=AISettings)
    rag: RAGSettings = Field(default_factory=RAGSettings)

    # Monitoring
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings


# Environment-specific overrides
if os.getenv("SERVICE_ENVIRONMENT") == "production":
    settings.service.debug = False
    settings.monitoring.log_level = "warning"
    settings.database.max_connections = 50
elif os.getenv("SERVICE_ENVIRONMENT") == "testing":
    settings.service.debug = True
    settings.monitoring.log_level = "debug"
    settings.database.name = "erp_knowledge_test"
