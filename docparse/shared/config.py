"""Shared configuration management for the pipeline.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/

Parsing options (strategy, provider order, thresholds, limits) default to
``None`` here: a value is only an override when it was actually supplied
through the environment. Compiled defaults live in
``docparse.shared.parsing_config``.
"""

from typing import Annotated, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

StrategyName = Literal[
    "model-primary",
    "heuristic-primary",
    "hybrid",
    "cost-optimized",
    "accuracy-optimized",
]


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_PARSING_STRATEGY=cost-optimized
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    service_name: str = Field(
        default="docparse-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Parsing overrides (None = not set in the environment)
    parsing_strategy: StrategyName | None = Field(
        default=None,
        description="Parsing strategy override",
    )
    provider_order: Annotated[list[str] | None, NoDecode] = Field(
        default=None,
        description="Comma-separated provider order, e.g. 'gemini,openai'",
    )
    confidence_threshold: float | None = Field(
        default=None,
        ge=0,
        le=1,
        description="Confidence threshold override for the active strategy",
    )
    max_cost_per_document: float | None = Field(
        default=None,
        ge=0,
        description="Spending ceiling for one document (USD)",
    )
    daily_cost_limit: float | None = Field(
        default=None,
        ge=0,
        description="Spending ceiling shared by all documents per day (USD)",
    )
    enable_fallback: bool | None = Field(
        default=None,
        description="Allow the chain to continue past its first element",
    )
    collect_training_data: bool | None = Field(
        default=None,
        description="Record user corrections as training examples",
    )

    # Provider credentials and models
    openai_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("APP_OPENAI_API_KEY", "OPENAI_API_KEY"),
        description="OpenAI API key",
    )
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI model")
    anthropic_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("APP_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
        description="Anthropic API key",
    )
    anthropic_model: str = Field(
        default="claude-3-5-sonnet-20241022",
        description="Anthropic model",
    )
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com",
        description="Anthropic API base URL",
    )
    gemini_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("APP_GEMINI_API_KEY", "GEMINI_API_KEY"),
        description="Google Gemini API key",
    )
    gemini_model: str = Field(default="gemini-1.5-flash", description="Gemini model")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com",
        description="Gemini API base URL",
    )

    # Ollama configuration (self-hosted, zero marginal cost)
    ollama_enabled: bool = Field(
        default=False,
        description="Include the self-hosted Ollama provider in fallback chains",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5:7b",
        description="Ollama model to use for extraction (e.g., qwen2.5:7b, llama3.1:8b)",
    )

    # Provider transport
    provider_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single provider request",
    )
    provider_max_retries: int = Field(
        default=2,
        ge=0,
        description="Retries for transient provider failures (timeouts, 429, 5xx)",
    )

    # Pattern learning store
    training_store_backend: Literal["file", "minio"] = Field(
        default="file",
        description="Durable backend for training examples and learned patterns",
    )
    training_store_path: str = Field(
        default="data/training.json",
        description="JSON file used by the file backend",
    )
    training_store_object: str = Field(
        default="training/patterns.json",
        description="Object name used by the minio backend",
    )
    pattern_cache_ttl_seconds: float = Field(
        default=300.0,
        ge=0,
        description="How long learned patterns are cached before refetching",
    )
    pattern_initial_confidence: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="Confidence assigned to a newly learned pattern",
    )
    pattern_confidence_increment: float = Field(
        default=0.1,
        ge=0,
        le=1,
        description="Confidence added each time a learned pattern recurs",
    )

    # Page classifier
    classifier_threshold: float = Field(
        default=8.0,
        description="Minimum indicator score for a page to count as an invoice",
    )

    # Storage configuration (S3-compatible object storage)
    storage_enabled: bool = Field(
        default=False,
        description="Enable S3-compatible storage (MinIO)",
    )
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="docparse",
        description="Bucket holding training data",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )

    # Background queue
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the arq worker",
    )
    queue_max_jobs: int = Field(default=10, description="Concurrent jobs per worker")
    queue_job_timeout: int = Field(default=300, description="Job timeout in seconds")

    @field_validator("provider_order", mode="before")
    @classmethod
    def _split_provider_order(cls, value: object) -> object:
        if isinstance(value, str):
            names = [name.strip().lower() for name in value.split(",")]
            return [name for name in names if name]
        return value


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
