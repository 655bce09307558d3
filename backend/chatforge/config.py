"""Application configuration using pydantic settings."""
from functools import lru_cache
from typing import List, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = Field(default="Chatforge Chat Service", env="APP_NAME")
    app_version: str = Field(default="1.0.0", env="APP_VERSION")
    debug: bool = Field(default=False, env="DEBUG")
    environment: str = Field(default="development", env="ENVIRONMENT")

    database_url: str = Field(env="DATABASE_URL")
    redis_url: str = Field(env="REDIS_URL")
    rabbitmq_url: str = Field(env="RABBITMQ_URL")
    internal_service_secret: str = Field(env="INTERNAL_SERVICE_SECRET")

    # Daily session quota
    daily_session_limit: int = Field(default=5, env="DAILY_SESSION_LIMIT")
    rate_limit_timezone: str = Field(default="UTC", env="RATE_LIMIT_TIMEZONE")
    rate_limit_key_prefix: str = Field(default="session_limit", env="RATE_LIMIT_KEY_PREFIX")
    redis_timeout_seconds: float = Field(default=3.0, env="REDIS_TIMEOUT_SECONDS")

    # Session lifecycle
    session_abandon_after_minutes: int = Field(default=120, env="SESSION_ABANDON_AFTER_MINUTES")
    session_end_after_minutes: int = Field(default=1440, env="SESSION_END_AFTER_MINUTES")
    session_purge_grace_days: int = Field(default=7, env="SESSION_PURGE_GRACE_DAYS")
    message_retention_days: int = Field(default=7, env="MESSAGE_RETENTION_DAYS")
    max_user_message_chars: int = Field(default=1000, env="MAX_USER_MESSAGE_CHARS")
    history_window: int = Field(default=10, env="HISTORY_WINDOW")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, env="SCHEDULER_ENABLED")
    daily_cleanup_hour: int = Field(default=3, env="DAILY_CLEANUP_HOUR")

    # Message broker
    auth_exchange: str = Field(default="auth.exchange", env="AUTH_EXCHANGE")
    email_exchange: str = Field(default="email.exchange", env="EMAIL_EXCHANGE")
    broker_max_retries: int = Field(default=5, env="BROKER_MAX_RETRIES")
    broker_retry_delay_seconds: float = Field(default=5.0, env="BROKER_RETRY_DELAY_SECONDS")
    broker_connect_timeout_seconds: float = Field(default=5.0, env="BROKER_CONNECT_TIMEOUT_SECONDS")
    broker_prefetch_count: int = Field(default=10, env="BROKER_PREFETCH_COUNT")
    broker_message_ttl_ms: int = Field(default=86_400_000, env="BROKER_MESSAGE_TTL_MS")
    consumer_max_retries: int = Field(default=3, env="CONSUMER_MAX_RETRIES")

    # External collaborators
    business_service_url: str = Field(default="http://localhost:4001", env="BUSINESS_SERVICE_URL")
    business_service_timeout_seconds: float = Field(default=5.0, env="BUSINESS_SERVICE_TIMEOUT_SECONDS")

    qdrant_host: str = Field(default="localhost", env="QDRANT_HOST")
    qdrant_port: int = Field(default=6333, env="QDRANT_PORT")
    qdrant_api_key: str | None = Field(default=None, env="QDRANT_API_KEY")
    qdrant_collection: str = Field(default="business_profiles", env="QDRANT_COLLECTION")
    vector_top_k: int = Field(default=5, env="VECTOR_TOP_K")

    openai_api_key: str | None = Field(default=None, env="OPENAI_API_KEY")
    llm_model: str = Field(default="gpt-4o-mini", env="LLM_MODEL")
    embedding_model: str = Field(default="text-embedding-3-small", env="EMBEDDING_MODEL")
    llm_temperature: float = Field(default=0.3, env="LLM_TEMPERATURE")
    llm_max_tokens: int = Field(default=400, env="LLM_MAX_TOKENS")

    allowed_hosts: Union[List[str], str] = Field(
        default=["localhost", "127.0.0.1", "0.0.0.0"],
        env="ALLOWED_HOSTS",
    )

    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def parse_allowed_hosts(cls, value):
        if isinstance(value, str):
            return [host.strip() for host in value.split(",") if host.strip()]
        return value

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, value: str) -> str:
        normalised = value.strip().lower()
        if normalised not in {"development", "production", "test"}:
            raise ValueError("ENVIRONMENT must be one of development, production, test")
        return normalised

    @field_validator("rate_limit_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown RATE_LIMIT_TIMEZONE '{value}'") from exc
        return value

    @field_validator(
        "daily_session_limit",
        "message_retention_days",
        "session_abandon_after_minutes",
        "session_end_after_minutes",
        "broker_max_retries",
        "broker_prefetch_count",
        "broker_message_ttl_ms",
        "consumer_max_retries",
    )
    @classmethod
    def require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def check_session_windows(self) -> "Settings":
        if self.session_end_after_minutes <= self.session_abandon_after_minutes:
            raise ValueError("SESSION_END_AFTER_MINUTES must exceed SESSION_ABANDON_AFTER_MINUTES")
        if self.session_purge_grace_days < 0:
            raise ValueError("SESSION_PURGE_GRACE_DAYS cannot be negative")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
