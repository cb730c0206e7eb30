"""
Shared configuration management for the paint-shop reference-data cache.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="REFCACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Hosted data store (REST)
    data_url: str = "http://localhost:54321"
    data_api_key: Optional[str] = None
    data_timeout_seconds: float = Field(default=10.0, gt=0, allow_inf_nan=False)

    # Change-notification channel
    kafka_bootstrap: str = "localhost:9092"
    kafka_group_id: str = "paintshop-refcache"
    change_topics: str = "paintshop.changes"
    redis_url: str = "redis://localhost:6379/0"
    change_channel: str = "paintshop:changes"

    # TTL presets (milliseconds)
    ttl_short_ms: int = Field(default=2 * 60 * 1000, gt=0)
    ttl_medium_ms: int = Field(default=5 * 60 * 1000, gt=0)
    ttl_long_ms: int = Field(default=15 * 60 * 1000, gt=0)
    ttl_reference_ms: int = Field(default=30 * 60 * 1000, gt=0)

    def change_topic_list(self) -> List[str]:
        """Kafka topics carrying change notifications."""
        return [topic.strip() for topic in self.change_topics.split(",") if topic.strip()]


class CacheSettings(BaseConfig):
    """Settings for one cache session."""

    session_name: str = "refcache"


def get_settings(**overrides) -> CacheSettings:
    """Get cache settings, environment first, explicit overrides last."""
    return CacheSettings(**overrides)
