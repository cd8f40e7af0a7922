from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Loading priority (highest to lowest):
    1. Environment variables
    2. .env file
    3. Default values below
    """

    # Environment
    environment: str = "development"
    debug: bool = True

    # Application
    app_name: str = "wordsto.link"
    app_version: str = "1.0.0"
    secret_key: str = "your-secret-key-here-change-in-production"  # Salt for visitor ids

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    # Proxy IPs or CIDRs whose forwarding headers are believed ("*" for any)
    trusted_proxies: List[str] = []

    # Database
    database_url: str = "sqlite:///./wordlink.db"
    analytics_database_url: Optional[str] = None  # Read replica for reporting

    # Link rules
    base_url: str = "http://127.0.0.1:8000"
    max_keywords: int = 5
    max_keyword_length: int = 100
    max_identifiers_per_owner: int = 3

    # Cache settings (resolution cache-aside)
    cache_backend: str = "redis"  # Options: "redis", "memory", "null"
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl: int = 3600  # Cache TTL in seconds (1 hour)

    # Queue settings (click recording)
    queue_backend: str = "redis_streams"  # Options: "redis_streams", "memory"
    queue_name: str = "link_clicks"
    queue_consumer_group: str = "click_workers"
    queue_batch_size: int = 100  # Number of messages to process at once
    queue_max_length: int = 100_000  # Bound on unprocessed clicks
    queue_block_ms: int = 1000
    queue_reclaim_idle_ms: int = 60_000  # Unacknowledged this long: a worker died holding it
    queue_max_deliveries: int = 5

    # Visitor dedup window
    window_backend: str = "redis"  # Options: "redis", "memory"
    window_ttl_seconds: int = 86400  # Rolling 24h
    window_warm_on_start: bool = True

    # Click recording retry policy
    record_max_attempts: int = 3
    record_retry_backoff: float = 0.5  # Seconds, multiplied by attempt number
    embedded_worker: bool = True  # Run the click worker inside the API process

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Create settings instance
settings = Settings()
