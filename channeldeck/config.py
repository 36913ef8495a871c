"""
Configuration management for the ChannelDeck backend.
Uses pydantic-settings for environment variable loading.
"""
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    app_name: str = "ChannelDeck"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000

    # CORS Configuration
    # Default allows all origins for development; set CHANNELDECK_CORS_ORIGINS for production
    cors_origins: list[str] = ["*"]

    # Rate Limiting
    rate_limit_per_minute: int = 100

    # Database
    database_path: str = "data/channeldeck.db"

    # Admin API key for protected endpoints
    admin_api_key: str = "dev-admin-key"

    # Connectivity probing
    probe_timeout_ms: int = 10000
    probe_max_redirects: int = 5
    probe_user_agent: str = "VLC/3.0.18 LibVLC/3.0.18"

    # Batch testing
    test_concurrency: int = 8
    test_lock_ttl_seconds: int = 300  # 5 minutes

    # Playlist codes
    code_max_attempts: int = 50

    # Public playlist responses
    playlist_cache_seconds: int = 300

    # Pydantic V2 configuration
    model_config = SettingsConfigDict(env_prefix="CHANNELDECK_", env_file=".env")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
