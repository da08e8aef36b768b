"""
Core configuration for the pixel tracking backend.
Uses Pydantic Settings for environment variable management.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from pydantic import model_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_empty_env_values(cls, data):
        if not isinstance(data, dict):
            return data
        # Hosting platforms sometimes inject empty-string env vars.
        # Treat them as "unset" so typed fields (bool/int/float) don't crash on startup.
        return {key: value for key, value in data.items() if value != ""}

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "info"

    # Database
    DATABASE_URL: str = "postgresql://localhost:5432/pixeltrack"

    # CORS. The snippet runs on arbitrary storefront origins.
    CORS_ALLOW_ORIGINS: str = "*"

    # Geo lookup (ip-api.com JSON endpoint, free tier: 45 requests/minute)
    GEO_LOOKUP_ENABLED: bool = True
    GEO_API_BASE_URL: str = "http://ip-api.com"
    GEO_LOOKUP_TIMEOUT_SECONDS: float = 2.5
    GEO_CACHE_TTL_SECONDS: int = 3600
    # Expired entries are swept once the cache grows past this many entries.
    GEO_CACHE_SWEEP_THRESHOLD: int = 10000
    # Hard ceiling; oldest entries are evicted when a sweep is not enough.
    GEO_CACHE_MAX_ENTRIES: int = 50000

    # Meta Conversions API
    # Process-wide kill switch; per-app toggles still apply when this is on.
    META_FORWARDING_ENABLED: bool = True
    META_GRAPH_API_URL: str = "https://graph.facebook.com"
    META_GRAPH_API_VERSION: str = "v18.0"
    META_FORWARD_TIMEOUT_SECONDS: float = 5.0

    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ALLOW_ORIGINS.split(",") if origin.strip()] or ["*"]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
