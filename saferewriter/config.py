from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


SUPPORTED_REGIONS = ["US", "UK", "CA", "AU", "IN", "SG", "DE", "FR", "ES", "IT", "JP", "KR", "BR", "MX"]
SUPPORTED_LANGUAGES = ["en", "es", "fr", "de", "it", "pt", "ja", "ko", "zh", "hi"]


class Settings(BaseSettings):
    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================
    environment: str = "dev"  # "dev", "prod", "test"
    debug: bool = True
    version: str = "1.0.0"

    # ==========================================================================
    # DATABASE
    # ==========================================================================
    database_url: str = "sqlite:///./saferewriter.db"

    # ==========================================================================
    # REDIS (empty = caching disabled)
    # ==========================================================================
    redis_url: str = ""
    redis_socket_timeout: float = 5.0

    # ==========================================================================
    # GEMINI
    # ==========================================================================
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_max_tokens: int = 2048
    gemini_temperature: float = 0.7
    gemini_top_p: float = 0.8
    gemini_top_k: int = 10
    gemini_timeout: float = 30.0  # Seconds before the call counts as a network failure
    gemini_default_retry_after: int = 60

    max_message_length: int = 1000

    # ==========================================================================
    # API SECURITY
    # ==========================================================================
    api_token: str = ""  # Required in production, optional in dev
    api_token_header: str = "X-API-Key"

    jwt_secret: str = "change-me-in-production-please-32chars"
    jwt_algorithm: str = "HS256"
    jwt_expires_hours: int = 24

    # ==========================================================================
    # RATE LIMITING (requests per window, window in seconds; 0 disables)
    # ==========================================================================
    rate_limit_requests: int = 100
    rate_limit_window: int = 60
    rewrite_rate_limit: int = 5
    rewrite_rate_window: int = 60
    user_rate_limit: int = 20
    user_rate_window: int = 60
    analytics_rate_limit: int = 10
    analytics_rate_window: int = 300
    pattern_rate_limit: int = 3
    pattern_rate_window: int = 60

    # ==========================================================================
    # CORS
    # ==========================================================================
    cors_origins: str = "*"  # Comma-separated origins, or "*" for all

    # ==========================================================================
    # CACHING
    # ==========================================================================
    cache_ttl: int = 300  # Rewrite results (5 min)
    analytics_cache_ttl: int = 60
    user_stats_cache_ttl: int = 120

    # ==========================================================================
    # RETENTION
    # ==========================================================================
    history_retention_days: int = 30
    pattern_inactive_days: int = 90
    pattern_inactive_max_frequency: int = 5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "prod"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "dev"

    @property
    def cors_origins_list(self) -> List[str]:
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
