"""
Application configuration management with environment-based settings.
"""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main application settings."""

    # ============= Application Settings =============
    APP_NAME: str = "Quizgen API"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Adaptive quiz generation and assessment engine"
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="development")
    API_V1_PREFIX: str = "/v1"

    # ============= Security Settings =============
    APP_SECRET: SecretStr = Field(default="dev-secret-change-me")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 24 * 60

    # CORS Settings (comma separated)
    CORS_ORIGINS: str = "*"

    # ============= Database Settings =============
    DATABASE_URL: str = Field(default="sqlite:///./quizgen.db")
    DATABASE_ECHO: bool = False

    # ============= Redis Settings =============
    # Caching is disabled when no URL is configured
    REDIS_URL: Optional[str] = None
    REDIS_SOCKET_TIMEOUT: int = 5
    CACHE_TTL_QUIZ: int = 600
    CACHE_TTL_HISTORY: int = 180
    CACHE_TTL_LEADERBOARD: int = 300
    CACHE_TTL_PERFORMANCE: int = 300

    # ============= AI Settings =============
    # Any OpenAI-compatible chat completions endpoint; Groq by default
    AI_API_KEY: Optional[SecretStr] = None
    AI_BASE_URL: str = "https://api.groq.com/openai/v1"
    AI_MODEL: str = "mixtral-8x7b-32768"
    AI_TIMEOUT: float = 30.0
    AI_TEMPERATURE: float = 0.7
    AI_MAX_TOKENS: int = 4096
    AI_MAX_RETRIES: int = 2

    # ============= Quiz Settings =============
    QUIZ_MIN_QUESTIONS: int = 1
    QUIZ_MAX_QUESTIONS: int = 50
    QUIZ_DEFAULT_QUESTIONS: int = 10

    # ============= Logging Settings =============
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore")

    def cors_origins(self) -> List[str]:
        return [i.strip() for i in self.CORS_ORIGINS.split(",") if i.strip()]

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT.lower() == "production"

    def is_testing(self) -> bool:
        """Check if running in testing."""
        return self.ENVIRONMENT.lower() == "testing"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Export settings instance
settings = get_settings()
