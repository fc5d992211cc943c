from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/crm_segments"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # CORS
    FRONTEND_URL: str = "http://localhost:5173"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    DOCS_ENABLED: bool = True

    # Segment evaluation
    SEGMENT_BATCH_CHUNK_SIZE: int = 500
    SEGMENT_PREVIEW_SAMPLE_SIZE: int = 50

    # Auto-update coordinator
    SEGMENT_AUTO_UPDATE_ENABLED: bool = True
    SEGMENT_DEBOUNCE_SECONDS: float = 2.0
    SEGMENT_MIN_BATCH_INTERVAL_SECONDS: float = 300.0
    SEGMENT_RECONCILE_INTERVAL_MINUTES: int = 60
    SEGMENT_RETRY_ATTEMPTS: int = 5
    SEGMENT_RETRY_BACKOFF_SECONDS: float = 1.0
    SEGMENT_RETRY_BACKOFF_MAX_SECONDS: float = 60.0

    @field_validator(
        'SEGMENT_BATCH_CHUNK_SIZE',
        'SEGMENT_PREVIEW_SAMPLE_SIZE',
        'SEGMENT_RECONCILE_INTERVAL_MINUTES',
        'SEGMENT_RETRY_ATTEMPTS',
    )
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator(
        'SEGMENT_DEBOUNCE_SECONDS',
        'SEGMENT_MIN_BATCH_INTERVAL_SECONDS',
        'SEGMENT_RETRY_BACKOFF_SECONDS',
        'SEGMENT_RETRY_BACKOFF_MAX_SECONDS',
    )
    @classmethod
    def require_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @model_validator(mode='after')
    def harden_production(self) -> "Settings":
        """Debug output and interactive docs are never served in production."""
        if self.is_production:
            self.DEBUG = False
            self.DOCS_ENABLED = False
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() in ("production", "staging")

    @property
    def sqlalchemy_echo(self) -> bool:
        # Never echo SQL (and bound parameters) outside local development
        return self.DEBUG and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
