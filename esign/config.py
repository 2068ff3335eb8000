from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/esign"
    DB_SLOW_QUERY_MS: int = 500

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # CORS
    FRONTEND_URL: str = "http://localhost:5173"

    # Remote signing provider
    ESIGN_API_BASE_URL: str = "https://api.na1.adobesign.com/api/rest/v6/"
    ESIGN_INTEGRATION_KEY: str | None = None
    ESIGN_API_USER_EMAIL: str | None = None
    ESIGN_MOCK_MODE: bool = False
    ESIGN_READ_TIMEOUT_SECONDS: float = 30.0
    ESIGN_WRITE_TIMEOUT_SECONDS: float = 120.0

    @field_validator('ESIGN_API_BASE_URL', mode='before')
    @classmethod
    def ensure_trailing_slash(cls, v: str) -> str:
        """Relative request paths are joined onto the base URL."""
        if v and not v.endswith('/'):
            return v + '/'
        return v

    # Reconciliation
    RECONCILE_FETCH_ATTEMPTS: int = 3
    RECONCILE_RETRY_BACKOFF_SECONDS: float = 1.0
    RECONCILE_TRUST_AGREEMENT_COMPLETION: bool = True

    # Recovery
    RECOVERY_FRESHNESS_MINUTES: int = 60
    RECOVERY_ALLOW_AGGRESSIVE: bool = False

    # Rate limiting
    RATE_LIMIT_DEFAULT_RETRY_AFTER_SECONDS: int = 3600

    # Reminder scheduler
    REMINDER_SCHEDULER_ENABLED: bool = True
    STATUS_SWEEP_INTERVAL_MINUTES: int = 30
    REMINDER_MISFIRE_GRACE_SECONDS: int = 3600

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    DOCS_ENABLED: bool = True
    SQL_ECHO: bool = False

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def sqlalchemy_echo(self) -> bool:
        """Never echo SQL in production."""
        return self.SQL_ECHO and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
