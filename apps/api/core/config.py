"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="ride_truth")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (e.g. sqlite:// for local runs and tests)
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # JWT Authentication - REQUIRED for token verification
    # Must be set via environment variable, never use default in production
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=30 * 24 * 60)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Screenshot extraction (vision model). Extraction is skipped when unset.
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    SCREENSHOT_MODEL: str = Field(default="gpt-4o")
    SCREENSHOT_MAX_TOKENS: int = Field(default=500)

    # Fraud & trust gate
    INFLUENCE_CAP_PERCENT: float = Field(default=15.0)
    INFLUENCE_MIN_POPULATION: int = Field(default=10)
    DAILY_SUBMISSION_LIMIT: int = Field(default=20)
    DUPLICATE_WINDOW_MINUTES: int = Field(default=10)
    # "reject" refuses to persist duplicates (409); "downweight" stores them at weight 0
    DUPLICATE_POLICY: str = Field(default="reject", pattern="^(reject|downweight)$")
    GPS_MIN_POINTS: int = Field(default=5)
    GPS_MAX_SPEED_KMH: float = Field(default=200.0)
    GPS_TELEPORT_FRACTION: float = Field(default=0.10)
    GPS_MIN_DISTINCT_FRACTION: float = Field(default=0.30)

    # Aggregation & recommendation
    AGGREGATION_MIN_SAMPLE: int = Field(default=5)
    AGGREGATION_OUTLIER_PERCENTILE: float = Field(default=0.05)
    AGGREGATION_HALF_LIFE_DAYS: float = Field(default=30.0)
    AGGREGATION_FULL_CONFIDENCE_SAMPLE: int = Field(default=50)
    RECOMMENDATION_MIN_CONFIDENCE: float = Field(default=0.3)

    # The platform's own brand; auto-fed rides are attributed to it
    PLATFORM_PROVIDER_NAME: str = Field(default="Travony")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)


# Global settings instance
settings = Settings()
