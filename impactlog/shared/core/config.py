from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


class Settings(BaseSettings):
    """
    Main configuration for impactlog.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "impactlog"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Reference data: JSON payload with the emission factor table.
    EMISSION_FACTOR_TABLE_PATH: Optional[str] = None
    # When False only exact (market, channel, scope) entries resolve.
    FACTOR_FALLBACK_ENABLED: bool = True

    # Upper bound on concurrent recalculations in a bulk recompute.
    RECALCULATION_CONCURRENCY: int = Field(default=16, ge=1)

    KG_DISPLAY_DECIMALS: int = Field(default=5, ge=0)
    TONNE_DISPLAY_DECIMALS: int = Field(default=6, ge=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_environment_safety(self) -> "Settings":
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == ENV_PRODUCTION
