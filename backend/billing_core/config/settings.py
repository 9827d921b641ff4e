"""
Application Settings for the Billing Core

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Jurisdiction routing decides which store governs a subscriber:
    - BR subscribers live in the managed cloud store (Supabase)
    - PT/ES subscribers live in the relational store (PostgreSQL)
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Jurisdiction Routing
    default_jurisdiction: str = "BR"
    supported_jurisdictions: list[str] = ["BR", "PT", "ES"]
    # Operator-forced numbers, e.g. {"5511999990000": "ES"}
    jurisdiction_overrides: dict[str, str] = {}

    # Supabase Configuration (managed cloud store)
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_timeout_seconds: int = 10

    # Database Configuration (relational store)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    checkout_success_url: str = "https://example.com/upgrade/success"
    checkout_cancel_url: str = "https://example.com/upgrade/cancel"

    # Workflow Configuration
    upgrade_session_ttl_minutes: int = 60
    subscription_grace_period_hours: int = 72
    free_plan_name: str = "Fremium"
    sweep_interval_seconds: int = 300
    quota_fail_open: bool = True
    plan_cache_ttl_seconds: int = 300

    # Retry Configuration
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_jurisdictions(self) -> "Settings":
        """Normalize jurisdiction codes and check the default is routable."""
        self.default_jurisdiction = self.default_jurisdiction.upper()
        self.supported_jurisdictions = [
            code.upper() for code in self.supported_jurisdictions
        ]
        self.jurisdiction_overrides = {
            phone: code.upper()
            for phone, code in self.jurisdiction_overrides.items()
        }

        if self.default_jurisdiction not in self.supported_jurisdictions:
            raise ValueError(
                f"DEFAULT_JURISDICTION={self.default_jurisdiction} is not in "
                f"SUPPORTED_JURISDICTIONS={self.supported_jurisdictions}"
            )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
