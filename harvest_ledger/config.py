"""
Application configuration using Pydantic settings.
"""
from typing import Literal

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Persistence
    database_url: str = Field(
        default="sqlite:///./harvest_ledger.db",
        description="SQLAlchemy database URL for the earnings ledger"
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements to the log"
    )

    # Distribution Policy
    farmer_share_ratio: float = Field(
        default=0.30,
        ge=0.0,
        le=1.0,
        description="Fraction of gross harvest revenue assigned to the farmer"
    )
    remainder_policy: Literal["leave_undistributed", "largest_holder"] = Field(
        default="leave_undistributed",
        description="What happens to the floor-rounding remainder of the investor share"
    )
    earnings_maturation_days: int = Field(
        default=0,
        ge=0,
        description="Days an earning stays pending before it becomes available"
    )
    farmer_withdrawal_limit_ratio: float = Field(
        default=1.0,
        gt=0.0,
        le=1.0,
        description="Maximum fraction of the available balance a farmer may withdraw at once"
    )

    # Transfer Executor Configuration
    transfer_mode: Literal["simulated", "gateway"] = Field(
        default="simulated",
        description="Use the simulated executor or the external ledger gateway"
    )
    ledger_gateway_base_url: str = Field(
        default="https://ledger-gateway.example.com",
        description="Base URL for the external ledger transfer gateway"
    )
    ledger_gateway_api_key: str = Field(
        default="",
        description="API key for the ledger gateway"
    )
    transfer_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound on a single transfer call before the outcome is treated as unknown"
    )
    explorer_network: str = Field(
        default="testnet",
        description="Network segment used when building block explorer URLs"
    )

    # Retry Configuration (read-only gateway calls)
    max_retry_attempts: int = Field(
        default=3,
        description="Maximum number of retry attempts for gateway lookups"
    )
    retry_backoff_multiplier: int = Field(
        default=1,
        description="Multiplier for exponential backoff"
    )
    retry_min_wait: int = Field(
        default=1,
        description="Minimum wait time in seconds between retries"
    )
    retry_max_wait: int = Field(
        default=10,
        description="Maximum wait time in seconds between retries"
    )

    # Balance Cache
    balance_cache_ttl_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Seconds a cached balance may be served before recomputation"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # CORS Configuration
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins (use specific origins in production)"
    )

    # Rate Limiting
    rate_limit_requests: int = Field(
        default=100,
        description="Maximum requests per minute per client"
    )

    # Application Settings
    app_name: str = Field(
        default="Harvest Revenue Ledger",
        description="Application name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    debug: bool = Field(
        default=False,
        description="Debug mode"
    )

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
