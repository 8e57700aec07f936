"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoanServicingConfig(BaseSettings):
    """Loan servicing core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOANS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///loans.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    default_currency: str = "USD"
    penalty_rate_monthly: Decimal = Field(default=Decimal("2"), ge=0)  # mora, percent per 30 days
    penalty_cap: Optional[Decimal] = None  # absolute cap on accrued mora, None = uncapped
    arrears_match_window_days: int = Field(default=7, ge=0)
    gate_fixed_term_principal: bool = True
    overflow_policy: Literal["credit", "reject"] = "credit"
    suggested_principal_share: Decimal = Field(default=Decimal("0.10"), ge=0, le=1)

    # Concurrency
    max_commit_attempts: int = Field(default=3, ge=1)

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
