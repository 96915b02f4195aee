"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Credit ledger engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///credit_ledger.db"  # "memory://" for the in-memory store

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095
    api_default_actor: str = "system"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Interest and calendar rules
    default_interest_basis: str = "actual_360"
    weekend_days: str = "4,5"  # Python weekday numbers, Friday and Saturday
    amount_tolerance: str = "0.01"

    # Repayment allocation when the caller omits one:
    # require, principal_only or interest_first
    allocation_policy: str = "require"

    # Concurrency
    loan_lock_timeout_seconds: float = 5.0

    # Projections
    urgency_critical_days: int = 7
    urgency_warning_days: int = 15
    revolving_warning_percent: int = 70
    revolving_critical_percent: int = 90

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
