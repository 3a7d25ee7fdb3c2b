"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LoanServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_SERVICING_",
        env_file=".env",
        case_sensitive=False,
    )

    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # or memory://

    # Money
    default_currency: str = "KES"

    # Concurrency
    lock_timeout_seconds: float = 30.0  # Per-loan lock wait before giving up

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

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
