"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Loan ledger engine configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db or postgresql://...

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_payment_method: str = "bank_transfer"
    # Reject penalty applications that carry no period key
    require_penalty_period_key: bool = False

    # Feature flags
    enable_audit_logging: bool = True
    enable_event_publishing: bool = True

    class Config:
        env_prefix = "LOANLEDGER_"
        env_file = ".env"
        case_sensitive = False


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
