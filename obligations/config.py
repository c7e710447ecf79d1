"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class ObligationsConfig(BaseSettings):
    """Obligation engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///obligations.db"  # "memory://" for in-process storage

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Money configuration
    default_currency: str = "USD"  # Currency code for new accounts

    # Business rules configuration
    default_due_soon_days: int = 7
    default_reminder_days_before: int = 3

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "OBLIGATIONS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = ObligationsConfig()


def get_config() -> ObligationsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ObligationsConfig:
    """Reload configuration from environment"""
    global config
    config = ObligationsConfig()
    return config


def create_storage(settings: Optional[ObligationsConfig] = None):
    """Build the storage backend named by database_url"""
    from .storage import storage_from_url
    settings = settings or get_config()
    return storage_from_url(settings.database_url)
