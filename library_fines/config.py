"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LibraryFinesConfig(BaseSettings):
    """Library fines subsystem configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "library_fines.db"
    database_timeout: float = 30.0  # Seconds to wait on a locked database

    # Fine and ban defaults (overridable per key in the system_settings table)
    default_fine_per_day: str = "2.00"
    default_max_overdue_days: int = 30
    default_credit_limit: str = "50.00"
    default_ban_duration_days: int = 30

    # Concurrency
    max_conflict_retries: int = 3

    # Scheduler configuration
    scheduler_enabled: bool = True
    scheduler_timezone: str = "UTC"
    accrual_hour: int = 2
    accrual_minute: int = 0
    ban_sweep_hour: int = 3
    ban_sweep_minute: int = 0

    # Notification configuration
    notifications_enabled: bool = True
    notification_channel: str = "log"  # log or webhook
    notification_webhook_url: str = ""
    notification_timeout: float = 5.0
    notification_workers: int = 2
    email_from: str = "noreply@library.com"
    currency_symbol: str = "$"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "LIBFINES_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LibraryFinesConfig()


def get_config() -> LibraryFinesConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LibraryFinesConfig:
    """Reload configuration from environment"""
    global config
    config = LibraryFinesConfig()
    return config
