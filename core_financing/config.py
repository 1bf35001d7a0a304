"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class FinancingConfig(BaseSettings):
    """Core financing system configuration"""

    # Database configuration
    database_url: str = "sqlite:///financing.db"  # memory:// for in-process storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_monthly_rate: str = "5"  # Percent per month quoted to customers
    default_payment_method: str = "efectivo"
    notes_max_length: int = 500

    # Concurrency configuration
    settlement_max_retries: int = 3

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "FINANCING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = FinancingConfig()


def get_config() -> FinancingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FinancingConfig:
    """Reload configuration from environment"""
    global config
    config = FinancingConfig()
    return config
