"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class MinibankConfig(BaseSettings):
    """Minibank ledger service configuration"""

    # Database configuration
    database_url: str = "sqlite:///minibank.db"  # memory://, sqlite:///path or postgresql://...
    sqlite_busy_timeout: float = 30.0  # Seconds to wait for the SQLite write lock

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 7070

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24
    auth_enabled: bool = True

    # Logging configuration
    log_level: str = "INFO"

    class Config:
        env_prefix = "MINIBANK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MinibankConfig()


def get_config() -> MinibankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MinibankConfig:
    """Reload configuration from environment"""
    global config
    config = MinibankConfig()
    return config
