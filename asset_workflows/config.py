"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WorkflowConfig(BaseSettings):
    """Asset workflow engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///assetflow.db"  # or memory://

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    auth_enabled: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None

    # Workflow rules
    sla_at_risk_hours: int = 6
    bulk_insert_batch_size: int = 500
    default_template_repair: bool = True

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "ASSETFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WorkflowConfig()


def get_config() -> WorkflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WorkflowConfig:
    """Reload configuration from environment"""
    global config
    config = WorkflowConfig()
    return config
