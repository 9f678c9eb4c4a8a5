"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Loan ledger configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///loan_ledger.db"  # "memory://" for in-process storage
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    closing_tolerance: str = "0.0001"  # Absorbs installment rounding when closing a loan
    arrears_threshold: str = "0.01"    # Deficit must exceed this to be reported
    export_row_limit: int = 500        # Cap on unbounded payment exports
    installment_precision: int = 4     # Decimal places kept on the stored installment
    
    # Performance configuration
    schedule_cache_size: int = 256
    
    # Feature flags
    enable_audit_logging: bool = True
    seed_sample_data: bool = False
    
    class Config:
        env_prefix = "LOAN_LEDGER_"
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
