"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class FundsLedgerConfig(BaseSettings):
    """Funds transfer and loan ledger configuration"""

    # Storage configuration
    database_path: str = "funds_ledger.db"
    use_sqlite: bool = True

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    system_token: str = "change-me-system-token"  # Shared secret for scheduled jobs

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Transfer rules
    external_transfer_limit: str = "10000.00"
    wire_transfer_limit: str = "999999999.99"
    verification_code_ttl_minutes: int = 10
    balance_update_max_retries: int = 5

    # Loan rules
    late_fee_rate: str = "0.05"
    late_fee_floor: str = "25.00"
    early_payoff_discount_rate: str = "0.02"
    completion_tolerance: str = "0.01"

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_webhook_timeout: int = 10

    class Config:
        env_prefix = "FUNDS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = FundsLedgerConfig()


def get_config() -> FundsLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> FundsLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = FundsLedgerConfig()
    return config
