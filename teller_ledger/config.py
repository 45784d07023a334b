"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Teller ledger configuration"""

    # Storage configuration
    database_path: str = "teller_ledger.db"

    # Key protection configuration
    key_file_path: str = "encryption_key.sealed"
    keyring_service: str = "teller-ledger"
    allow_legacy_plaintext: bool = True  # Set False once all rows are migrated

    # Audit configuration
    audit_app_name: str = "teller-ledger"
    audit_fallback_path: str = "audit-fallback.log"
    syslog_address: str = "/dev/log"  # Unix socket path or hostname
    syslog_port: Optional[int] = None  # Set to use UDP host:port instead of a socket
    syslog_facility: str = "user"

    # Logging configuration
    log_level: str = "INFO"
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    max_text_length: int = 100
    max_transaction_amount: str = "1000000"
    reason_threshold: str = "10000"  # Deposits/withdrawals above this need a reason

    # Authorisation configuration
    teller_group: str = "Bank Teller"
    admin_group: str = "Bank Teller Administrator"
    max_teller_attempts: int = 5
    max_admin_attempts: int = 3

    class Config:
        env_prefix = "TELLER_"
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
