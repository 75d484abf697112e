"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings

from .currency import Currency


class LedgerConfig(BaseSettings):
    """Loan ledger engine configuration"""

    # Currency configuration
    default_currency: str = "KES"

    # Business rules configuration
    min_principal: str = "10000"       # Smallest loan principal, major units
    max_interest_rate: str = "50"      # Upper bound (inclusive) on the flat rate, percent
    max_term_months: int = 360         # Longest loan term accepted
    receipt_prefix: str = "RCP"        # Payment receipts are RCP-<year>-<seq>

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_LEDGER_"
        env_file = ".env"
        case_sensitive = False

    @property
    def currency(self) -> Currency:
        return Currency[self.default_currency.upper()]

    @property
    def min_principal_amount(self) -> Decimal:
        return Decimal(self.min_principal)

    @property
    def max_rate(self) -> Decimal:
        return Decimal(self.max_interest_rate)


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
