"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from datetime import timezone, tzinfo
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .currency import Currency


class WealthConfig(BaseSettings):
    """Ledger and settlement core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="WEALTH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///wealth.db

    # Money configuration
    default_currency: str = "BRL"

    # IANA zone of the account holders; decides which tax year a sale falls in
    report_timezone: str = "UTC"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Brokerage fees, as a fraction of the gross trade value
    stock_brokerage_fee_rate: Decimal = Decimal("0.01")
    fixed_income_brokerage_fee_rate: Decimal = Decimal("0")

    # Capital-gains tax, as a fraction of the positive realized gain
    stock_capital_gains_tax_rate: Decimal = Decimal("0.15")
    fixed_income_capital_gains_tax_rate: Decimal = Decimal("0.22")

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("default_currency")
    @classmethod
    def check_currency(cls, value: str) -> str:
        code = value.upper()
        if code not in Currency.__members__:
            raise ValueError(f"Unsupported currency {value!r}")
        return code

    @field_validator("report_timezone")
    @classmethod
    def check_timezone(cls, value: str) -> str:
        if value != "UTC":
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(f"Unknown time zone {value!r}")
        return value

    @field_validator("log_format")
    @classmethod
    def check_log_format(cls, value: str) -> str:
        if value not in ("json", "text"):
            raise ValueError("log_format must be json or text")
        return value

    @field_validator(
        "stock_brokerage_fee_rate", "fixed_income_brokerage_fee_rate",
        "stock_capital_gains_tax_rate", "fixed_income_capital_gains_tax_rate"
    )
    @classmethod
    def check_rate(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 1:
            raise ValueError("Rates are fractions between 0 and 1")
        return value

    @property
    def report_tzinfo(self) -> tzinfo:
        if self.report_timezone == "UTC":
            return timezone.utc
        return ZoneInfo(self.report_timezone)


# Global configuration instance
config = WealthConfig()


def get_config() -> WealthConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WealthConfig:
    """Reload configuration from environment"""
    global config
    config = WealthConfig()
    return config
