"""
Tests for configuration loading, structured logging and the error taxonomy
"""

import json
import logging
import pytest
from datetime import timezone
from decimal import Decimal

from pydantic import ValidationError

from wealth_core import config as config_module
from wealth_core.config import WealthConfig, get_config, reload_config
from wealth_core.logging_config import JSONFormatter, setup_logging, get_logger, log_action
from wealth_core.exceptions import (
    WealthCoreError, InvalidAmount, InsufficientFunds, InsufficientPosition,
    BelowMinimumInvestment, InvalidAccount, AssetNotFound, error_code
)


class TestConfig:

    def test_defaults(self, monkeypatch):
        for name in ("WEALTH_DATABASE_URL", "WEALTH_STOCK_BROKERAGE_FEE_RATE"):
            monkeypatch.delenv(name, raising=False)

        config = WealthConfig(_env_file=None)
        assert config.database_url == "memory://"
        assert config.default_currency == "BRL"
        assert config.stock_brokerage_fee_rate == Decimal('0.01')
        assert config.fixed_income_brokerage_fee_rate == Decimal('0')
        assert config.stock_capital_gains_tax_rate == Decimal('0.15')
        assert config.fixed_income_capital_gains_tax_rate == Decimal('0.22')
        assert config.enable_audit_logging

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("WEALTH_DATABASE_URL", "sqlite:///wealth.db")
        monkeypatch.setenv("wealth_stock_brokerage_fee_rate", "0.0025")

        config = WealthConfig(_env_file=None)
        assert config.database_url == "sqlite:///wealth.db"
        assert config.stock_brokerage_fee_rate == Decimal('0.0025')

    def test_currency_code_is_normalized(self):
        assert WealthConfig(_env_file=None, default_currency="eur").default_currency == "EUR"

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            WealthConfig(_env_file=None, default_currency="XYZ")
        with pytest.raises(ValidationError):
            WealthConfig(_env_file=None, log_format="xml")
        with pytest.raises(ValidationError):
            WealthConfig(_env_file=None, stock_capital_gains_tax_rate=Decimal('1.5'))

    def test_report_timezone(self):
        config = WealthConfig(_env_file=None)
        assert config.report_timezone == "UTC"
        assert config.report_tzinfo is timezone.utc

        with pytest.raises(ValidationError):
            WealthConfig(_env_file=None, report_timezone="Mars/Olympus_Mons")

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("WEALTH_LOG_LEVEL", "DEBUG")

        reloaded = reload_config()
        try:
            assert reloaded.log_level == "DEBUG"
            assert get_config() is reloaded
        finally:
            monkeypatch.delenv("WEALTH_LOG_LEVEL")
            reload_config()

        assert config_module.config is get_config()


class TestStructuredLogging:

    def _record(self, **extra):
        record = logging.LogRecord(
            name="wealth_core.ledger", level=logging.INFO, pathname=__file__, lineno=1,
            msg="Deposit posted", args=(), exc_info=None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_fields(self):
        record = self._record(action="deposit", resource="transaction:T1",
                              extra_data={"amount": "10.00"})

        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "wealth_core.ledger"
        assert entry["message"] == "Deposit posted"
        assert entry["action"] == "deposit"
        assert entry["extra"] == {"amount": "10.00"}
        assert "user_id" not in entry

    def test_log_action_attaches_fields(self):
        captured = []

        class ListHandler(logging.Handler):
            def emit(self, record):
                captured.append(record)

        logger = get_logger("wealth_core.tests.log_action")
        logger.setLevel(logging.DEBUG)
        handler = ListHandler()
        logger.addHandler(handler)
        try:
            log_action(logger, "warning", "Order rejected", user_id="alice",
                       action="buy_rejected", extra={"code": "insufficient_funds"})
        finally:
            logger.removeHandler(handler)

        [record] = captured
        assert record.levelno == logging.WARNING
        assert record.user_id == "alice"
        assert record.action == "buy_rejected"
        assert record.extra_data == {"code": "insufficient_funds"}

    def test_setup_logging_writes_json_lines(self, tmp_path):
        log_file = tmp_path / "wealth.log"
        logger = setup_logging("INFO", "json", str(log_file), logger_name="wealth_core.tests.file")

        log_action(logger, "info", "Account opened", action="open_account")
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip())
        assert entry["message"] == "Account opened"
        assert entry["action"] == "open_account"

        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging("DEBUG", "text", logger_name="wealth_core.tests.text")
        logger = setup_logging("DEBUG", "text", logger_name="wealth_core.tests.text")

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        logger.removeHandler(logger.handlers[0])


class TestErrors:

    def test_codes(self):
        assert InvalidAmount("x").code == "invalid_amount"
        assert InsufficientFunds("x").code == "insufficient_funds"
        assert InsufficientPosition("x").code == "insufficient_position"
        assert BelowMinimumInvestment("x").code == "below_minimum_investment"
        assert InvalidAccount("x").code == "invalid_account"
        assert AssetNotFound("x").code == "asset_not_found"

    def test_errors_are_value_errors(self):
        assert issubclass(WealthCoreError, ValueError)

    def test_to_dict(self):
        error = InsufficientFunds("Not enough", balance=Decimal('5.00'))
        assert error.to_dict() == {
            "code": "insufficient_funds",
            "message": "Not enough",
            "details": {"balance": "5.00"}
        }

    def test_error_code(self):
        assert error_code(AssetNotFound("gone")) == "asset_not_found"
        assert error_code(RuntimeError("boom")) is None
        assert error_code(None) is None
