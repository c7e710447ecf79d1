"""
Tests for environment configuration and structured logging
"""

import io
import json
import logging
from datetime import date
from decimal import Decimal

from obligations import config as config_module
from obligations.accounts import AccountLedger
from obligations.audit import AuditTrail
from obligations.config import ObligationsConfig, reload_config
from obligations.currency import Currency
from obligations.recurring import Frequency, new_recurring_expense
from obligations.storage import InMemoryStorage
from obligations.logging_config import (
    JSONFormatter, setup_logging, setup_logging_from_config, log_action
)


class TestConfig:
    """Test pydantic-settings configuration"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("OBLIGATIONS_DATABASE_URL", raising=False)
        settings = ObligationsConfig(_env_file=None)

        assert settings.database_url == "sqlite:///obligations.db"
        assert settings.log_format == "json"
        assert settings.default_due_soon_days == 7
        assert settings.default_reminder_days_before == 3
        assert settings.enable_audit_logging

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("OBLIGATIONS_DATABASE_URL", "memory://")
        monkeypatch.setenv("OBLIGATIONS_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("OBLIGATIONS_ENABLE_AUDIT_LOGGING", "false")

        settings = reload_config()
        try:
            assert settings.database_url == "memory://"
            assert settings.log_level == "DEBUG"
            assert not settings.enable_audit_logging
            assert config_module.get_config() is settings
        finally:
            monkeypatch.undo()
            reload_config()

    def test_services_read_configured_defaults(self, monkeypatch):
        """Test that service defaults follow the active configuration"""
        monkeypatch.setenv("OBLIGATIONS_ENABLE_AUDIT_LOGGING", "false")
        monkeypatch.setenv("OBLIGATIONS_DEFAULT_CURRENCY", "EUR")
        monkeypatch.setenv("OBLIGATIONS_DEFAULT_REMINDER_DAYS_BEFORE", "5")
        reload_config()
        try:
            storage = InMemoryStorage()
            audit_trail = AuditTrail(storage)
            assert not audit_trail.enabled

            account = AccountLedger(storage, audit_trail).open_account("alice", "Travel")
            assert account.currency == Currency.EUR

            expense = new_recurring_expense(
                "alice", "Netflix", Decimal("15.99"), Frequency.MONTHLY, account.id, date(2024, 1, 1)
            )
            assert expense.reminder_days_before == 5
            assert audit_trail.count_events() == 0
        finally:
            monkeypatch.undo()
            reload_config()


class TestStructuredLogging:
    """Test JSON and text log output"""

    def setup_method(self):
        self.logger = setup_logging(level="DEBUG", logger_name="obligations.test")
        self.stream = io.StringIO()
        self.logger.handlers[0].setStream(self.stream)

    def teardown_method(self):
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

    def test_log_action_fields(self):
        log_action(
            self.logger, "info", "Loan payment recorded",
            owner_id="alice", action="record_payment", resource="loan:L1",
            correlation_id="req-7", extra={"amount": "500.00"}
        )

        entry = json.loads(self.stream.getvalue())
        assert entry["level"] == "INFO"
        assert entry["logger"] == "obligations.test"
        assert entry["message"] == "Loan payment recorded"
        assert entry["owner_id"] == "alice"
        assert entry["action"] == "record_payment"
        assert entry["resource"] == "loan:L1"
        assert entry["correlation_id"] == "req-7"
        assert entry["extra"] == {"amount": "500.00"}

    def test_missing_fields_omitted(self):
        log_action(self.logger, "warning", "Auto-payment skipped")

        entry = json.loads(self.stream.getvalue())
        assert entry["level"] == "WARNING"
        assert "owner_id" not in entry
        assert "extra" not in entry

    def test_level_filtering(self):
        self.logger.setLevel(logging.WARNING)
        log_action(self.logger, "debug", "Account debited")
        assert self.stream.getvalue() == ""

    def test_exception_included(self):
        try:
            raise RuntimeError("ledger offline")
        except RuntimeError:
            self.logger.error("Settlement failed", exc_info=True)

        entry = json.loads(self.stream.getvalue())
        assert "ledger offline" in entry["exception"]

    def test_text_format(self):
        settings = ObligationsConfig(_env_file=None, log_format="text", log_level="INFO")
        logger = setup_logging_from_config(settings)
        try:
            assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
            assert logger.level == logging.INFO
            assert logger.name == "obligations"
        finally:
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
