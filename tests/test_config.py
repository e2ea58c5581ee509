"""
Tests for configuration and structured logging
"""

import json
import logging

from token_ledger.config import TokenLedgerConfig, get_config, reload_config
from token_ledger.logging_config import JSONFormatter, setup_logging, log_action


class TestConfig:
    """Test environment-based settings"""

    def test_defaults(self):
        config = TokenLedgerConfig()

        assert config.database_url.startswith("sqlite://")
        assert config.emit_supply_notifications is False
        assert config.enable_audit_logging is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TOKEN_LEDGER_INITIAL_SUPPLY", "5000")
        monkeypatch.setenv("TOKEN_LEDGER_EMIT_SUPPLY_NOTIFICATIONS", "true")
        monkeypatch.setenv("TOKEN_LEDGER_DATABASE_URL", "memory://")

        config = reload_config()

        assert config.initial_supply == 5000
        assert config.emit_supply_notifications is True
        assert config.database_url == "memory://"
        assert get_config() is config

        monkeypatch.undo()
        reload_config()


class TestLogging:
    """Test structured log output"""

    def test_json_formatter(self):
        logger = logging.getLogger("token_ledger.test")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "transfer committed", (), None)
        record.caller = "alice"
        record.action = "transfer"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "transfer committed"
        assert entry["caller"] == "alice"
        assert entry["action"] == "transfer"
        assert "resource" not in entry

    def test_log_action(self, capsys):
        logger = setup_logging("INFO", logger_name="token_ledger.test_action")

        log_action(logger, "warning", "mint rejected", caller="bob", action="mint",
                   extra={"error": "unauthorized"})
        log_action(logger, "debug", "not shown")

        lines = [line for line in capsys.readouterr().err.splitlines() if line]
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["level"] == "WARNING"
        assert entry["extra"] == {"error": "unauthorized"}

    def test_text_format(self):
        logger = setup_logging("DEBUG", logger_name="token_ledger.test_text", fmt="text")

        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.DEBUG
