"""Tests for configuration loading and per-bot file logs."""

import csv
from datetime import datetime

import pytest

from botengine.services.config import ConfigService, ConfigValidationException, EngineSettings
from botengine.services.logging_service import BotLoggingService, TradeLogEntry


def write_config(tmp_path, text: str) -> ConfigService:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return ConfigService(str(path))


class TestConfigService:
    """Test YAML loading and schema validation."""

    def test_missing_file_uses_defaults(self, tmp_path):
        service = ConfigService(str(tmp_path / "absent.yaml"))

        assert service.load_and_validate() == {}
        assert service.get("engine.monitor_interval_seconds", 10) == 10

    def test_valid_config(self, tmp_path):
        service = write_config(tmp_path, """
server:
  port: 9000
engine:
  monitor_interval_seconds: 5
  parallel_exchange_groups: true
webhooks:
  base_url: https://bots.example.com
""")

        service.load_and_validate()

        assert service.get("server.port") == 9000
        assert service.get("webhooks.base_url") == "https://bots.example.com"
        assert service.get("engine.missing", "fallback") == "fallback"

    def test_unknown_key_rejected(self, tmp_path):
        service = write_config(tmp_path, "engine:\n  turbo: true\n")

        with pytest.raises(ConfigValidationException) as exc_info:
            service.load_and_validate()

        assert exc_info.value.errors[0].path == "engine.turbo"

    def test_type_and_range_errors_are_collected(self, tmp_path):
        service = write_config(tmp_path, """
server:
  port: 70000
engine:
  signal_retention_days: "thirty"
  parallel_exchange_groups: 1
""")

        with pytest.raises(ConfigValidationException) as exc_info:
            service.load_and_validate()

        paths = sorted(e.path for e in exc_info.value.errors)
        assert paths == ["engine.parallel_exchange_groups", "engine.signal_retention_days", "server.port"]

    def test_bool_is_not_a_number(self, tmp_path):
        service = write_config(tmp_path, "engine:\n  orderbook_depth: true\n")

        with pytest.raises(ConfigValidationException):
            service.load_and_validate()

    def test_invalid_yaml(self, tmp_path):
        service = write_config(tmp_path, "engine: [unclosed\n")

        with pytest.raises(ConfigValidationException, match="Invalid YAML"):
            service.load_and_validate()

    def test_invalid_log_level(self, tmp_path):
        service = write_config(tmp_path, "logging:\n  level: LOUD\n")

        with pytest.raises(ConfigValidationException, match="not in allowed options"):
            service.load_and_validate()


class TestEngineSettings:
    """Test settings derived from config."""

    def test_defaults(self, tmp_path):
        service = ConfigService(str(tmp_path / "absent.yaml"))
        service.load_and_validate()

        settings = EngineSettings.from_config(service)

        assert settings == EngineSettings()
        assert settings.monitor_interval_seconds == 10.0
        assert settings.signal_retention_days == 30
        assert settings.audit_retention_days == 90

    def test_overrides(self, tmp_path):
        service = write_config(tmp_path, """
engine:
  monitor_interval_seconds: 2.5
  signal_retention_days: 7
exchanges:
  allow_ccxt_fallback: false
logging:
  bot_log_dir: /var/log/bots
""")
        service.load_and_validate()

        settings = EngineSettings.from_config(service)

        assert settings.monitor_interval_seconds == 2.5
        assert settings.signal_retention_days == 7
        assert settings.allow_ccxt_fallback is False
        assert settings.bot_log_dir == "/var/log/bots"


class TestBotLoggingService:
    """Test per-bot trade and activity files."""

    def make_entry(self, **overrides) -> TradeLogEntry:
        values = dict(
            timestamp=datetime(2025, 6, 1, 12, 0, 0),
            bot_id=3,
            bot_name="Alerts",
            signal_id=11,
            exchange_order_id="fake_1",
            symbol="BTC/USDT",
            side="sell",
            order_type="market",
            quantity=0.1,
            executed_price=52000.0,
            executed_quantity=0.1,
            fee=0.0,
            status="filled",
            profit_loss=200.0,
        )
        values.update(overrides)
        return TradeLogEntry(**values)

    def test_trade_csv_has_single_header(self, tmp_path):
        service = BotLoggingService(3, "Alerts", base_dir=tmp_path)

        service.log_trade(self.make_entry())
        service.log_trade(self.make_entry(exchange_order_id="fake_2", profit_loss=None))

        with open(tmp_path / "3" / "trades.csv", newline="") as f:
            rows = list(csv.reader(f))

        assert len(rows) == 3
        assert rows[0][0] == "timestamp"
        assert rows[1][4] == "fake_1"
        assert rows[1][-1] == "200.00"
        assert rows[2][-1] == ""

    def test_activity_log(self, tmp_path):
        service = BotLoggingService(4, base_dir=tmp_path)

        service.log_activity("Bot started")
        service.log_activity("Bot moved to error: boom", "ERROR")

        lines = (tmp_path / "4" / "activity.log").read_text().splitlines()
        assert len(lines) == 2
        assert lines[1].endswith("[ERROR] Bot moved to error: boom")
