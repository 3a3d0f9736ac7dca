"""Tests for configuration loading — TOML layers, env overrides, validation."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from portfolio_engine.config import (
    AppConfig,
    LifecycleConfig,
    LoggingConfig,
    MarketHoursConfig,
    SchedulerConfig,
    load_config,
)

_ENV_VARS = [
    "PORTFOLIO_ENGINE_DB_PATH",
    "PORTFOLIO_ENGINE_LOG_LEVEL",
    "PORTFOLIO_ENGINE_PREDICTION_URL",
    "PORTFOLIO_ENGINE_PREDICTION_API_KEY",
    "PORTFOLIO_ENGINE_COOL_OFF_HOURS",
    "PORTFOLIO_ENGINE_DEBUG",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_dir(tmp_path):
    path = tmp_path / "config"
    path.mkdir()
    (path / "default.toml").write_text(
        '[database]\ndb_path = "from_toml.db"\n\n'
        "[lifecycle]\ncool_off_hours = 12\n\n"
        '[logging]\nlevel = "warning"\n',
        encoding="utf-8",
    )
    return path


class TestLoadConfig:
    def test_committed_defaults_load(self):
        config = load_config()
        assert config.lifecycle.cool_off == timedelta(hours=24)
        assert config.pricing.source == "database"
        assert config.market_hours.timezone == "America/New_York"

    def test_toml_values_and_defaults(self, config_dir):
        config = load_config(config_dir / "default.toml")
        assert config.database.db_path == "from_toml.db"
        assert config.lifecycle.cool_off_hours == 12
        assert config.logging.level == "WARNING"
        assert config.processor.batch_limit == 500

    def test_local_overrides_merge(self, config_dir):
        (config_dir / "local.toml").write_text(
            "[lifecycle]\nhistory_default_days = 7\n", encoding="utf-8"
        )
        config = load_config(config_dir / "default.toml")
        assert config.lifecycle.history_default_days == 7
        assert config.lifecycle.cool_off_hours == 12

    def test_env_overrides_win(self, config_dir, monkeypatch):
        monkeypatch.setenv("PORTFOLIO_ENGINE_DB_PATH", "env.db")
        monkeypatch.setenv("PORTFOLIO_ENGINE_COOL_OFF_HOURS", "0.5")
        monkeypatch.setenv("PORTFOLIO_ENGINE_PREDICTION_API_KEY", "k")
        monkeypatch.setenv("PORTFOLIO_ENGINE_DEBUG", "yes")

        config = load_config(config_dir / "default.toml")

        assert config.database.db_path == "env.db"
        assert config.lifecycle.cool_off == timedelta(minutes=30)
        assert config.prediction.api_key == "k"
        assert config.debug is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")

    def test_invalid_value_rejected(self, config_dir):
        (config_dir / "bad.toml").write_text("[processor]\nbatch_limit = 0\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_config(config_dir / "bad.toml")


class TestValidators:
    def test_negative_cool_off(self):
        with pytest.raises(ValidationError):
            LifecycleConfig(cool_off_hours=-1)

    def test_zero_cool_off_allowed(self):
        assert LifecycleConfig(cool_off_hours=0).cool_off == timedelta(0)

    @pytest.mark.parametrize("value", ["9", "9:3x", "24:00", "09:60"])
    def test_bad_session_time(self, value):
        with pytest.raises(ValidationError):
            MarketHoursConfig(open_time=value)

    def test_scheduler_interval_positive(self):
        with pytest.raises(ValidationError):
            SchedulerConfig(transaction_interval_seconds=0)
        with pytest.raises(ValidationError):
            SchedulerConfig(jitter_seconds=-1)

    def test_log_level(self):
        assert LoggingConfig(level="debug").level == "DEBUG"
        with pytest.raises(ValidationError):
            LoggingConfig(level="loud")

    def test_frozen(self):
        config = AppConfig()
        with pytest.raises(ValidationError):
            config.debug = True
