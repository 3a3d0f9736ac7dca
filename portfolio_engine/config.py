"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``PORTFOLIO_ENGINE_*`` prefix

Entry point: ``load_config(config_path=None) -> AppConfig``

The lifecycle manager, the transaction processor, the reconciliation sweeper
and every CLI command receive an ``AppConfig`` (or one of its sections) —
never raw dicts or individual env var lookups scattered through the codebase.
"""

from __future__ import annotations

import os
import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/portfolio_engine.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class LifecycleConfig(BaseModel):
    """Optimization lifecycle policy.

    ``cool_off_hours`` is the minimum wait after an applied optimization
    before the same portfolio may be optimized again.
    """

    model_config = ConfigDict(frozen=True)

    cool_off_hours: float = 24.0
    history_default_days: int = 30

    @field_validator("cool_off_hours")
    @classmethod
    def validate_cool_off(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"cool_off_hours must be >= 0, got {v}.")
        return v

    @property
    def cool_off(self) -> timedelta:
        return timedelta(hours=self.cool_off_hours)


class ProcessorConfig(BaseModel):
    """Transaction processor settings."""

    model_config = ConfigDict(frozen=True)

    enforce_market_hours: bool = False
    batch_limit: int = 500

    @field_validator("batch_limit")
    @classmethod
    def validate_batch_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"batch_limit must be >= 1, got {v}.")
        return v


class ReconciliationConfig(BaseModel):
    """Reconciliation sweep settings."""

    model_config = ConfigDict(frozen=True)

    stale_after_hours: float = 72.0


class SchedulerConfig(BaseModel):
    """Background job timers (seconds)."""

    model_config = ConfigDict(frozen=True)

    transaction_interval_seconds: float = 60.0
    reconcile_interval_seconds: float = 120.0
    jitter_seconds: float = 5.0
    tick_seconds: float = 1.0

    @field_validator(
        "transaction_interval_seconds", "reconcile_interval_seconds", "tick_seconds"
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Scheduler intervals must be > 0, got {v}.")
        return v

    @field_validator("jitter_seconds")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"jitter_seconds must be >= 0, got {v}.")
        return v


class PredictionConfig(BaseModel):
    """Remote prediction/optimization service endpoint."""

    model_config = ConfigDict(frozen=True)

    base_url: str = "http://localhost:8000"
    timeout_seconds: float = 30.0
    api_key: Optional[str] = None


class PricingConfig(BaseModel):
    """Where current prices come from.

    ``source = "database"`` reads the latest row of ``price_quotes``;
    ``source = "http"`` calls a remote quote service.
    """

    model_config = ConfigDict(frozen=True)

    source: Literal["database", "http"] = "database"
    base_url: str = "http://localhost:8001"
    timeout_seconds: float = 10.0
    max_quote_age_hours: float = 96.0


class MarketHoursConfig(BaseModel):
    """Regular trading session, used when the processor enforces market hours."""

    model_config = ConfigDict(frozen=True)

    timezone: str = "America/New_York"
    open_time: str = "09:30"
    close_time: str = "16:00"

    @field_validator("open_time", "close_time")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        parts = v.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Expected HH:MM, got '{v}'.")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"Expected HH:MM, got '{v}'.")
        return v


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/portfolio_engine.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class AppConfig(BaseModel):
    """Complete application configuration — the single source of truth.

    Constructed by ``load_config()`` which merges TOML + .env.
    """

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    lifecycle: LifecycleConfig = LifecycleConfig()
    processor: ProcessorConfig = ProcessorConfig()
    reconciliation: ReconciliationConfig = ReconciliationConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    prediction: PredictionConfig = PredictionConfig()
    pricing: PricingConfig = PricingConfig()
    market_hours: MarketHoursConfig = MarketHoursConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    load_dotenv(dotenv_path=root / ".env", override=False)

    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    raw = _apply_env_overrides(raw)

    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply PORTFOLIO_ENGINE_* env vars to the raw config dict.

    Supported overrides:
      PORTFOLIO_ENGINE_DB_PATH             → raw["database"]["db_path"]
      PORTFOLIO_ENGINE_LOG_LEVEL           → raw["logging"]["level"]
      PORTFOLIO_ENGINE_PREDICTION_URL      → raw["prediction"]["base_url"]
      PORTFOLIO_ENGINE_PREDICTION_API_KEY  → raw["prediction"]["api_key"]
      PORTFOLIO_ENGINE_COOL_OFF_HOURS      → raw["lifecycle"]["cool_off_hours"]
      PORTFOLIO_ENGINE_DEBUG               → raw["debug"]
    """
    if db_path := os.environ.get("PORTFOLIO_ENGINE_DB_PATH"):
        raw.setdefault("database", {})["db_path"] = db_path

    if log_level := os.environ.get("PORTFOLIO_ENGINE_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if url := os.environ.get("PORTFOLIO_ENGINE_PREDICTION_URL"):
        raw.setdefault("prediction", {})["base_url"] = url

    if api_key := os.environ.get("PORTFOLIO_ENGINE_PREDICTION_API_KEY"):
        raw.setdefault("prediction", {})["api_key"] = api_key

    if cool_off := os.environ.get("PORTFOLIO_ENGINE_COOL_OFF_HOURS"):
        raw.setdefault("lifecycle", {})["cool_off_hours"] = float(cool_off)

    if debug := os.environ.get("PORTFOLIO_ENGINE_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map raw TOML dict to ``AppConfig`` model structure."""
    project = raw.pop("project", {})

    return AppConfig(
        database=DatabaseConfig(**raw.get("database", {})),
        lifecycle=LifecycleConfig(**raw.get("lifecycle", {})),
        processor=ProcessorConfig(**raw.get("processor", {})),
        reconciliation=ReconciliationConfig(**raw.get("reconciliation", {})),
        scheduler=SchedulerConfig(**raw.get("scheduler", {})),
        prediction=PredictionConfig(**raw.get("prediction", {})),
        pricing=PricingConfig(**raw.get("pricing", {})),
        market_hours=MarketHoursConfig(**raw.get("market_hours", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        debug=raw.get("debug", project.get("debug", False)),
    )
