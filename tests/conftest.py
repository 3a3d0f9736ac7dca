"""
Shared pytest fixtures for the portfolio engine test suite.

Provides:
  - ``in_memory_db``: A fresh in-memory SQLite connection with the full
    schema applied.  Created anew for each test that requests it.
  - ``connect``: A ``ConnectionFactory`` handing out that connection.
  - ``clock``: A manually advanced clock (starts Monday 2026-03-02 15:00 UTC,
    inside the New York regular session).
  - ``predictions`` / ``prices``: In-process fakes for the two external
    services.
  - ``seed_portfolio``: Factory inserting a portfolio with holdings.
  - ``manager`` / ``processor`` / ``sweeper``: Engine components wired to
    the fixtures above.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Optional

import pytest

from portfolio_engine.config import LifecycleConfig, ProcessorConfig, ReconciliationConfig
from portfolio_engine.db.connection import ConnectionFactory, shared_connection_factory
from portfolio_engine.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_engine.db.schema import apply_schema
from portfolio_engine.engine.errors import (
    PriceUnavailableError,
    UnknownSymbolError,
    UpstreamUnavailableError,
)
from portfolio_engine.engine.lifecycle import OptimizationLifecycleManager
from portfolio_engine.engine.processor import TransactionProcessor
from portfolio_engine.engine.reconciler import ReconciliationSweeper
from portfolio_engine.models.optimization import (
    OptimizationMetrics,
    PredictionResult,
    Recommendation,
)
from portfolio_engine.models.portfolio import Holding, Portfolio
from portfolio_engine.taxonomy.status_taxonomy import RecommendationAction

T0 = datetime(2026, 3, 2, 15, 0, 0, tzinfo=timezone.utc)


# ── Fakes ─────────────────────────────────────────────────────────────────────

class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        self.current += delta
        return self.current


class FakePredictionProvider:
    """Returns targets set by the test; records every call."""

    def __init__(self) -> None:
        self.targets: dict[str, float] = {}
        self.error: Optional[Exception] = None
        self.calls: list[tuple[str, list[str], Optional[str]]] = []
        self.before_return: Optional[Callable[[], None]] = None

    def set_targets(self, targets: dict[str, float]) -> None:
        self.targets = dict(targets)

    def get_optimization(self, user_id, symbols, portfolio_id=None) -> PredictionResult:
        self.calls.append((user_id, list(symbols), portfolio_id))
        if self.before_return is not None:
            self.before_return()
        if self.error is not None:
            raise self.error
        targets = self.targets or {s: 0.0 for s in symbols}
        return PredictionResult(
            recommendations=[
                Recommendation(
                    symbol=symbol,
                    action=RecommendationAction.HOLD,
                    target_quantity=qty,
                    explanation=f"target {qty:g}",
                )
                for symbol, qty in targets.items()
            ],
            metrics=OptimizationMetrics(sharpe_ratio=1.1, projected_sharpe_ratio=1.3),
            confidence=0.8,
            explanation="Rebalance toward target weights.",
            model_version="test-1",
        )


class FakePriceOracle:
    """Prices from a dict; symbols in ``unknown`` are permanently untradable."""

    def __init__(self, prices: Optional[dict[str, float]] = None) -> None:
        self.prices: dict[str, float] = dict(prices or {})
        self.unknown: set[str] = set()
        self.calls: list[str] = []

    def get_current_price(self, symbol: str) -> float:
        self.calls.append(symbol)
        if symbol in self.unknown:
            raise UnknownSymbolError(symbol)
        if symbol not in self.prices:
            raise PriceUnavailableError(symbol)
        return self.prices[symbol]


# ── Database fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the full schema applied.

    Foreign key enforcement is ON.  Connection is closed after the test.
    """
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    apply_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def connect(in_memory_db) -> ConnectionFactory:
    return shared_connection_factory(in_memory_db)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def predictions() -> FakePredictionProvider:
    return FakePredictionProvider()


@pytest.fixture
def prices() -> FakePriceOracle:
    return FakePriceOracle({"ACME": 20.0})


@pytest.fixture
def seed_portfolio(connect, clock) -> Callable[..., str]:
    """Insert a portfolio with the given holdings and return its id."""

    def _seed(
        holdings: Optional[dict[str, float]] = None,
        portfolio_id: str = "p1",
        user_id: str = "u1",
        unit_cost: float = 10.0,
    ) -> str:
        with connect() as conn:
            repo = PortfolioRepository(conn)
            repo.create_portfolio(
                Portfolio(
                    portfolio_id=portfolio_id,
                    user_id=user_id,
                    name=f"Portfolio {portfolio_id}",
                    created_at=clock.now(),
                    last_updated=clock.now(),
                )
            )
            for symbol, qty in (holdings if holdings is not None else {"ACME": 10}).items():
                repo.set_holding(
                    Holding(
                        portfolio_id=portfolio_id,
                        symbol=symbol,
                        quantity=qty,
                        total_base_value=qty * unit_cost,
                        current_total_value=qty * unit_cost,
                        last_updated=clock.now(),
                    )
                )
        return portfolio_id

    return _seed


# ── Engine fixtures ───────────────────────────────────────────────────────────

@pytest.fixture
def manager(connect, predictions, clock) -> OptimizationLifecycleManager:
    return OptimizationLifecycleManager(connect, predictions, clock, LifecycleConfig())


@pytest.fixture
def processor(connect, prices, clock) -> TransactionProcessor:
    return TransactionProcessor(connect, prices, clock, ProcessorConfig())


@pytest.fixture
def sweeper(connect, clock) -> ReconciliationSweeper:
    return ReconciliationSweeper(connect, clock, ReconciliationConfig())


@pytest.fixture
def upstream_down() -> UpstreamUnavailableError:
    return UpstreamUnavailableError("prediction service", "timed out after 30s")
