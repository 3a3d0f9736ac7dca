"""Tests for repository operations using in-memory SQLite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from portfolio_engine.db.repositories.optimization_repo import OptimizationRepository
from portfolio_engine.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_engine.db.repositories.price_repo import PriceQuoteRepository
from portfolio_engine.engine.errors import (
    AlreadyActiveError,
    InsufficientHoldingsError,
    NotFoundError,
)
from portfolio_engine.models.optimization import (
    Optimization,
    OptimizationMetrics,
    Recommendation,
)
from portfolio_engine.models.portfolio import Holding, Portfolio, PriceQuote
from portfolio_engine.taxonomy.status_taxonomy import (
    OptimizationStatus,
    QuoteKind,
    RecommendationAction,
)

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


# ── Helpers ────────────────────────────────────────────────────────────────────

def _portfolio(conn, portfolio_id="p1", user_id="u1", holdings=None) -> PortfolioRepository:
    repo = PortfolioRepository(conn)
    repo.create_portfolio(
        Portfolio(portfolio_id=portfolio_id, user_id=user_id, name="Core",
                  created_at=T0, last_updated=T0)
    )
    for symbol, qty in (holdings or {}).items():
        repo.set_holding(
            Holding(portfolio_id=portfolio_id, symbol=symbol, quantity=qty,
                    total_base_value=qty * 10, current_total_value=qty * 10, last_updated=T0)
        )
    return repo


def _optimization(optimization_id="o1", portfolio_id="p1", created_at=T0, symbols=("ACME",)):
    return Optimization(
        optimization_id=optimization_id,
        user_id="u1",
        portfolio_id=portfolio_id,
        created_at=created_at,
        updated_at=created_at,
        confidence=0.7,
        explanation="why",
        model_version="m1",
        metrics=OptimizationMetrics(sharpe_ratio=0.9, custom_score=3.5),
        recommendations=[
            Recommendation(symbol=s, action=RecommendationAction.BUY, target_quantity=5,
                           target_weight=0.5)
            for s in symbols
        ],
    )


# ── Portfolio store ───────────────────────────────────────────────────────────

class TestPortfolioRepository:
    def test_holdings_keyed_by_symbol(self, in_memory_db):
        repo = _portfolio(in_memory_db, holdings={"ACME": 10, "BETA": 2})
        holdings = repo.get_holdings("p1")
        assert sorted(holdings) == ["ACME", "BETA"]
        assert holdings["ACME"].quantity == 10

    def test_set_holding_normalizes_symbol(self, in_memory_db):
        repo = _portfolio(in_memory_db, holdings={"acme ": 4})
        assert list(repo.get_holdings("p1")) == ["ACME"]
        assert repo.get_holding("p1", "ACME").quantity == 4
        assert repo.find_portfolio_ids_holding(["ACME"]) == ["p1"]

    def test_apply_delta_is_idempotent_on_key(self, in_memory_db):
        repo = _portfolio(in_memory_db, holdings={"ACME": 10})

        assert repo.apply_holding_delta("p1", "ACME", 5, 100.0, "k1", mark_price=20.0) is True
        assert repo.apply_holding_delta("p1", "ACME", 5, 100.0, "k1", mark_price=20.0) is False

        assert repo.get_holding("p1", "ACME").quantity == pytest.approx(15)
        application = repo.get_application("k1")
        assert application.quantity_delta == 5
        assert application.mark_price == 20.0

    def test_negative_result_refused(self, in_memory_db):
        repo = _portfolio(in_memory_db, holdings={"ACME": 3})
        with pytest.raises(InsufficientHoldingsError):
            repo.apply_holding_delta("p1", "ACME", -4, -40.0, "k2")
        assert repo.get_holding("p1", "ACME").quantity == 3
        assert repo.get_application("k2") is None

    def test_unknown_portfolio(self, in_memory_db):
        repo = PortfolioRepository(in_memory_db)
        with pytest.raises(NotFoundError):
            repo.apply_holding_delta("nope", "ACME", 1, 1.0, "k3")

    def test_without_mark_price_scales_current_value(self, in_memory_db):
        repo = _portfolio(in_memory_db, holdings={"ACME": 10})
        repo.apply_holding_delta("p1", "ACME", -5, -50.0, "k4")
        holding = repo.get_holding("p1", "ACME")
        assert holding.current_total_value == pytest.approx(50.0)
        assert holding.total_base_value == pytest.approx(50.0)
        assert holding.percentage_change == pytest.approx(0.0)

    def test_find_portfolios_holding(self, in_memory_db):
        _portfolio(in_memory_db, "p1", holdings={"ACME": 1})
        _portfolio(in_memory_db, "p2", holdings={"BETA": 1})
        repo = PortfolioRepository(in_memory_db)
        assert repo.find_portfolio_ids_holding(["ACME", "ZZZ"]) == ["p1"]
        assert repo.find_portfolio_ids_holding([]) == []


# ── Optimizations ─────────────────────────────────────────────────────────────

class TestOptimizationRepository:
    def test_insert_and_fetch_round_trip(self, in_memory_db):
        _portfolio(in_memory_db)
        repo = OptimizationRepository(in_memory_db)
        original = _optimization(symbols=("ACME", "BETA"))
        repo.insert_active(original)

        fetched = repo.get_by_id("o1")
        assert fetched == original
        assert fetched.metrics.model_extra == {"custom_score": 3.5}

    def test_insert_active_maps_constraint(self, in_memory_db):
        _portfolio(in_memory_db)
        repo = OptimizationRepository(in_memory_db)
        repo.insert_active(_optimization("o1"))
        with pytest.raises(AlreadyActiveError):
            repo.insert_active(_optimization("o2"))

    def test_transition_is_conditional(self, in_memory_db):
        _portfolio(in_memory_db)
        repo = OptimizationRepository(in_memory_db)
        repo.insert_active(_optimization())

        assert repo.transition("o1", [OptimizationStatus.CREATED], OptimizationStatus.IN_PROGRESS,
                               T0, transaction_ids=["t1"], explanation_suffix=" more")
        assert not repo.transition("o1", [OptimizationStatus.CREATED], OptimizationStatus.CANCELED, T0)

        fetched = repo.get_by_id("o1")
        assert fetched.status is OptimizationStatus.IN_PROGRESS
        assert fetched.transaction_ids == ["t1"]
        assert fetched.explanation == "why more"

    def test_transition_stamps_updated_at(self, in_memory_db):
        _portfolio(in_memory_db)
        repo = OptimizationRepository(in_memory_db)
        repo.insert_active(_optimization())
        assert repo.get_by_id("o1").updated_at == T0

        applied_at = T0 + timedelta(days=4)
        repo.transition("o1", [OptimizationStatus.CREATED], OptimizationStatus.IN_PROGRESS,
                        applied_at, transaction_ids=["t1"])

        fetched = repo.get_by_id("o1")
        assert fetched.created_at == T0
        assert fetched.updated_at == applied_at

    def test_last_applied_at_uses_latest(self, in_memory_db):
        _portfolio(in_memory_db)
        repo = OptimizationRepository(in_memory_db)
        for i, applied_at in enumerate([T0, T0 + timedelta(hours=5)]):
            repo.insert_active(_optimization(f"o{i}"))
            repo.transition(f"o{i}", [OptimizationStatus.CREATED], OptimizationStatus.APPLIED,
                            applied_at, applied_at=applied_at)
        assert repo.get_last_applied_at("u1", "p1") == T0 + timedelta(hours=5)
        assert repo.get_last_applied_at("u1", "other") is None

    def test_list_active_touching(self, in_memory_db):
        _portfolio(in_memory_db, "p1")
        _portfolio(in_memory_db, "p2")
        repo = OptimizationRepository(in_memory_db)
        repo.insert_active(_optimization("o1", "p1", symbols=("ACME",)))
        repo.insert_active(_optimization("o2", "p2", symbols=("BETA",)))

        assert [o.optimization_id for o in repo.list_active_touching(["ACME"])] == ["o1"]
        assert [o.optimization_id for o in repo.list_active_touching([], ["p2"])] == ["o2"]
        assert repo.list_active_touching([]) == []


# ── Price quotes ──────────────────────────────────────────────────────────────

class TestPriceQuoteRepository:
    def test_latest_per_kind(self, in_memory_db):
        repo = PriceQuoteRepository(in_memory_db)
        repo.insert(PriceQuote(symbol="acme", price=19.0, quoted_at=T0))
        repo.insert(PriceQuote(symbol="ACME", price=20.0, quoted_at=T0 + timedelta(minutes=1)))
        repo.insert(PriceQuote(symbol="ACME", price=18.0, kind=QuoteKind.CLOSE, quoted_at=T0))

        assert repo.get_latest("ACME", QuoteKind.INTRADAY).price == 20.0
        assert repo.get_latest("ACME", QuoteKind.CLOSE).price == 18.0
        assert repo.get_latest("BETA", QuoteKind.INTRADAY) is None
        assert repo.has_symbol("acme")
