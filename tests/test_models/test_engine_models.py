"""Tests for Pydantic domain models — construction, validation, immutability."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from portfolio_engine.models.optimization import (
    Optimization,
    OptimizationMetrics,
    PredictionResult,
    Recommendation,
)
from portfolio_engine.models.portfolio import Holding, PriceQuote
from portfolio_engine.models.transaction import Transaction
from portfolio_engine.taxonomy.status_taxonomy import (
    OptimizationStatus,
    RecommendationAction,
    TransactionStatus,
    TransactionType,
)

_NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class TestRecommendation:
    def test_symbol_normalized(self):
        rec = Recommendation(symbol=" acme ", action="buy", target_quantity=1)
        assert rec.symbol == "ACME"
        assert rec.action is RecommendationAction.BUY

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"symbol": "", "target_quantity": 1},
            {"symbol": "ACME", "target_quantity": -1},
            {"symbol": "ACME", "target_quantity": 1, "target_weight": 1.5},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError):
            Recommendation(action="hold", **kwargs)

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            Recommendation(symbol="ACME", action="short", target_quantity=1)


class TestPredictionResult:
    def test_metrics_keep_unknown_keys(self):
        result = PredictionResult.model_validate(
            {"metrics": {"sharpe_ratio": 1.0, "max_drawdown": -0.2}, "confidence": 0.5}
        )
        assert result.metrics.sharpe_ratio == 1.0
        assert result.metrics.model_extra == {"max_drawdown": -0.2}

    def test_confidence_range(self):
        with pytest.raises(ValidationError):
            PredictionResult(confidence=1.01)

    def test_duplicate_symbols_rejected(self):
        with pytest.raises(ValidationError, match="duplicate recommendation for symbol ACME"):
            PredictionResult(recommendations=[
                Recommendation(symbol="ACME", action="buy", target_quantity=15),
                Recommendation(symbol="acme", action="hold", target_quantity=10),
            ])


class TestOptimization:
    def _make(self, **overrides) -> Optimization:
        fields = dict(optimization_id="o1", user_id="u1", portfolio_id="p1", created_at=_NOW)
        fields.update(overrides)
        return Optimization(**fields)

    def test_defaults(self):
        opt = self._make()
        assert opt.status is OptimizationStatus.CREATED
        assert opt.is_active
        assert opt.metrics == OptimizationMetrics()

    def test_created_cannot_own_transactions(self):
        with pytest.raises(ValidationError):
            self._make(transaction_ids=["t1"])

    def test_applied_requires_applied_at(self):
        with pytest.raises(ValidationError):
            self._make(status=OptimizationStatus.APPLIED)
        assert not self._make(status=OptimizationStatus.APPLIED, applied_at=_NOW).is_active

    def test_frozen(self):
        opt = self._make()
        with pytest.raises(ValidationError):
            opt.status = OptimizationStatus.CANCELED


class TestTransactionAndHolding:
    def test_transaction_quantity_positive(self):
        with pytest.raises(ValidationError):
            Transaction(transaction_id="t1", user_id="u1", portfolio_id="p1", symbol="ACME",
                        quantity=0, type=TransactionType.BUY, transaction_date=_NOW)

    def test_transaction_defaults(self):
        tx = Transaction(transaction_id="t1", user_id="u1", portfolio_id="p1", symbol="acme",
                         quantity=2, type="sell", transaction_date=_NOW)
        assert tx.symbol == "ACME"
        assert tx.status is TransactionStatus.ON_HOLD
        assert tx.price_per_share is None

    def test_holding_symbol_normalized(self):
        assert Holding(portfolio_id="p1", symbol=" acme", quantity=1).symbol == "ACME"
        with pytest.raises(ValidationError):
            Holding(portfolio_id="p1", symbol="  ", quantity=1)

    def test_quote_symbol_normalized(self):
        assert PriceQuote(symbol="acme", price=1, quoted_at=_NOW).symbol == "ACME"

    def test_holding_never_negative(self):
        with pytest.raises(ValidationError):
            Holding(portfolio_id="p1", symbol="ACME", quantity=-0.5)

    def test_quote_price_positive(self):
        with pytest.raises(ValidationError):
            PriceQuote(symbol="ACME", price=0, quoted_at=_NOW)
