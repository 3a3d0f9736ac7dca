"""Tests for TransactionProcessor: execution, deferral, failure, idempotency."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest

from portfolio_engine.config import MarketHoursConfig, ProcessorConfig
from portfolio_engine.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_engine.db.repositories.transaction_repo import TransactionRepository
from portfolio_engine.engine.processor import ProcessOutcome, TransactionProcessor
from portfolio_engine.models.transaction import Transaction
from portfolio_engine.taxonomy.status_taxonomy import (
    TransactionStatus,
    TransactionTrigger,
    TransactionType,
)

from conftest import ManualClock


def _queue(connect, clock, symbol, quantity, tx_type, portfolio_id="p1") -> Transaction:
    tx = Transaction(
        transaction_id=str(uuid.uuid4()),
        user_id="u1",
        portfolio_id=portfolio_id,
        symbol=symbol,
        quantity=quantity,
        type=tx_type,
        triggered_by=TransactionTrigger.USER,
        transaction_date=clock.now(),
    )
    with connect() as conn:
        TransactionRepository(conn).insert_many([tx])
    return tx


def _reload(connect, tx: Transaction) -> Transaction:
    with connect() as conn:
        return TransactionRepository(conn).get_by_id(tx.transaction_id)


def _holding(connect, symbol, portfolio_id="p1"):
    with connect() as conn:
        return PortfolioRepository(conn).get_holding(portfolio_id, symbol)


class TestWorkedExample:
    def test_acme_buy_five_at_twenty(
        self, manager, processor, sweeper, predictions, seed_portfolio, connect, clock
    ):
        seed_portfolio({"ACME": 10}, unit_cost=10.0)
        predictions.set_targets({"ACME": 15})
        opt = manager.request_optimization("u1", "p1")
        applied = manager.apply("u1", opt.optimization_id)
        [tx_id] = applied.transaction_ids

        result = processor.process_pending()
        sweep = sweeper.sweep()

        assert result.succeeded == [tx_id]
        with connect() as conn:
            tx = TransactionRepository(conn).get_by_id(tx_id)
        assert tx.status is TransactionStatus.SUCCEEDED
        assert tx.type is TransactionType.BUY
        assert tx.quantity == pytest.approx(5)
        assert tx.price_per_share == pytest.approx(20.0)
        assert tx.transaction_value == pytest.approx(100.0)
        assert tx.executed_at == clock.now()

        holding = _holding(connect, "ACME")
        assert holding.quantity == pytest.approx(15)
        assert holding.total_base_value == pytest.approx(200.0)     # 100 + 5 × 20
        assert holding.current_total_value == pytest.approx(300.0)  # 15 × 20
        assert holding.percentage_change == pytest.approx(50.0)

        assert sweep.applied == [opt.optimization_id]
        final = manager.get_optimization("u1", opt.optimization_id)
        assert final.applied_at == clock.now()


class TestExecution:
    def test_sell_reduces_basis_proportionally(self, processor, seed_portfolio, connect, clock):
        seed_portfolio({"ACME": 10}, unit_cost=10.0)
        tx = _queue(connect, clock, "ACME", 4, TransactionType.SELL)

        assert processor.process(tx) is ProcessOutcome.SUCCEEDED

        holding = _holding(connect, "ACME")
        assert holding.quantity == pytest.approx(6)
        assert holding.total_base_value == pytest.approx(60.0)
        assert holding.current_total_value == pytest.approx(120.0)

    def test_selling_everything_removes_holding(self, processor, seed_portfolio, connect, clock):
        seed_portfolio({"ACME": 10})
        tx = _queue(connect, clock, "ACME", 10, TransactionType.SELL)

        assert processor.process(tx) is ProcessOutcome.SUCCEEDED
        assert _holding(connect, "ACME") is None

    def test_buy_of_new_symbol_creates_holding(
        self, processor, prices, seed_portfolio, connect, clock
    ):
        seed_portfolio({"ACME": 10})
        prices.prices["NEWCO"] = 7.5
        tx = _queue(connect, clock, "NEWCO", 2, TransactionType.BUY)

        processor.process(tx)

        holding = _holding(connect, "NEWCO")
        assert holding.quantity == pytest.approx(2)
        assert holding.total_base_value == pytest.approx(15.0)

    def test_touches_portfolio_last_updated(
        self, processor, seed_portfolio, connect, clock
    ):
        from datetime import timedelta

        seed_portfolio({"ACME": 10})
        clock.advance(timedelta(minutes=5))
        tx = _queue(connect, clock, "ACME", 1, TransactionType.BUY)
        processor.process(tx)
        with connect() as conn:
            assert PortfolioRepository(conn).get_portfolio("p1").last_updated == clock.now()

    def test_oldest_first_and_batch_limit(self, connect, prices, clock, seed_portfolio):
        from datetime import timedelta

        seed_portfolio({"ACME": 10})
        first = _queue(connect, clock, "ACME", 1, TransactionType.BUY)
        clock.advance(timedelta(seconds=1))
        _queue(connect, clock, "ACME", 1, TransactionType.BUY)

        limited = TransactionProcessor(connect, prices, clock, ProcessorConfig(batch_limit=1))
        result = limited.process_pending()
        assert result.succeeded == [first.transaction_id]
        assert result.total == 1


class TestSellCap:
    def test_oversized_sell_fails_and_holding_untouched(
        self, processor, seed_portfolio, connect, clock
    ):
        seed_portfolio({"ACME": 10})
        tx = _queue(connect, clock, "ACME", 11, TransactionType.SELL)

        assert processor.process(tx) is ProcessOutcome.FAILED

        failed = _reload(connect, tx)
        assert failed.status is TransactionStatus.FAILED
        assert "only 10 held" in failed.failure_reason
        assert failed.price_per_share is None
        assert _holding(connect, "ACME").quantity == pytest.approx(10)
        with connect() as conn:
            assert PortfolioRepository(conn).get_application(tx.transaction_id) is None

    def test_sell_of_unheld_symbol_fails(self, processor, prices, seed_portfolio, connect, clock):
        seed_portfolio({"ACME": 10})
        prices.prices["BETA"] = 3.0
        tx = _queue(connect, clock, "BETA", 1, TransactionType.SELL)

        assert processor.process(tx) is ProcessOutcome.FAILED
        assert _holding(connect, "BETA") is None


class TestDeferral:
    def test_missing_price_leaves_on_hold(self, processor, prices, seed_portfolio, connect, clock):
        seed_portfolio({"ACME": 10})
        tx = _queue(connect, clock, "BETA", 1, TransactionType.BUY)

        result = processor.process_pending()

        assert result.deferred == [tx.transaction_id]
        assert _reload(connect, tx).status is TransactionStatus.ON_HOLD

        prices.prices["BETA"] = 4.0
        assert processor.process_pending().succeeded == [tx.transaction_id]

    def test_unknown_symbol_fails(self, processor, prices, seed_portfolio, connect, clock):
        seed_portfolio({"ACME": 10})
        prices.unknown.add("BOGUS")
        tx = _queue(connect, clock, "BOGUS", 1, TransactionType.BUY)

        assert processor.process_pending().failed == [tx.transaction_id]
        assert "not tradable" in _reload(connect, tx).failure_reason

    def test_market_gate_defers_when_closed(self, connect, prices, seed_portfolio):
        saturday = ManualClock(datetime(2026, 3, 7, 15, 0, tzinfo=timezone.utc))
        seed_portfolio({"ACME": 10})
        tx = _queue(connect, saturday, "ACME", 1, TransactionType.BUY)
        gated = TransactionProcessor(
            connect, prices, saturday,
            ProcessorConfig(enforce_market_hours=True), MarketHoursConfig(),
        )

        assert gated.process_pending().deferred == [tx.transaction_id]
        assert prices.calls == []
        assert gated.can_process_immediately(tx) is False

    def test_market_gate_open_during_session(self, connect, prices, clock, seed_portfolio):
        seed_portfolio({"ACME": 10})
        tx = _queue(connect, clock, "ACME", 1, TransactionType.BUY)
        gated = TransactionProcessor(
            connect, prices, clock, ProcessorConfig(enforce_market_hours=True)
        )
        assert gated.can_process_immediately(tx) is True
        assert gated.process_pending().succeeded == [tx.transaction_id]


class TestIdempotency:
    def test_processing_twice_applies_once(self, processor, seed_portfolio, connect, clock):
        seed_portfolio({"ACME": 10})
        tx = _queue(connect, clock, "ACME", 5, TransactionType.BUY)

        assert processor.process(tx) is ProcessOutcome.SUCCEEDED
        assert processor.process(tx) is ProcessOutcome.SUCCEEDED
        assert processor.process_pending().total == 0

        assert _holding(connect, "ACME").quantity == pytest.approx(15)

    def test_recovers_transaction_whose_delta_was_recorded(
        self, processor, prices, seed_portfolio, connect, clock
    ):
        """Holding mutated, status flip lost: the next pass completes without reapplying."""
        seed_portfolio({"ACME": 10})
        tx = _queue(connect, clock, "ACME", 5, TransactionType.BUY)
        with connect() as conn:
            PortfolioRepository(conn).apply_holding_delta(
                "p1", "ACME", 5, 100.0, idempotency_key=tx.transaction_id,
                mark_price=20.0, applied_at=clock.now(),
            )

        prices.prices.clear()   # recovery must not need a price
        result = processor.process_pending()

        assert result.succeeded == [tx.transaction_id]
        recovered = _reload(connect, tx)
        assert recovered.status is TransactionStatus.SUCCEEDED
        assert recovered.price_per_share == pytest.approx(20.0)
        assert _holding(connect, "ACME").quantity == pytest.approx(15)

    def test_resolved_transaction_is_skipped(self, processor, seed_portfolio, connect, clock):
        seed_portfolio({"ACME": 10})
        tx = _queue(connect, clock, "ACME", 1, TransactionType.BUY)
        with connect() as conn:
            TransactionRepository(conn).cancel_on_hold([tx.transaction_id], "test", clock.now())

        assert processor.process(tx) is ProcessOutcome.SKIPPED
        assert _holding(connect, "ACME").quantity == pytest.approx(10)
