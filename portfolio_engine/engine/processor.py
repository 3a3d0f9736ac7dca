"""
Transaction processor — executes ``on_hold`` transactions against holdings.

For each pending transaction, oldest first:

  1. Market gate.  When ``enforce_market_hours`` is on and the regular
     session is closed, the transaction is deferred.
  2. Recovery.  If ``holding_applications`` already holds the transaction's
     key, the holding was mutated by an earlier attempt; the transaction is
     flipped to ``succeeded`` from the recorded price without re-applying.
  3. Price.  Resolved now, at execution time.  ``PriceUnavailableError``
     defers; ``UnknownSymbolError`` fails the transaction.
  4. Execution.  Inside one ``BEGIN IMMEDIATE`` transaction: re-check the
     transaction is still ``on_hold``, apply the holding delta (recording
     the application), flip the transaction to ``succeeded``.  A sell
     larger than the position raises ``InsufficientHoldingsError`` and the
     transaction is marked ``failed`` instead.

Deferred transactions are simply left ``on_hold``; the next pass retries.
No database lock is held while the price is fetched.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Optional

from portfolio_engine.config import MarketHoursConfig, ProcessorConfig
from portfolio_engine.db.connection import ConnectionFactory, immediate_transaction
from portfolio_engine.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_engine.db.repositories.transaction_repo import TransactionRepository
from portfolio_engine.engine.errors import (
    DomainViolation,
    NotFoundError,
    PriceUnavailableError,
)
from portfolio_engine.models.transaction import Transaction
from portfolio_engine.providers.price_oracle import PriceOracle
from portfolio_engine.taxonomy.status_taxonomy import TransactionStatus, TransactionType
from portfolio_engine.utils.time_utils import Clock, SystemClock, is_market_open

logger = logging.getLogger(__name__)


class ProcessOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
    """Already resolved by someone else between listing and execution."""


@dataclass
class ProcessResult:
    """Transaction ids touched by one ``process_pending()`` pass."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.deferred) + len(self.skipped)

    def record(self, transaction_id: str, outcome: ProcessOutcome) -> None:
        getattr(self, outcome.value).append(transaction_id)


class TransactionProcessor:
    """Drains the ``on_hold`` queue.

    Args:
        connect: Opens one connection per unit of work.
        price_oracle: Current-price source.
        clock: Time source.
        config: Batch size and market-gate switch.
        market_hours: Session definition used when the gate is on.
    """

    def __init__(
        self,
        connect: ConnectionFactory,
        price_oracle: PriceOracle,
        clock: Optional[Clock] = None,
        config: Optional[ProcessorConfig] = None,
        market_hours: Optional[MarketHoursConfig] = None,
    ) -> None:
        self.connect = connect
        self.price_oracle = price_oracle
        self.clock = clock or SystemClock()
        self.config = config or ProcessorConfig()
        self.market_hours = market_hours or MarketHoursConfig()

    # ── Queries ───────────────────────────────────────────────────────────────

    def market_is_open(self) -> bool:
        """True when trades may execute now (always, if the gate is off)."""
        if not self.config.enforce_market_hours:
            return True
        return is_market_open(
            self.clock.now(),
            self.market_hours.timezone,
            self.market_hours.open_time,
            self.market_hours.close_time,
        )

    def can_process_immediately(self, transaction: Transaction) -> bool:
        """True if ``transaction`` is pending, the market gate is open and a
        price is available right now."""
        if transaction.status is not TransactionStatus.ON_HOLD or not self.market_is_open():
            return False
        try:
            self.price_oracle.get_current_price(transaction.symbol)
        except (PriceUnavailableError, DomainViolation):
            return False
        return True

    # ── Execution ─────────────────────────────────────────────────────────────

    def process_pending(self) -> ProcessResult:
        """Process up to ``batch_limit`` pending transactions, oldest first."""
        result = ProcessResult()
        with self.connect() as conn:
            pending = TransactionRepository(conn).list_on_hold(self.config.batch_limit)

        if not pending:
            logger.debug("No pending transactions.")
            return result

        if not self.market_is_open():
            logger.info("Market closed; deferring %d pending transactions.", len(pending))
            for tx in pending:
                result.record(tx.transaction_id, ProcessOutcome.DEFERRED)
            return result

        for tx in pending:
            try:
                outcome = self.process(tx)
            except sqlite3.OperationalError as exc:
                logger.warning("Database busy while processing %s: %s", tx.transaction_id, exc)
                outcome = ProcessOutcome.DEFERRED
            result.record(tx.transaction_id, outcome)

        logger.info(
            "Transaction pass: %d succeeded, %d failed, %d deferred, %d skipped.",
            len(result.succeeded), len(result.failed), len(result.deferred), len(result.skipped),
        )
        return result

    def process(self, transaction: Transaction) -> ProcessOutcome:
        """Try to execute one transaction.  Safe to call repeatedly."""
        tx_id = transaction.transaction_id

        if not self.market_is_open():
            logger.debug("Market closed; deferring %s.", tx_id)
            return ProcessOutcome.DEFERRED

        if self._recover_applied(transaction):
            return ProcessOutcome.SUCCEEDED

        try:
            price = self.price_oracle.get_current_price(transaction.symbol)
        except PriceUnavailableError as exc:
            logger.debug("Deferring %s: %s", tx_id, exc)
            return ProcessOutcome.DEFERRED
        except DomainViolation as exc:
            return self._fail(transaction, str(exc))

        now = self.clock.now()
        with self.connect() as conn:
            portfolios = PortfolioRepository(conn)
            transactions = TransactionRepository(conn)
            try:
                with immediate_transaction(conn):
                    current = transactions.get_by_id(tx_id)
                    if current is None or current.status is not TransactionStatus.ON_HOLD:
                        logger.debug("Transaction %s already resolved; skipping.", tx_id)
                        return ProcessOutcome.SKIPPED

                    value_delta = self._value_delta(portfolios, current, price)
                    portfolios.apply_holding_delta(
                        current.portfolio_id,
                        current.symbol,
                        current.signed_quantity,
                        value_delta,
                        idempotency_key=tx_id,
                        mark_price=price,
                        applied_at=now,
                    )
                    transactions.mark_succeeded(tx_id, price, current.quantity * price, now)
            except (DomainViolation, NotFoundError) as exc:
                failure = str(exc)
            else:
                logger.info(
                    "Executed %s: %s %g %s @ %.4f",
                    tx_id, transaction.type.value, transaction.quantity, transaction.symbol, price,
                    extra={"transaction_id": tx_id, "portfolio_id": transaction.portfolio_id,
                           "symbol": transaction.symbol, "status": "succeeded"},
                )
                return ProcessOutcome.SUCCEEDED

        return self._fail(transaction, failure)

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _value_delta(portfolios: PortfolioRepository, tx: Transaction, price: float) -> float:
        """Cost-basis change: buys add their cost, sells release the sold share
        of the basis."""
        if tx.type is TransactionType.BUY:
            return tx.quantity * price
        holding = portfolios.get_holding(tx.portfolio_id, tx.symbol)
        if holding is None or holding.quantity <= 0:
            return 0.0
        sold = min(tx.quantity, holding.quantity)
        return -holding.total_base_value * sold / holding.quantity

    def _recover_applied(self, transaction: Transaction) -> bool:
        """Finish a transaction whose holding delta is already recorded."""
        with self.connect() as conn:
            application = PortfolioRepository(conn).get_application(transaction.transaction_id)
            if application is None:
                return False
            price = application.mark_price
            if price is None:
                price = abs(application.value_delta) / transaction.quantity
            flipped = TransactionRepository(conn).mark_succeeded(
                transaction.transaction_id,
                price,
                transaction.quantity * price,
                application.applied_at,
            )
        if flipped:
            logger.warning(
                "Recovered %s: holding delta was already applied; marked succeeded.",
                transaction.transaction_id,
            )
        return True

    def _fail(self, transaction: Transaction, reason: str) -> ProcessOutcome:
        with self.connect() as conn:
            flipped = TransactionRepository(conn).mark_failed(
                transaction.transaction_id, reason, self.clock.now()
            )
        if not flipped:
            return ProcessOutcome.SKIPPED
        logger.warning(
            "Transaction %s failed: %s", transaction.transaction_id, reason,
            extra={"transaction_id": transaction.transaction_id,
                   "portfolio_id": transaction.portfolio_id, "status": "failed"},
        )
        return ProcessOutcome.FAILED
