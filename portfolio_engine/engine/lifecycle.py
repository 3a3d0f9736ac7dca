"""
Optimization lifecycle manager — the caller-facing entry point.

State machine::

    created ──apply──▶ in_progress ──(sweep)──▶ applied | failed
       │                   │
       └──────cancel───────┴──────────────────▶ canceled

Guards on ``request_optimization``, checked in this order:

  1. The portfolio exists and belongs to the user   (``NotFoundError``)
  2. The portfolio holds at least one symbol        (``EmptyPortfolioError``)
  3. The cool-off window has elapsed                (``CoolingOffError``)
  4. No optimization is created / in progress       (``AlreadyActiveError``)

The prediction is fetched after the guards pass and before anything is
written, with no database lock held.  The insert itself re-checks the
cool-off and relies on the ``uq_optimizations_active`` index for
exclusivity, so two concurrent requests cannot both create a row.

Every transition is a conditional update on the current status; losing a
race surfaces as ``InvalidTransitionError``.  Applied/failed transitions
belong to ``ReconciliationSweeper``.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional

from portfolio_engine.config import LifecycleConfig
from portfolio_engine.db.connection import ConnectionFactory, immediate_transaction
from portfolio_engine.db.repositories.optimization_repo import OptimizationRepository
from portfolio_engine.db.repositories.portfolio_repo import PortfolioRepository
from portfolio_engine.db.repositories.transaction_repo import TransactionRepository
from portfolio_engine.engine import cool_off
from portfolio_engine.engine.errors import (
    AlreadyActiveError,
    CoolingOffError,
    EmptyPortfolioError,
    InvalidTransitionError,
    NotFoundError,
)
from portfolio_engine.engine.translator import translate
from portfolio_engine.models.optimization import Optimization
from portfolio_engine.models.portfolio import Portfolio
from portfolio_engine.providers.prediction_client import PredictionProvider
from portfolio_engine.taxonomy.status_taxonomy import (
    ACTIVE_OPTIMIZATION_STATUSES,
    OptimizationStatus,
)
from portfolio_engine.utils.time_utils import Clock, SystemClock

logger = logging.getLogger(__name__)

USER_CANCEL_SUFFIX = " (Canceled by user)"
INVALIDATED_SUFFIX = " (Canceled due to new predictions)"
USER_CANCEL_REASON = "Canceled by user"
INVALIDATED_REASON = "Canceled due to new predictions"


class OptimizationLifecycleManager:
    """Creates, applies, cancels and queries optimizations.

    Args:
        connect: Opens one connection per operation.
        prediction_provider: Source of recommendations.
        clock: Time source; inject a manual clock in tests.
        config: Cool-off duration and history window.
    """

    def __init__(
        self,
        connect: ConnectionFactory,
        prediction_provider: PredictionProvider,
        clock: Optional[Clock] = None,
        config: Optional[LifecycleConfig] = None,
    ) -> None:
        self.connect = connect
        self.prediction_provider = prediction_provider
        self.clock = clock or SystemClock()
        self.config = config or LifecycleConfig()

    # ── Commands ──────────────────────────────────────────────────────────────

    def request_optimization(self, user_id: str, portfolio_id: str) -> Optimization:
        """Fetch recommendations and store them as a new ``created`` optimization.

        Raises:
            NotFoundError: Unknown portfolio, or owned by another user.
            EmptyPortfolioError: Nothing to optimize.
            CoolingOffError: Applied too recently; carries ``remaining``.
            AlreadyActiveError: Another optimization is created/in progress.
            UpstreamUnavailableError: The prediction service failed.  No
                row is written.
        """
        with self.connect() as conn:
            self._require_portfolio(conn, user_id, portfolio_id)
            holdings = PortfolioRepository(conn).get_holdings(portfolio_id)
            if not holdings:
                raise EmptyPortfolioError(portfolio_id)
            optimizations = OptimizationRepository(conn)
            self._check_cool_off(optimizations, user_id, portfolio_id)
            if optimizations.get_active(user_id, portfolio_id) is not None:
                raise AlreadyActiveError(user_id, portfolio_id)

        prediction = self.prediction_provider.get_optimization(
            user_id, sorted(holdings), portfolio_id
        )

        now = self.clock.now()
        optimization = Optimization(
            optimization_id=str(uuid.uuid4()),
            user_id=user_id,
            portfolio_id=portfolio_id,
            status=OptimizationStatus.CREATED,
            created_at=now,
            updated_at=now,
            confidence=prediction.confidence,
            explanation=prediction.explanation,
            model_version=prediction.model_version,
            metrics=prediction.metrics,
            recommendations=prediction.recommendations,
        )
        with self.connect() as conn:
            optimizations = OptimizationRepository(conn)
            with immediate_transaction(conn):
                self._check_cool_off(optimizations, user_id, portfolio_id)
                optimizations.insert_active(optimization)

        logger.info(
            "Created optimization %s for portfolio %s (%d recommendations).",
            optimization.optimization_id, portfolio_id, len(optimization.recommendations),
            extra={"optimization_id": optimization.optimization_id, "portfolio_id": portfolio_id},
        )
        return optimization

    def apply(self, user_id: str, optimization_id: str) -> Optimization:
        """Turn a ``created`` optimization's recommendations into pending trades.

        The status flip, the transaction rows and ``transaction_ids`` commit
        together.  If no recommendation implies a trade, the optimization
        is applied immediately.

        Raises:
            NotFoundError: Unknown optimization, or owned by another user.
            InvalidTransitionError: Not in ``created``.
        """
        now = self.clock.now()
        with self.connect() as conn:
            optimizations = OptimizationRepository(conn)
            with immediate_transaction(conn):
                optimization = self._require_optimization(optimizations, user_id, optimization_id)
                if optimization.status is not OptimizationStatus.CREATED:
                    raise InvalidTransitionError(optimization_id, optimization.status, "apply")

                holdings = PortfolioRepository(conn).get_holdings(optimization.portfolio_id)
                transactions = translate(
                    optimization, {s: h.quantity for s, h in holdings.items()}, now
                )
                suffix = f" Applied with {len(transactions)} transactions created"

                if transactions:
                    TransactionRepository(conn).insert_many(transactions)
                    moved = optimizations.transition(
                        optimization_id,
                        [OptimizationStatus.CREATED],
                        OptimizationStatus.IN_PROGRESS,
                        now,
                        transaction_ids=[t.transaction_id for t in transactions],
                        explanation_suffix=suffix,
                    )
                else:
                    moved = optimizations.transition(
                        optimization_id,
                        [OptimizationStatus.CREATED],
                        OptimizationStatus.APPLIED,
                        now,
                        applied_at=now,
                        transaction_ids=[],
                        explanation_suffix=suffix,
                    )
                if not moved:
                    raise InvalidTransitionError(optimization_id, optimization.status, "apply")

                updated = optimizations.get_by_id(optimization_id)

        logger.info(
            "Applied optimization %s: %d transactions queued.", optimization_id, len(transactions),
            extra={"optimization_id": optimization_id, "portfolio_id": optimization.portfolio_id},
        )
        return updated

    def cancel(self, user_id: str, optimization_id: str) -> Optimization:
        """Cancel a created or in-progress optimization.

        Pending transactions are canceled with it.  Transactions that already
        executed stay executed; holdings are never rolled back.

        Raises:
            NotFoundError: Unknown optimization, or owned by another user.
            InvalidTransitionError: Already applied, canceled or failed.
        """
        now = self.clock.now()
        with self.connect() as conn:
            optimizations = OptimizationRepository(conn)
            with immediate_transaction(conn):
                optimization = self._require_optimization(optimizations, user_id, optimization_id)
                if not self._cancel(
                    conn, optimization, now, USER_CANCEL_SUFFIX, USER_CANCEL_REASON
                ):
                    raise InvalidTransitionError(optimization_id, optimization.status, "cancel")
                updated = optimizations.get_by_id(optimization_id)

        logger.info("Optimization %s canceled by user %s.", optimization_id, user_id)
        return updated

    def invalidate_for_symbols(self, symbols: Iterable[str]) -> list[str]:
        """Cancel every active optimization that fresh predictions make stale.

        An optimization is affected when its recommendations or its
        portfolio's holdings include any of ``symbols``.

        Returns:
            Ids of the optimizations that were canceled.
        """
        symbols = sorted({s.strip().upper() for s in symbols if s.strip()})
        if not symbols:
            return []

        with self.connect() as conn:
            portfolio_ids = PortfolioRepository(conn).find_portfolio_ids_holding(symbols)
            candidates = OptimizationRepository(conn).list_active_touching(symbols, portfolio_ids)

        canceled: list[str] = []
        for candidate in candidates:
            now = self.clock.now()
            with self.connect() as conn:
                optimizations = OptimizationRepository(conn)
                with immediate_transaction(conn):
                    current = optimizations.get_by_id(candidate.optimization_id)
                    if current is None:
                        continue
                    if self._cancel(conn, current, now, INVALIDATED_SUFFIX, INVALIDATED_REASON):
                        canceled.append(current.optimization_id)

        if canceled:
            logger.info(
                "New predictions for %s invalidated %d optimizations.",
                ",".join(symbols), len(canceled),
            )
        return canceled

    def on_new_predictions_available(self, symbols: Iterable[str]) -> list[str]:
        """Hook for the prediction pipeline; see ``invalidate_for_symbols``."""
        return self.invalidate_for_symbols(symbols)

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_optimization(self, user_id: str, optimization_id: str) -> Optimization:
        with self.connect() as conn:
            return self._require_optimization(
                OptimizationRepository(conn), user_id, optimization_id
            )

    def get_status(self, user_id: str, optimization_id: str) -> OptimizationStatus:
        return self.get_optimization(user_id, optimization_id).status

    def get_active(self, user_id: str, portfolio_id: str) -> Optional[Optimization]:
        with self.connect() as conn:
            self._require_portfolio(conn, user_id, portfolio_id)
            return OptimizationRepository(conn).get_active(user_id, portfolio_id)

    def get_remaining_cool_off(self, user_id: str, portfolio_id: str) -> timedelta:
        """Time left before ``portfolio_id`` may be optimized again."""
        with self.connect() as conn:
            self._require_portfolio(conn, user_id, portfolio_id)
            last_applied = OptimizationRepository(conn).get_last_applied_at(user_id, portfolio_id)
        return cool_off.remaining(self.clock.now(), last_applied, self.config.cool_off)

    def get_history(
        self,
        user_id: str,
        portfolio_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Optimization]:
        """Optimizations created in ``[start, end]``, newest first.

        Defaults to the last ``history_default_days`` days.
        """
        end = end or self.clock.now()
        start = start or end - timedelta(days=self.config.history_default_days)
        if start > end:
            raise ValueError(f"start ({start.isoformat()}) is after end ({end.isoformat()}).")
        with self.connect() as conn:
            self._require_portfolio(conn, user_id, portfolio_id)
            return OptimizationRepository(conn).list_history(user_id, portfolio_id, start, end)

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _require_portfolio(conn: sqlite3.Connection, user_id: str, portfolio_id: str) -> Portfolio:
        portfolio = PortfolioRepository(conn).get_portfolio(portfolio_id)
        if portfolio is None or portfolio.user_id != user_id:
            raise NotFoundError("Portfolio", portfolio_id)
        return portfolio

    @staticmethod
    def _require_optimization(
        optimizations: OptimizationRepository, user_id: str, optimization_id: str
    ) -> Optimization:
        optimization = optimizations.get_by_id(optimization_id)
        if optimization is None or optimization.user_id != user_id:
            raise NotFoundError("Optimization", optimization_id)
        return optimization

    def _check_cool_off(
        self, optimizations: OptimizationRepository, user_id: str, portfolio_id: str
    ) -> None:
        last_applied = optimizations.get_last_applied_at(user_id, portfolio_id)
        left = cool_off.remaining(self.clock.now(), last_applied, self.config.cool_off)
        if left > timedelta(0):
            raise CoolingOffError(portfolio_id, left)

    @staticmethod
    def _cancel(
        conn: sqlite3.Connection,
        optimization: Optimization,
        now: datetime,
        suffix: str,
        reason: str,
    ) -> bool:
        """Cancel ``optimization`` and its pending transactions.  Must run
        inside an open write transaction.  Returns ``False`` if it is no
        longer active."""
        if optimization.status not in ACTIVE_OPTIMIZATION_STATUSES:
            return False
        moved = OptimizationRepository(conn).transition(
            optimization.optimization_id,
            [optimization.status],
            OptimizationStatus.CANCELED,
            now,
            explanation_suffix=suffix,
        )
        if moved and optimization.status is OptimizationStatus.IN_PROGRESS:
            count = TransactionRepository(conn).cancel_on_hold(
                optimization.transaction_ids, reason, now
            )
            logger.info(
                "Canceled %d pending transactions of optimization %s.",
                count, optimization.optimization_id,
            )
        return moved
