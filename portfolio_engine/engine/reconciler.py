"""
Reconciliation sweep — derives optimization outcomes from transaction state.

The terminal state of an ``in_progress`` optimization is a pure function of
its transactions' statuses (``derive_optimization_outcome``).  The sweep
re-evaluates that function from durable rows on every pass, so a crash at any
point between "last transaction resolved" and "optimization marked" heals on
the next pass.

Per pass:
  - ``in_progress`` → ``applied`` when every transaction succeeded.
  - ``in_progress`` → ``failed`` when any transaction failed; the remaining
    ``on_hold`` siblings are canceled in the same database transaction.
  - ``on_hold`` transactions whose optimization is already terminal
    (for example canceled while the processor was mid-pass) are canceled.
  - ``in_progress`` optimizations that were applied more than
    ``stale_after`` ago are reported.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from portfolio_engine.config import ReconciliationConfig
from portfolio_engine.db.connection import ConnectionFactory, immediate_transaction
from portfolio_engine.db.repositories.optimization_repo import OptimizationRepository
from portfolio_engine.db.repositories.transaction_repo import TransactionRepository
from portfolio_engine.models.optimization import Optimization
from portfolio_engine.taxonomy.status_taxonomy import OptimizationStatus, TransactionStatus
from portfolio_engine.utils.time_utils import Clock, SystemClock

logger = logging.getLogger(__name__)

FAILED_SUFFIX = " (Failed due to failed transaction)"
ORPHAN_CANCEL_REASON = "Optimization already finished"
SIBLING_CANCEL_REASON = "Canceled: sibling transaction failed"


def derive_optimization_outcome(
    statuses: Iterable[TransactionStatus],
) -> Optional[OptimizationStatus]:
    """Return the terminal state implied by transaction statuses, or ``None``.

    - any ``failed``                → ``failed``
    - all ``succeeded`` (non-empty) → ``applied``
    - otherwise (pending or canceled work remains) → ``None``
    """
    statuses = list(statuses)
    if any(s is TransactionStatus.FAILED for s in statuses):
        return OptimizationStatus.FAILED
    if statuses and all(s is TransactionStatus.SUCCEEDED for s in statuses):
        return OptimizationStatus.APPLIED
    return None


@dataclass
class SweepResult:
    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    orphans_canceled: int = 0

    @property
    def changed(self) -> int:
        return len(self.applied) + len(self.failed) + self.orphans_canceled


class ReconciliationSweeper:
    def __init__(
        self,
        connect: ConnectionFactory,
        clock: Optional[Clock] = None,
        config: Optional[ReconciliationConfig] = None,
    ) -> None:
        self.connect = connect
        self.clock = clock or SystemClock()
        self.config = config or ReconciliationConfig()

    def sweep(self) -> SweepResult:
        """Run one reconciliation pass over every in-progress optimization."""
        result = SweepResult()
        with self.connect() as conn:
            in_progress = OptimizationRepository(conn).list_by_status(OptimizationStatus.IN_PROGRESS)

        for optimization in in_progress:
            outcome = self.reconcile(optimization)
            if outcome is OptimizationStatus.APPLIED:
                result.applied.append(optimization.optimization_id)
            elif outcome is OptimizationStatus.FAILED:
                result.failed.append(optimization.optimization_id)
            elif self._is_stale(optimization):
                result.stale.append(optimization.optimization_id)
                logger.warning(
                    "Optimization %s has been in progress since %s.",
                    optimization.optimization_id, _in_progress_since(optimization).isoformat(),
                    extra={"optimization_id": optimization.optimization_id,
                           "portfolio_id": optimization.portfolio_id},
                )

        result.orphans_canceled = self._cancel_orphans()

        if result.changed or result.stale:
            logger.info(
                "Reconciliation pass: %d applied, %d failed, %d orphans canceled, %d stale.",
                len(result.applied), len(result.failed), result.orphans_canceled, len(result.stale),
            )
        return result

    def reconcile(self, optimization: Optimization) -> Optional[OptimizationStatus]:
        """Move one in-progress optimization to its derived terminal state.

        Returns:
            The state it was moved to, or ``None`` if nothing changed.
        """
        now = self.clock.now()
        with self.connect() as conn:
            optimizations = OptimizationRepository(conn)
            transactions = TransactionRepository(conn)
            with immediate_transaction(conn):
                # Missing rows are ignored; they cannot decide the outcome.
                txs = transactions.get_many(optimization.transaction_ids)
                outcome = derive_optimization_outcome(t.status for t in txs)
                if outcome is None:
                    return None

                if outcome is OptimizationStatus.APPLIED:
                    moved = optimizations.transition(
                        optimization.optimization_id,
                        [OptimizationStatus.IN_PROGRESS],
                        OptimizationStatus.APPLIED,
                        now,
                        applied_at=now,
                    )
                else:
                    moved = optimizations.transition(
                        optimization.optimization_id,
                        [OptimizationStatus.IN_PROGRESS],
                        OptimizationStatus.FAILED,
                        now,
                        explanation_suffix=FAILED_SUFFIX,
                    )
                    if moved:
                        canceled = transactions.cancel_on_hold(
                            [t.transaction_id for t in txs], SIBLING_CANCEL_REASON, now
                        )
                        if canceled:
                            logger.info(
                                "Canceled %d pending transactions of failed optimization %s.",
                                canceled, optimization.optimization_id,
                            )
        return outcome if moved else None

    def _cancel_orphans(self) -> int:
        now = self.clock.now()
        with self.connect() as conn:
            transactions = TransactionRepository(conn)
            with immediate_transaction(conn):
                orphans = transactions.list_orphaned_on_hold()
                count = transactions.cancel_on_hold(
                    [t.transaction_id for t in orphans], ORPHAN_CANCEL_REASON, now
                )
        if count:
            logger.warning("Canceled %d orphaned pending transactions.", count)
        return count

    def _is_stale(self, optimization: Optimization) -> bool:
        age = self.clock.now() - _in_progress_since(optimization)
        return age > timedelta(hours=self.config.stale_after_hours)


def _in_progress_since(optimization: Optimization) -> datetime:
    # updated_at is written by the created -> in_progress transition.
    return optimization.updated_at or optimization.created_at
