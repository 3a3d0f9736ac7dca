"""
Optimization repository — the durable state machine.

Two properties of this module carry the engine's correctness:

  - ``insert_active()`` relies on the ``uq_optimizations_active`` partial
    unique index: checking for an existing active optimization and creating
    the new one is a single INSERT, so two concurrent requests cannot both
    succeed.
  - ``transition()`` is a conditional UPDATE on the current status.  It
    returns ``False`` when the row was not in an expected state, which is
    how a caller learns it lost a race with a concurrent writer.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from datetime import datetime
from typing import Optional

from portfolio_engine.db.repositories.base import BaseRepository
from portfolio_engine.engine.errors import AlreadyActiveError
from portfolio_engine.models.optimization import (
    Optimization,
    OptimizationMetrics,
    Recommendation,
)
from portfolio_engine.taxonomy.status_taxonomy import (
    ACTIVE_OPTIMIZATION_STATUSES,
    OptimizationStatus,
    RecommendationAction,
)
from portfolio_engine.utils.time_utils import parse_iso, to_iso

logger = logging.getLogger(__name__)

_ACTIVE_SQL_LIST = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_OPTIMIZATION_STATUSES))


class OptimizationRepository(BaseRepository):
    """Read/write access to ``optimizations`` and ``optimization_recommendations``."""

    # ── Create ────────────────────────────────────────────────────────────────

    def insert_active(self, optimization: Optimization) -> None:
        """Insert a new ``created`` optimization with its recommendations.

        Raises:
            AlreadyActiveError: Another optimization for the same
                (user, portfolio) is created or in progress.
        """
        try:
            self.execute(
                """
                INSERT INTO optimizations (
                    optimization_id, user_id, portfolio_id, status, created_at,
                    applied_at, confidence, explanation, model_version,
                    metrics_json, transaction_ids, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    optimization.optimization_id,
                    optimization.user_id,
                    optimization.portfolio_id,
                    optimization.status.value,
                    to_iso(optimization.created_at),
                    to_iso(optimization.applied_at),
                    optimization.confidence,
                    optimization.explanation,
                    optimization.model_version,
                    optimization.metrics.model_dump_json(),
                    json.dumps(optimization.transaction_ids),
                    to_iso(optimization.updated_at or optimization.created_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "optimizations.user_id" in str(exc):
                raise AlreadyActiveError(optimization.user_id, optimization.portfolio_id) from exc
            raise

        self.executemany(
            """
            INSERT INTO optimization_recommendations (
                optimization_id, position, symbol, action, current_quantity,
                target_quantity, current_weight, target_weight, explanation
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                (
                    optimization.optimization_id,
                    position,
                    rec.symbol,
                    rec.action.value,
                    rec.current_quantity,
                    rec.target_quantity,
                    rec.current_weight,
                    rec.target_weight,
                    rec.explanation,
                )
                for position, rec in enumerate(optimization.recommendations)
            ],
        )

    # ── Read ──────────────────────────────────────────────────────────────────

    def get_by_id(self, optimization_id: str) -> Optional[Optimization]:
        row = self.fetchone(
            "SELECT * FROM optimizations WHERE optimization_id = ?;",
            (optimization_id,),
        )
        if row is None:
            return None
        return self._hydrate([row])[0]

    def get_active(self, user_id: str, portfolio_id: str) -> Optional[Optimization]:
        """Return the created/in-progress optimization for a portfolio, if any."""
        row = self.fetchone(
            f"""
            SELECT * FROM optimizations
            WHERE user_id = ? AND portfolio_id = ?
              AND status IN ({_ACTIVE_SQL_LIST});
            """,
            (user_id, portfolio_id),
        )
        if row is None:
            return None
        return self._hydrate([row])[0]

    def get_last_applied_at(self, user_id: str, portfolio_id: str) -> Optional[datetime]:
        """Return ``applied_at`` of the most recent applied optimization."""
        row = self.fetchone(
            """
            SELECT applied_at FROM optimizations
            WHERE user_id = ? AND portfolio_id = ? AND status = 'applied'
              AND applied_at IS NOT NULL
            ORDER BY applied_at DESC
            LIMIT 1;
            """,
            (user_id, portfolio_id),
        )
        return parse_iso(row["applied_at"]) if row else None

    def list_by_status(self, status: OptimizationStatus) -> list[Optimization]:
        rows = self.fetchall(
            "SELECT * FROM optimizations WHERE status = ? ORDER BY created_at;",
            (status.value,),
        )
        return self._hydrate(rows)

    def list_history(
        self,
        user_id: str,
        portfolio_id: str,
        start: datetime,
        end: datetime,
    ) -> list[Optimization]:
        """Return optimizations created in ``[start, end]``, newest first."""
        rows = self.fetchall(
            """
            SELECT * FROM optimizations
            WHERE user_id = ? AND portfolio_id = ?
              AND created_at >= ? AND created_at <= ?
            ORDER BY created_at DESC;
            """,
            (user_id, portfolio_id, to_iso(start), to_iso(end)),
        )
        return self._hydrate(rows)

    def list_active_touching(
        self,
        symbols: Iterable[str],
        portfolio_ids: Iterable[str] = (),
    ) -> list[Optimization]:
        """Return active optimizations that recommend any of ``symbols`` or
        belong to any of ``portfolio_ids``."""
        symbols = sorted(set(symbols))
        portfolio_ids = sorted(set(portfolio_ids))
        if not symbols and not portfolio_ids:
            return []

        clauses = []
        params: list[str] = []
        if symbols:
            clauses.append(
                f"""optimization_id IN (
                    SELECT optimization_id FROM optimization_recommendations
                    WHERE symbol IN ({",".join("?" for _ in symbols)})
                )"""
            )
            params.extend(symbols)
        if portfolio_ids:
            clauses.append(f"portfolio_id IN ({','.join('?' for _ in portfolio_ids)})")
            params.extend(portfolio_ids)

        rows = self.fetchall(
            f"""
            SELECT * FROM optimizations
            WHERE status IN ({_ACTIVE_SQL_LIST})
              AND ({" OR ".join(clauses)})
            ORDER BY created_at;
            """,
            tuple(params),
        )
        return self._hydrate(rows)

    # ── Transitions ───────────────────────────────────────────────────────────

    def transition(
        self,
        optimization_id: str,
        expected: Iterable[OptimizationStatus],
        new_status: OptimizationStatus,
        now: datetime,
        *,
        applied_at: Optional[datetime] = None,
        transaction_ids: Optional[list[str]] = None,
        explanation_suffix: str = "",
    ) -> bool:
        """Move an optimization to ``new_status`` if it is in ``expected``.

        Args:
            optimization_id: Row to update.
            expected: Statuses the row must currently have.
            new_status: Target status.
            now: Timestamp written to ``updated_at``.
            applied_at: Set ``applied_at`` (only for ``applied``).
            transaction_ids: Replace the stored transaction ids.
            explanation_suffix: Text appended to the explanation.

        Returns:
            ``True`` if the row was updated, ``False`` if its status did
            not match (a concurrent writer got there first).
        """
        expected = [s.value for s in expected]
        sets = ["status = ?", "updated_at = ?", "explanation = explanation || ?"]
        params: list = [new_status.value, to_iso(now), explanation_suffix]
        if applied_at is not None:
            sets.append("applied_at = ?")
            params.append(to_iso(applied_at))
        if transaction_ids is not None:
            sets.append("transaction_ids = ?")
            params.append(json.dumps(transaction_ids))
        params.append(optimization_id)
        params.extend(expected)

        changed = self.update(
            f"""
            UPDATE optimizations SET {", ".join(sets)}
            WHERE optimization_id = ?
              AND status IN ({",".join("?" for _ in expected)});
            """,
            tuple(params),
        )
        if changed:
            logger.info(
                "Optimization %s → %s", optimization_id, new_status.value,
                extra={"optimization_id": optimization_id, "status": new_status.value},
            )
        return changed == 1

    # ── Hydration ─────────────────────────────────────────────────────────────

    def _hydrate(self, rows: list[sqlite3.Row]) -> list[Optimization]:
        if not rows:
            return []
        ids = [r["optimization_id"] for r in rows]
        rec_rows = self.fetchall(
            f"""
            SELECT * FROM optimization_recommendations
            WHERE optimization_id IN ({",".join("?" for _ in ids)})
            ORDER BY optimization_id, position;
            """,
            tuple(ids),
        )
        recs: dict[str, list[Recommendation]] = {i: [] for i in ids}
        for r in rec_rows:
            recs[r["optimization_id"]].append(
                Recommendation(
                    symbol=r["symbol"],
                    action=RecommendationAction(r["action"]),
                    current_quantity=r["current_quantity"],
                    target_quantity=r["target_quantity"],
                    current_weight=r["current_weight"],
                    target_weight=r["target_weight"],
                    explanation=r["explanation"],
                )
            )
        return [_row_to_optimization(r, recs[r["optimization_id"]]) for r in rows]


def _row_to_optimization(row: sqlite3.Row, recommendations: list[Recommendation]) -> Optimization:
    return Optimization(
        optimization_id=row["optimization_id"],
        user_id=row["user_id"],
        portfolio_id=row["portfolio_id"],
        status=OptimizationStatus(row["status"]),
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
        applied_at=parse_iso(row["applied_at"]),
        confidence=row["confidence"],
        explanation=row["explanation"],
        model_version=row["model_version"],
        metrics=OptimizationMetrics.model_validate_json(row["metrics_json"]),
        recommendations=recommendations,
        transaction_ids=json.loads(row["transaction_ids"]),
    )
