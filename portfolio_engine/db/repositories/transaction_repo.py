"""
Transaction repository.

Transactions are inserted ``on_hold`` and resolved exactly once.  Every
resolution (``mark_succeeded``, ``mark_failed``, ``cancel_*``) is guarded by
``status = 'on_hold'``, so a transaction that another pass already resolved
is left alone and the caller sees ``False`` / ``0``.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from portfolio_engine.db.repositories.base import BaseRepository
from portfolio_engine.models.transaction import Transaction
from portfolio_engine.taxonomy.status_taxonomy import (
    TransactionStatus,
    TransactionTrigger,
    TransactionType,
)
from portfolio_engine.utils.time_utils import parse_iso, to_iso

logger = logging.getLogger(__name__)


class TransactionRepository(BaseRepository):
    """Read/write access to the ``transactions`` table."""

    def insert_many(self, transactions: list[Transaction]) -> None:
        self.executemany(
            """
            INSERT INTO transactions (
                transaction_id, optimization_id, user_id, portfolio_id, symbol,
                quantity, type, triggered_by, status, transaction_date,
                price_per_share, transaction_value, executed_at, failure_reason
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                (
                    t.transaction_id,
                    t.optimization_id,
                    t.user_id,
                    t.portfolio_id,
                    t.symbol,
                    t.quantity,
                    t.type.value,
                    t.triggered_by.value,
                    t.status.value,
                    to_iso(t.transaction_date),
                    t.price_per_share,
                    t.transaction_value,
                    to_iso(t.executed_at),
                    t.failure_reason,
                )
                for t in transactions
            ],
        )

    def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        row = self.fetchone(
            "SELECT * FROM transactions WHERE transaction_id = ?;", (transaction_id,)
        )
        return _row_to_transaction(row) if row else None

    def get_many(self, transaction_ids: list[str]) -> list[Transaction]:
        """Return the transactions that exist, in ``transaction_ids`` order."""
        if not transaction_ids:
            return []
        rows = self.fetchall(
            f"""
            SELECT * FROM transactions
            WHERE transaction_id IN ({",".join("?" for _ in transaction_ids)});
            """,
            tuple(transaction_ids),
        )
        by_id = {r["transaction_id"]: _row_to_transaction(r) for r in rows}
        return [by_id[i] for i in transaction_ids if i in by_id]

    def list_on_hold(self, limit: int) -> list[Transaction]:
        """Return up to ``limit`` pending transactions, oldest first."""
        rows = self.fetchall(
            """
            SELECT * FROM transactions
            WHERE status = 'on_hold'
            ORDER BY transaction_date, transaction_id
            LIMIT ?;
            """,
            (limit,),
        )
        return [_row_to_transaction(r) for r in rows]

    def list_for_optimization(self, optimization_id: str) -> list[Transaction]:
        rows = self.fetchall(
            """
            SELECT * FROM transactions
            WHERE optimization_id = ?
            ORDER BY transaction_date, transaction_id;
            """,
            (optimization_id,),
        )
        return [_row_to_transaction(r) for r in rows]

    def list_for_portfolio(
        self, portfolio_id: str, symbol: Optional[str] = None
    ) -> list[Transaction]:
        """Return a portfolio's transactions, newest first."""
        if symbol is None:
            rows = self.fetchall(
                """
                SELECT * FROM transactions WHERE portfolio_id = ?
                ORDER BY transaction_date DESC;
                """,
                (portfolio_id,),
            )
        else:
            rows = self.fetchall(
                """
                SELECT * FROM transactions WHERE portfolio_id = ? AND symbol = ?
                ORDER BY transaction_date DESC;
                """,
                (portfolio_id, symbol.upper()),
            )
        return [_row_to_transaction(r) for r in rows]

    def list_orphaned_on_hold(self) -> list[Transaction]:
        """Return pending transactions whose optimization is already terminal."""
        rows = self.fetchall(
            """
            SELECT t.* FROM transactions t
            JOIN optimizations o ON o.optimization_id = t.optimization_id
            WHERE t.status = 'on_hold'
              AND o.status IN ('applied', 'canceled', 'failed')
            ORDER BY t.transaction_date;
            """
        )
        return [_row_to_transaction(r) for r in rows]

    # ── Resolutions ───────────────────────────────────────────────────────────

    def mark_succeeded(
        self,
        transaction_id: str,
        price_per_share: float,
        transaction_value: float,
        executed_at: datetime,
    ) -> bool:
        changed = self.update(
            """
            UPDATE transactions
            SET status = 'succeeded', price_per_share = ?, transaction_value = ?,
                executed_at = ?
            WHERE transaction_id = ? AND status = 'on_hold';
            """,
            (price_per_share, transaction_value, to_iso(executed_at), transaction_id),
        )
        return changed == 1

    def mark_failed(self, transaction_id: str, reason: str, executed_at: datetime) -> bool:
        changed = self.update(
            """
            UPDATE transactions
            SET status = 'failed', failure_reason = ?, executed_at = ?
            WHERE transaction_id = ? AND status = 'on_hold';
            """,
            (reason, to_iso(executed_at), transaction_id),
        )
        return changed == 1

    def cancel_on_hold(self, transaction_ids: list[str], reason: str, at: datetime) -> int:
        """Cancel the listed transactions that are still pending.

        Returns:
            Number of transactions canceled; executed ones are untouched.
        """
        if not transaction_ids:
            return 0
        return self.update(
            f"""
            UPDATE transactions
            SET status = 'canceled', failure_reason = ?, executed_at = ?
            WHERE status = 'on_hold'
              AND transaction_id IN ({",".join("?" for _ in transaction_ids)});
            """,
            (reason, to_iso(at), *transaction_ids),
        )


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        transaction_id=row["transaction_id"],
        optimization_id=row["optimization_id"],
        user_id=row["user_id"],
        portfolio_id=row["portfolio_id"],
        symbol=row["symbol"],
        quantity=row["quantity"],
        type=TransactionType(row["type"]),
        triggered_by=TransactionTrigger(row["triggered_by"]),
        status=TransactionStatus(row["status"]),
        transaction_date=parse_iso(row["transaction_date"]),
        price_per_share=row["price_per_share"],
        transaction_value=row["transaction_value"],
        executed_at=parse_iso(row["executed_at"]),
        failure_reason=row["failure_reason"],
    )
