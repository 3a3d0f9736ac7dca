"""
Portfolio store — portfolios, holdings, and the idempotent holding mutation.

``apply_holding_delta()`` is the engine's only write path into holdings.  It
records the delta in ``holding_applications`` under an idempotency key (the
transaction id) in the same database transaction as the holding mutation,
so a delta is applied at most once no matter how often it is retried.  The
application row is also what the transaction processor consults after a
crash: if the row exists, the trade already happened.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from portfolio_engine.db.connection import immediate_transaction
from portfolio_engine.db.repositories.base import BaseRepository
from portfolio_engine.engine.errors import InsufficientHoldingsError, NotFoundError
from portfolio_engine.models.portfolio import Holding, Portfolio
from portfolio_engine.utils.time_utils import parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

# Fractional-share arithmetic tolerance; below this a position is empty.
QUANTITY_EPSILON = 1e-9


@dataclass(frozen=True)
class HoldingApplication:
    """Durable record that one holding delta was applied."""

    idempotency_key: str
    portfolio_id: str
    symbol: str
    quantity_delta: float
    value_delta: float
    mark_price: Optional[float]
    applied_at: datetime


class PortfolioRepository(BaseRepository):
    """Read/write access to ``portfolios``, ``portfolio_holdings`` and
    ``holding_applications``."""

    # ── Portfolios ────────────────────────────────────────────────────────────

    def create_portfolio(self, portfolio: Portfolio) -> None:
        self.execute(
            """
            INSERT INTO portfolios (portfolio_id, user_id, name, created_at, last_updated)
            VALUES (?, ?, ?, ?, ?);
            """,
            (
                portfolio.portfolio_id,
                portfolio.user_id,
                portfolio.name,
                to_iso(portfolio.created_at),
                to_iso(portfolio.last_updated),
            ),
        )

    def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        row = self.fetchone(
            "SELECT * FROM portfolios WHERE portfolio_id = ?;", (portfolio_id,)
        )
        return _row_to_portfolio(row) if row else None

    def list_portfolios(self, user_id: Optional[str] = None) -> list[Portfolio]:
        if user_id is None:
            rows = self.fetchall("SELECT * FROM portfolios ORDER BY created_at;")
        else:
            rows = self.fetchall(
                "SELECT * FROM portfolios WHERE user_id = ? ORDER BY created_at;",
                (user_id,),
            )
        return [_row_to_portfolio(r) for r in rows]

    # ── Holdings ──────────────────────────────────────────────────────────────

    def get_holdings(self, portfolio_id: str) -> dict[str, Holding]:
        """Return the portfolio's positions keyed by symbol."""
        rows = self.fetchall(
            """
            SELECT * FROM portfolio_holdings
            WHERE portfolio_id = ?
            ORDER BY symbol;
            """,
            (portfolio_id,),
        )
        return {r["symbol"]: _row_to_holding(r) for r in rows}

    def get_holding(self, portfolio_id: str, symbol: str) -> Optional[Holding]:
        row = self.fetchone(
            "SELECT * FROM portfolio_holdings WHERE portfolio_id = ? AND symbol = ?;",
            (portfolio_id, symbol),
        )
        return _row_to_holding(row) if row else None

    def set_holding(self, holding: Holding) -> None:
        """Insert or overwrite a position (seeding / external sync).

        Not idempotency-tracked — executed trades must go through
        ``apply_holding_delta()``.
        """
        self.execute(
            """
            INSERT INTO portfolio_holdings (
                portfolio_id, symbol, quantity, total_base_value,
                current_total_value, percentage_change, last_updated
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(portfolio_id, symbol) DO UPDATE SET
                quantity            = excluded.quantity,
                total_base_value    = excluded.total_base_value,
                current_total_value = excluded.current_total_value,
                percentage_change   = excluded.percentage_change,
                last_updated        = excluded.last_updated;
            """,
            (
                holding.portfolio_id,
                holding.symbol,
                holding.quantity,
                holding.total_base_value,
                holding.current_total_value,
                holding.percentage_change,
                to_iso(holding.last_updated or utcnow()),
            ),
        )

    def find_portfolio_ids_holding(self, symbols: list[str]) -> list[str]:
        """Return ids of portfolios holding any of ``symbols``."""
        if not symbols:
            return []
        placeholders = ",".join("?" for _ in symbols)
        rows = self.fetchall(
            f"""
            SELECT DISTINCT portfolio_id FROM portfolio_holdings
            WHERE symbol IN ({placeholders})
            ORDER BY portfolio_id;
            """,
            tuple(symbols),
        )
        return [r["portfolio_id"] for r in rows]

    # ── Idempotent mutation ───────────────────────────────────────────────────

    def get_application(self, idempotency_key: str) -> Optional[HoldingApplication]:
        """Return the recorded application for ``idempotency_key``, if any."""
        row = self.fetchone(
            "SELECT * FROM holding_applications WHERE idempotency_key = ?;",
            (idempotency_key,),
        )
        if row is None:
            return None
        return HoldingApplication(
            idempotency_key=row["idempotency_key"],
            portfolio_id=row["portfolio_id"],
            symbol=row["symbol"],
            quantity_delta=row["quantity_delta"],
            value_delta=row["value_delta"],
            mark_price=row["mark_price"],
            applied_at=parse_iso(row["applied_at"]),
        )

    def apply_holding_delta(
        self,
        portfolio_id: str,
        symbol: str,
        quantity_delta: float,
        value_delta: float,
        idempotency_key: str,
        mark_price: Optional[float] = None,
        applied_at: Optional[datetime] = None,
    ) -> bool:
        """Apply a signed change to one position, at most once per key.

        Args:
            portfolio_id: Portfolio to mutate.
            symbol: Position to mutate (created on first buy).
            quantity_delta: Signed share change; negative for sells.
            value_delta: Signed change to the cost basis.
            idempotency_key: Unique key, normally the transaction id.
            mark_price: Price to re-mark the remaining position at.  When
                ``None`` the current value is scaled with the quantity.
            applied_at: Mutation time; defaults to now.

        Returns:
            ``True`` if the delta was applied now, ``False`` if the key had
            already been applied (nothing changed).

        Raises:
            NotFoundError: Unknown portfolio.
            InsufficientHoldingsError: The delta would make the position
                negative.  Nothing is written.
        """
        applied_at = applied_at or utcnow()

        with immediate_transaction(self.conn):
            if self.get_application(idempotency_key) is not None:
                logger.info(
                    "Holding delta %s already applied; skipping.", idempotency_key
                )
                return False

            if self.get_portfolio(portfolio_id) is None:
                raise NotFoundError("Portfolio", portfolio_id)

            holding = self.get_holding(portfolio_id, symbol)
            held = holding.quantity if holding else 0.0
            new_quantity = held + quantity_delta
            if new_quantity < -QUANTITY_EPSILON:
                raise InsufficientHoldingsError(portfolio_id, symbol, -quantity_delta, held)

            self.execute(
                """
                INSERT INTO holding_applications (
                    idempotency_key, portfolio_id, symbol,
                    quantity_delta, value_delta, mark_price, applied_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    idempotency_key,
                    portfolio_id,
                    symbol,
                    quantity_delta,
                    value_delta,
                    mark_price,
                    to_iso(applied_at),
                ),
            )

            if new_quantity <= QUANTITY_EPSILON:
                self.execute(
                    "DELETE FROM portfolio_holdings WHERE portfolio_id = ? AND symbol = ?;",
                    (portfolio_id, symbol),
                )
            else:
                base_value = max(0.0, (holding.total_base_value if holding else 0.0) + value_delta)
                if mark_price is not None:
                    current_value = new_quantity * mark_price
                elif holding is not None and held > 0:
                    current_value = holding.current_total_value * new_quantity / held
                else:
                    current_value = base_value
                pct_change = (
                    (current_value - base_value) / base_value * 100 if base_value > 0 else 0.0
                )
                self.set_holding(
                    Holding(
                        portfolio_id=portfolio_id,
                        symbol=symbol,
                        quantity=new_quantity,
                        total_base_value=base_value,
                        current_total_value=current_value,
                        percentage_change=pct_change,
                        last_updated=applied_at,
                    )
                )

            self.execute(
                "UPDATE portfolios SET last_updated = ? WHERE portfolio_id = ?;",
                (to_iso(applied_at), portfolio_id),
            )

        logger.debug(
            "Applied holding delta %s: %s %+g shares, %+.2f base value.",
            idempotency_key, symbol, quantity_delta, value_delta,
        )
        return True


# ── Row mappers ────────────────────────────────────────────────────────────────

def _row_to_portfolio(row) -> Portfolio:
    return Portfolio(
        portfolio_id=row["portfolio_id"],
        user_id=row["user_id"],
        name=row["name"],
        created_at=parse_iso(row["created_at"]),
        last_updated=parse_iso(row["last_updated"]),
    )


def _row_to_holding(row) -> Holding:
    return Holding(
        portfolio_id=row["portfolio_id"],
        symbol=row["symbol"],
        quantity=row["quantity"],
        total_base_value=row["total_base_value"],
        current_total_value=row["current_total_value"],
        percentage_change=row["percentage_change"],
        last_updated=parse_iso(row["last_updated"]),
    )
