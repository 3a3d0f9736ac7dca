"""
Price quote repository.

Stores quotes recorded by the surrounding application (or by the
``record-price`` CLI command) and serves the latest one per symbol to the
database-backed price oracle.
"""

from __future__ import annotations

import logging
from typing import Optional

from portfolio_engine.db.repositories.base import BaseRepository
from portfolio_engine.models.portfolio import PriceQuote
from portfolio_engine.taxonomy.status_taxonomy import QuoteKind
from portfolio_engine.utils.time_utils import parse_iso, to_iso

logger = logging.getLogger(__name__)


class PriceQuoteRepository(BaseRepository):

    def insert(self, quote: PriceQuote) -> int:
        """Insert one quote and return its ``quote_id``."""
        self.execute(
            """
            INSERT INTO price_quotes (symbol, price, kind, quoted_at)
            VALUES (?, ?, ?, ?);
            """,
            (quote.symbol.upper(), quote.price, quote.kind.value, to_iso(quote.quoted_at)),
        )
        return self.last_insert_rowid()

    def get_latest(self, symbol: str, kind: QuoteKind) -> Optional[PriceQuote]:
        row = self.fetchone(
            """
            SELECT * FROM price_quotes
            WHERE symbol = ? AND kind = ?
            ORDER BY quoted_at DESC, quote_id DESC
            LIMIT 1;
            """,
            (symbol.upper(), kind.value),
        )
        if row is None:
            return None
        return PriceQuote(
            symbol=row["symbol"],
            price=row["price"],
            kind=QuoteKind(row["kind"]),
            quoted_at=parse_iso(row["quoted_at"]),
        )

    def has_symbol(self, symbol: str) -> bool:
        """True if any quote was ever recorded for ``symbol``."""
        row = self.fetchone(
            "SELECT 1 FROM price_quotes WHERE symbol = ? LIMIT 1;", (symbol.upper(),)
        )
        return row is not None
