"""
Current-price lookup used by the transaction processor at execution time.

Two implementations of the ``PriceOracle`` protocol:

  - ``StoredPriceOracle`` reads the ``price_quotes`` table.  The newest
    intraday quote wins; the newest close quote is the fallback.  Quotes
    older than ``max_quote_age`` are ignored.
  - ``HttpPriceOracle`` asks a quote service over HTTP.

Both distinguish a *transient* miss (``PriceUnavailableError``, the
transaction waits for the next pass) from a *permanent* one
(``UnknownSymbolError``, the transaction fails).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Protocol

import httpx

from portfolio_engine.config import AppConfig, PricingConfig
from portfolio_engine.db.connection import ConnectionFactory
from portfolio_engine.db.repositories.price_repo import PriceQuoteRepository
from portfolio_engine.engine.errors import PriceUnavailableError, UnknownSymbolError
from portfolio_engine.taxonomy.status_taxonomy import QuoteKind
from portfolio_engine.utils.time_utils import Clock, SystemClock

logger = logging.getLogger(__name__)


class PriceOracle(Protocol):
    def get_current_price(self, symbol: str) -> float:
        ...


class StoredPriceOracle:
    """Latest stored quote per symbol, intraday before close.

    A symbol with no usable quote is reported as unavailable rather than
    unknown: quotes may simply not have been ingested yet.
    """

    def __init__(
        self,
        connect: ConnectionFactory,
        clock: Optional[Clock] = None,
        max_quote_age: Optional[timedelta] = None,
    ) -> None:
        self.connect = connect
        self.clock = clock or SystemClock()
        self.max_quote_age = max_quote_age

    def get_current_price(self, symbol: str) -> float:
        symbol = symbol.upper()
        now = self.clock.now()
        with self.connect() as conn:
            repo = PriceQuoteRepository(conn)
            for kind in (QuoteKind.INTRADAY, QuoteKind.CLOSE):
                quote = repo.get_latest(symbol, kind)
                if quote is None:
                    continue
                if self.max_quote_age is not None and now - quote.quoted_at > self.max_quote_age:
                    logger.debug("Ignoring stale %s quote for %s from %s", kind, symbol, quote.quoted_at)
                    continue
                return quote.price

        raise PriceUnavailableError(symbol)


class HttpPriceOracle:
    """Quote service client.

    Endpoint::

        GET {base_url}/prices/{symbol}   →   {"symbol": "ACME", "price": 20.0}

    A 404 means the service does not know the symbol.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def get_current_price(self, symbol: str) -> float:
        symbol = symbol.upper()
        try:
            resp = httpx.get(f"{self.base_url}/prices/{symbol}", timeout=self.timeout_seconds)
            if resp.status_code == 404:
                raise UnknownSymbolError(symbol)
            resp.raise_for_status()
            price = float(resp.json()["price"])
        except httpx.HTTPError as exc:
            raise PriceUnavailableError(symbol, str(exc) or type(exc).__name__) from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise PriceUnavailableError(symbol, f"malformed response: {exc}") from exc

        if price <= 0:
            raise PriceUnavailableError(symbol, f"non-positive price {price}")
        return price


def build_price_oracle(
    config: AppConfig,
    connect: ConnectionFactory,
    clock: Optional[Clock] = None,
) -> PriceOracle:
    """Return the oracle selected by ``config.pricing.source``."""
    pricing: PricingConfig = config.pricing
    if pricing.source == "http":
        return HttpPriceOracle(pricing.base_url, pricing.timeout_seconds)
    return StoredPriceOracle(
        connect,
        clock=clock,
        max_quote_age=timedelta(hours=pricing.max_quote_age_hours),
    )
