"""
Portfolio, holding and price-quote models.

Portfolios and their holdings are owned by the surrounding application; the
engine reads them and applies executed transactions to them.  ``PriceQuote``
rows feed the database-backed price oracle.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from portfolio_engine.models.optimization import normalize_symbol
from portfolio_engine.taxonomy.status_taxonomy import QuoteKind


class Portfolio(BaseModel):
    model_config = ConfigDict(frozen=True)

    portfolio_id: str
    user_id: str
    name: str
    created_at: datetime
    last_updated: datetime


class Holding(BaseModel):
    """Position in one symbol.

    Attributes:
        portfolio_id: Owning portfolio.
        symbol: Ticker (upper case).
        quantity: Shares held; never negative.
        total_base_value: Cost basis of the position.
        current_total_value: Position marked at the last execution price.
        percentage_change: ``(current - base) / base × 100``.
        last_updated: UTC time of the last mutation.
    """

    model_config = ConfigDict(frozen=True)

    portfolio_id: str
    symbol: str
    quantity: float
    total_base_value: float = 0.0
    current_total_value: float = 0.0
    percentage_change: float = 0.0
    last_updated: Optional[datetime] = None

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"quantity must be non-negative, got {v}.")
        return v


class PriceQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float
    kind: QuoteKind = QuoteKind.INTRADAY
    quoted_at: datetime

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"price must be positive, got {v}.")
        return v
