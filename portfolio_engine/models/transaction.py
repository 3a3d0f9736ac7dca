"""
Transaction model — one executable trade.

A transaction is created ``on_hold`` and is never mutated afterwards except
for its status and the execution fields (``price_per_share``,
``transaction_value``, ``executed_at``, ``failure_reason``) recorded at the
moment it resolves.  The price is resolved at execution time, not creation
time, so both price fields are ``None`` while the transaction waits.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from portfolio_engine.models.optimization import normalize_symbol
from portfolio_engine.taxonomy.status_taxonomy import (
    TransactionStatus,
    TransactionTrigger,
    TransactionType,
)


class Transaction(BaseModel):
    """A single buy or sell of one symbol in one portfolio.

    Attributes:
        transaction_id: uuid4 string; also the idempotency key for the
            holding mutation.
        optimization_id: Optimization that spawned it, or ``None`` for
            user/system trades.
        user_id: Owner of the portfolio.
        portfolio_id: Portfolio whose holding is mutated.
        symbol: Ticker (upper case).
        quantity: Positive number of shares to move.
        type: ``buy`` or ``sell``.
        triggered_by: Origin of the trade.
        status: Execution state.
        transaction_date: UTC creation time; processing order.
        price_per_share: Execution price, set on success.
        transaction_value: ``quantity × price_per_share``, set on success.
        executed_at: UTC time the transaction resolved.
        failure_reason: Why a transaction failed or was canceled.
    """

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    optimization_id: Optional[str] = None
    user_id: str
    portfolio_id: str
    symbol: str
    quantity: float
    type: TransactionType
    triggered_by: TransactionTrigger = TransactionTrigger.SYSTEM
    status: TransactionStatus = TransactionStatus.ON_HOLD
    transaction_date: datetime
    price_per_share: Optional[float] = None
    transaction_value: Optional[float] = None
    executed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"quantity must be positive, got {v}.")
        return v

    @model_validator(mode="after")
    def validate_execution_fields(self) -> "Transaction":
        if self.status is TransactionStatus.SUCCEEDED and self.price_per_share is None:
            raise ValueError("A succeeded transaction must carry its execution price.")
        return self

    @property
    def signed_quantity(self) -> float:
        """Holding delta this trade implies: positive for buys."""
        return self.quantity if self.type is TransactionType.BUY else -self.quantity
