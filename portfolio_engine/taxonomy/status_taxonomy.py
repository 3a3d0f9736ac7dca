"""
Closed vocabularies for optimizations, recommendations and transactions.

Two small state machines are described here:

  - ``OptimizationStatus``: created → in_progress → applied | failed,
    with created | in_progress → canceled.
  - ``TransactionStatus``:  on_hold → succeeded | canceled | failed.

``ACTIVE_OPTIMIZATION_STATUSES`` is the set the exclusivity guard works on:
at most one optimization per (user, portfolio) may be in one of them.

This module has NO imports from any other ``portfolio_engine`` package.
"""

from enum import StrEnum


class OptimizationStatus(StrEnum):
    """Lifecycle state of one optimization attempt."""

    CREATED = "created"
    """Recommendations fetched and stored; nothing traded yet."""

    IN_PROGRESS = "in_progress"
    """Transactions spawned; waiting for them to resolve."""

    APPLIED = "applied"
    """Every spawned transaction succeeded.  Starts the cool-off window."""

    CANCELED = "canceled"
    """Stopped by the user or invalidated by fresher predictions."""

    FAILED = "failed"
    """At least one spawned transaction failed."""

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_OPTIMIZATION_STATUSES


ACTIVE_OPTIMIZATION_STATUSES: frozenset[OptimizationStatus] = frozenset({
    OptimizationStatus.CREATED,
    OptimizationStatus.IN_PROGRESS,
})

TERMINAL_OPTIMIZATION_STATUSES: frozenset[OptimizationStatus] = frozenset({
    OptimizationStatus.APPLIED,
    OptimizationStatus.CANCELED,
    OptimizationStatus.FAILED,
})


class RecommendationAction(StrEnum):
    """What the prediction service suggests doing with one symbol."""

    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class TransactionType(StrEnum):
    BUY = "buy"
    SELL = "sell"


class TransactionTrigger(StrEnum):
    """Who caused a transaction to exist."""

    USER = "user"
    AI = "ai"
    SYSTEM = "system"
    TEST = "test"


class TransactionStatus(StrEnum):
    """Execution state of one trade."""

    ON_HOLD = "on_hold"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.ON_HOLD


class QuoteKind(StrEnum):
    """Provenance of a stored price quote; intraday quotes win over closes."""

    INTRADAY = "intraday"
    CLOSE = "close"
