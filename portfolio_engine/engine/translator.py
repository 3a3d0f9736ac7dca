"""
Recommendation → transaction translation.

A recommendation states a *target* quantity.  The trade needed to reach it is
the difference from what the portfolio holds right now:

    delta = target_quantity - held
    delta > 0  →  buy  delta
    delta < 0  →  sell |delta|
    delta = 0  →  nothing

The recommendation's ``action`` label is informational; only the quantity
delta decides the trade, so a stale "buy" whose target is already reached
produces no transaction.  Prices are not resolved here.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime

from portfolio_engine.db.repositories.portfolio_repo import QUANTITY_EPSILON
from portfolio_engine.models.optimization import Optimization
from portfolio_engine.models.transaction import Transaction
from portfolio_engine.taxonomy.status_taxonomy import (
    TransactionStatus,
    TransactionTrigger,
    TransactionType,
)


def translate(
    optimization: Optimization,
    held_quantities: Mapping[str, float],
    now: datetime,
) -> list[Transaction]:
    """Build the ``on_hold`` transactions that realize ``optimization``.

    Args:
        optimization: The optimization being applied.
        held_quantities: Current shares per symbol; missing symbols count
            as zero.
        now: Creation time stamped on every transaction.

    Returns:
        One transaction per recommendation with a non-zero delta, in
        recommendation order.
    """
    transactions: list[Transaction] = []
    for rec in optimization.recommendations:
        delta = rec.target_quantity - held_quantities.get(rec.symbol, 0.0)
        if abs(delta) <= QUANTITY_EPSILON:
            continue
        transactions.append(
            Transaction(
                transaction_id=str(uuid.uuid4()),
                optimization_id=optimization.optimization_id,
                user_id=optimization.user_id,
                portfolio_id=optimization.portfolio_id,
                symbol=rec.symbol,
                quantity=abs(delta),
                type=TransactionType.BUY if delta > 0 else TransactionType.SELL,
                triggered_by=TransactionTrigger.AI,
                status=TransactionStatus.ON_HOLD,
                transaction_date=now,
            )
        )
    return transactions
