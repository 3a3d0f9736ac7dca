"""
ASCII terminal formatters for CLI commands.

All formatters return plain multi-line strings suitable for ``typer.echo()``.

No third-party dependencies (no ``rich``, no ``colorama``).
"""

from __future__ import annotations

from datetime import timedelta

from portfolio_engine.models.optimization import Optimization
from portfolio_engine.models.portfolio import Holding
from portfolio_engine.models.transaction import Transaction


def format_duration(value: timedelta) -> str:
    """``1h05m`` style; ``0m`` for zero."""
    minutes = int(value.total_seconds() // 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m" if hours else f"{minutes}m"


def format_optimization_detail(opt: Optimization) -> str:
    lines = [
        f"  Optimization {opt.optimization_id}",
        f"  Portfolio    {opt.portfolio_id}  (user {opt.user_id})",
        f"  Status       {opt.status.value}",
        f"  Created      {opt.created_at.isoformat(timespec='seconds')}",
        f"  Applied      {opt.applied_at.isoformat(timespec='seconds') if opt.applied_at else '-'}",
        f"  Confidence   {opt.confidence:.2f}   model {opt.model_version or '-'}",
    ]
    if opt.explanation:
        lines.append(f"  Explanation  {opt.explanation}")
    if opt.recommendations:
        lines.append("")
        lines.append(f"  {'SYMBOL':<8} {'ACTION':<6} {'HELD':>10} {'TARGET':>10} {'WEIGHT':>8}")
        lines.append("  " + "-" * 46)
        for rec in opt.recommendations:
            lines.append(
                f"  {rec.symbol:<8} {rec.action.value:<6} {rec.current_quantity:>10g} "
                f"{rec.target_quantity:>10g} {rec.target_weight:>8.1%}"
            )
    if opt.transaction_ids:
        lines.append(f"\n  Transactions: {len(opt.transaction_ids)}")
    return "\n".join(lines)


def format_history_table(optimizations: list[Optimization]) -> str:
    if not optimizations:
        return "  (no optimizations in window)"
    lines = [
        f"  {'CREATED':<20} {'STATUS':<12} {'RECS':>4} {'TXS':>4}  ID",
        "  " + "-" * 78,
    ]
    for opt in optimizations:
        lines.append(
            f"  {opt.created_at.strftime('%Y-%m-%d %H:%M'):<20} {opt.status.value:<12} "
            f"{len(opt.recommendations):>4} {len(opt.transaction_ids):>4}  {opt.optimization_id}"
        )
    return "\n".join(lines)


def format_holdings_table(holdings: dict[str, Holding]) -> str:
    if not holdings:
        return "  (no holdings)"
    lines = [
        f"  {'SYMBOL':<8} {'QTY':>10} {'BASE':>12} {'CURRENT':>12} {'CHG%':>8}",
        "  " + "-" * 54,
    ]
    for h in holdings.values():
        lines.append(
            f"  {h.symbol:<8} {h.quantity:>10g} {h.total_base_value:>12.2f} "
            f"{h.current_total_value:>12.2f} {h.percentage_change:>8.2f}"
        )
    return "\n".join(lines)


def format_transactions_table(transactions: list[Transaction]) -> str:
    if not transactions:
        return "  (no transactions)"
    lines = [
        f"  {'DATE':<17} {'TYPE':<5} {'SYMBOL':<8} {'QTY':>10} {'PRICE':>10} {'STATUS':<10}",
        "  " + "-" * 66,
    ]
    for t in transactions:
        price = f"{t.price_per_share:.2f}" if t.price_per_share is not None else "-"
        lines.append(
            f"  {t.transaction_date.strftime('%Y-%m-%d %H:%M'):<17} {t.type.value:<5} "
            f"{t.symbol:<8} {t.quantity:>10g} {price:>10} {t.status.value:<10}"
        )
    return "\n".join(lines)
