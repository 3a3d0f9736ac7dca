"""
Export helpers for optimization history.

All functions write to disk and return the written ``Path``.

CSV exports are flat (one row per recommendation, optimization fields
repeated) so they load directly in a spreadsheet without any unpivoting.
JSON exports keep the nested structure.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path

from portfolio_engine.models.optimization import Optimization

HISTORY_CSV_FIELDS = [
    "optimization_id",
    "portfolio_id",
    "status",
    "created_at",
    "applied_at",
    "confidence",
    "model_version",
    "transaction_count",
    "symbol",
    "action",
    "current_quantity",
    "target_quantity",
    "current_weight",
    "target_weight",
]


def export_to_csv(
    records: list[dict],
    path: Path,
    fieldnames: list[str] | None = None,
) -> Path:
    """Write ``records`` to a UTF-8 CSV file.

    Args:
        records:    List of row dicts.
        path:       Destination file path (parent dirs created if missing).
        fieldnames: Column order.  If None, uses the keys of the first record.

    Returns:
        ``path`` as written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    cols = fieldnames or (list(records[0].keys()) if records else [])
    with path.open("w", newline="", encoding="utf-8") as f:
        if not cols:
            return path
        writer = csv.DictWriter(f, fieldnames=cols, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(records)
    return path


def export_to_json(data: dict | list, path: Path) -> Path:
    """Write ``data`` to a pretty-printed JSON file (datetimes as strings)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
    return path


def flatten_optimizations_for_export(optimizations: list[Optimization]) -> list[dict]:
    """One row per recommendation; optimizations without recommendations
    still get a single row with empty recommendation columns."""
    rows: list[dict] = []
    for opt in optimizations:
        base = {
            "optimization_id":   opt.optimization_id,
            "portfolio_id":      opt.portfolio_id,
            "status":            opt.status.value,
            "created_at":        opt.created_at.isoformat(),
            "applied_at":        opt.applied_at.isoformat() if opt.applied_at else "",
            "confidence":        opt.confidence,
            "model_version":     opt.model_version,
            "transaction_count": len(opt.transaction_ids),
        }
        if not opt.recommendations:
            rows.append({**base, "symbol": "", "action": "", "current_quantity": "",
                         "target_quantity": "", "current_weight": "", "target_weight": ""})
            continue
        for rec in opt.recommendations:
            rows.append(
                {
                    **base,
                    "symbol":           rec.symbol,
                    "action":           rec.action.value,
                    "current_quantity": rec.current_quantity,
                    "target_quantity":  rec.target_quantity,
                    "current_weight":   rec.current_weight,
                    "target_weight":    rec.target_weight,
                }
            )
    return rows


def export_history(optimizations: list[Optimization], path: Path, fmt: str = "csv") -> Path:
    """Write optimization history as ``csv`` (flat) or ``json`` (nested).

    Raises:
        ValueError: Unsupported ``fmt``.
    """
    if fmt == "csv":
        return export_to_csv(
            flatten_optimizations_for_export(optimizations), path, HISTORY_CSV_FIELDS
        )
    if fmt == "json":
        return export_to_json([opt.model_dump(mode="json") for opt in optimizations], path)
    raise ValueError(f"Unsupported export format '{fmt}'. Use 'csv' or 'json'.")
