"""Tests for SQLite schema — idempotency, constraints, the active-optimization index."""

from __future__ import annotations

import sqlite3

import pytest

from portfolio_engine.db.migrations import MIGRATIONS, run_migrations
from portfolio_engine.db.schema import (
    ALL_TABLE_NAMES,
    apply_schema,
    get_existing_indexes,
    get_existing_tables,
)


def _insert_portfolio(conn, portfolio_id="p1", user_id="u1"):
    conn.execute(
        "INSERT INTO portfolios VALUES (?, ?, 'P', '2026-03-02T15:00:00+00:00', "
        "'2026-03-02T15:00:00+00:00');",
        (portfolio_id, user_id),
    )


def _insert_optimization(conn, optimization_id, status, user_id="u1", portfolio_id="p1"):
    conn.execute(
        """
        INSERT INTO optimizations (optimization_id, user_id, portfolio_id, status,
                                   created_at, updated_at)
        VALUES (?, ?, ?, ?, '2026-03-02T15:00:00+00:00', '2026-03-02T15:00:00+00:00');
        """,
        (optimization_id, user_id, portfolio_id, status),
    )


class TestApplySchema:
    def test_all_tables_created(self, in_memory_db):
        tables = get_existing_tables(in_memory_db)
        for expected_table in ALL_TABLE_NAMES:
            assert expected_table in tables, (
                f"Expected table '{expected_table}' not found in database. Found: {tables}"
            )

    def test_idempotent_double_apply(self, in_memory_db):
        """apply_schema() called twice must not raise errors."""
        apply_schema(in_memory_db)
        assert len(get_existing_tables(in_memory_db)) >= len(ALL_TABLE_NAMES)

    def test_key_indexes_created(self, in_memory_db):
        indexes = get_existing_indexes(in_memory_db)
        for idx in [
            "uq_optimizations_active",
            "idx_optimizations_status",
            "idx_transactions_on_hold",
            "idx_transactions_optimization",
            "idx_price_quotes_symbol_time",
        ]:
            assert idx in indexes, f"Expected index '{idx}' not found. Found: {indexes}"


class TestActiveOptimizationIndex:
    def test_second_active_row_rejected(self, in_memory_db):
        _insert_portfolio(in_memory_db)
        _insert_optimization(in_memory_db, "o1", "created")
        with pytest.raises(sqlite3.IntegrityError, match="optimizations.user_id"):
            _insert_optimization(in_memory_db, "o2", "in_progress")

    def test_terminal_rows_do_not_count(self, in_memory_db):
        _insert_portfolio(in_memory_db)
        _insert_optimization(in_memory_db, "o1", "applied")
        _insert_optimization(in_memory_db, "o2", "canceled")
        _insert_optimization(in_memory_db, "o3", "failed")
        _insert_optimization(in_memory_db, "o4", "created")

    def test_other_portfolio_independent(self, in_memory_db):
        _insert_portfolio(in_memory_db, "p1")
        _insert_portfolio(in_memory_db, "p2")
        _insert_optimization(in_memory_db, "o1", "created", portfolio_id="p1")
        _insert_optimization(in_memory_db, "o2", "created", portfolio_id="p2")

    def test_update_into_active_rejected(self, in_memory_db):
        _insert_portfolio(in_memory_db)
        _insert_optimization(in_memory_db, "o1", "created")
        _insert_optimization(in_memory_db, "o2", "canceled")
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute("UPDATE optimizations SET status = 'created' WHERE optimization_id = 'o2';")


class TestConstraints:
    def test_fk_enforcement_is_on(self, in_memory_db):
        row = in_memory_db.execute("PRAGMA foreign_keys;").fetchone()
        assert row[0] == 1

    def test_fk_violation_raises(self, in_memory_db):
        with pytest.raises(sqlite3.IntegrityError):
            _insert_optimization(in_memory_db, "o1", "created", portfolio_id="missing")

    def test_unknown_status_rejected(self, in_memory_db):
        _insert_portfolio(in_memory_db)
        with pytest.raises(sqlite3.IntegrityError):
            _insert_optimization(in_memory_db, "o1", "pending")

    def test_negative_holding_rejected(self, in_memory_db):
        _insert_portfolio(in_memory_db)
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute(
                "INSERT INTO portfolio_holdings (portfolio_id, symbol, quantity, last_updated) "
                "VALUES ('p1', 'ACME', -1, '2026-03-02T15:00:00+00:00');"
            )


class TestMigrations:
    def test_all_applied_once(self, in_memory_db):
        assert run_migrations(in_memory_db) == len(MIGRATIONS)
        assert run_migrations(in_memory_db) == 0
        assert "idx_transactions_portfolio_symbol" in get_existing_indexes(in_memory_db)
