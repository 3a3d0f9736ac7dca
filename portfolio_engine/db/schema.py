"""
SQLite schema DDL — all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is **idempotent**:
safe to call on an already-initialized database (e.g. after restart or in tests).

Table creation order respects foreign key dependencies:
  1. portfolios                    (no FKs)
  2. portfolio_holdings            (→ portfolios)
  3. holding_applications          (→ portfolios)
  4. optimizations                 (→ portfolios)
  5. optimization_recommendations  (→ optimizations)
  6. transactions                  (→ portfolios, optimizations)
  7. price_quotes                  (no FKs)

Two constraints carry the engine's concurrency guarantees:

  - ``uq_optimizations_active`` — a partial UNIQUE index on
    (user_id, portfolio_id) restricted to active statuses.  Creating a
    second active optimization fails inside SQLite, so the exclusivity
    check and the insert are one atomic operation.
  - ``holding_applications.idempotency_key`` PRIMARY KEY — a holding delta
    is recorded at most once per transaction id.
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_PORTFOLIOS = """
CREATE TABLE IF NOT EXISTS portfolios (
    portfolio_id    TEXT    PRIMARY KEY,
    user_id         TEXT    NOT NULL,
    name            TEXT    NOT NULL,
    created_at      TEXT    NOT NULL,
    last_updated    TEXT    NOT NULL
);
"""

_DDL_PORTFOLIO_HOLDINGS = """
CREATE TABLE IF NOT EXISTS portfolio_holdings (
    portfolio_id         TEXT    NOT NULL REFERENCES portfolios(portfolio_id),
    symbol               TEXT    NOT NULL,
    quantity             REAL    NOT NULL CHECK (quantity >= 0),
    total_base_value     REAL    NOT NULL DEFAULT 0,
    current_total_value  REAL    NOT NULL DEFAULT 0,
    percentage_change    REAL    NOT NULL DEFAULT 0,
    last_updated         TEXT    NOT NULL,
    PRIMARY KEY (portfolio_id, symbol)
);
"""

_DDL_HOLDING_APPLICATIONS = """
CREATE TABLE IF NOT EXISTS holding_applications (
    idempotency_key  TEXT    PRIMARY KEY,
    portfolio_id     TEXT    NOT NULL REFERENCES portfolios(portfolio_id),
    symbol           TEXT    NOT NULL,
    quantity_delta   REAL    NOT NULL,
    value_delta      REAL    NOT NULL,
    mark_price       REAL,
    applied_at       TEXT    NOT NULL
);
"""

_DDL_OPTIMIZATIONS = """
CREATE TABLE IF NOT EXISTS optimizations (
    optimization_id    TEXT    PRIMARY KEY,
    user_id            TEXT    NOT NULL,
    portfolio_id       TEXT    NOT NULL REFERENCES portfolios(portfolio_id),
    status             TEXT    NOT NULL CHECK (
                           status IN ('created', 'in_progress', 'applied', 'canceled', 'failed')
                       ),
    created_at         TEXT    NOT NULL,
    applied_at         TEXT,
    confidence         REAL    NOT NULL DEFAULT 0 CHECK (confidence BETWEEN 0 AND 1),
    explanation        TEXT    NOT NULL DEFAULT '',
    model_version      TEXT    NOT NULL DEFAULT '',
    metrics_json       TEXT    NOT NULL DEFAULT '{}',
    transaction_ids    TEXT    NOT NULL DEFAULT '[]',
    updated_at         TEXT    NOT NULL
);
"""

_DDL_OPTIMIZATIONS_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS uq_optimizations_active
    ON optimizations(user_id, portfolio_id)
    WHERE status IN ('created', 'in_progress');
CREATE INDEX IF NOT EXISTS idx_optimizations_status
    ON optimizations(status);
CREATE INDEX IF NOT EXISTS idx_optimizations_portfolio_created
    ON optimizations(portfolio_id, created_at);
"""

_DDL_OPTIMIZATION_RECOMMENDATIONS = """
CREATE TABLE IF NOT EXISTS optimization_recommendations (
    optimization_id   TEXT    NOT NULL REFERENCES optimizations(optimization_id),
    position          INTEGER NOT NULL,
    symbol            TEXT    NOT NULL,
    action            TEXT    NOT NULL CHECK (action IN ('buy', 'sell', 'hold')),
    current_quantity  REAL    NOT NULL DEFAULT 0,
    target_quantity   REAL    NOT NULL,
    current_weight    REAL    NOT NULL DEFAULT 0,
    target_weight     REAL    NOT NULL DEFAULT 0,
    explanation       TEXT    NOT NULL DEFAULT '',
    PRIMARY KEY (optimization_id, position)
);
"""

_DDL_TRANSACTIONS = """
CREATE TABLE IF NOT EXISTS transactions (
    transaction_id     TEXT    PRIMARY KEY,
    optimization_id    TEXT    REFERENCES optimizations(optimization_id),
    user_id            TEXT    NOT NULL,
    portfolio_id       TEXT    NOT NULL REFERENCES portfolios(portfolio_id),
    symbol             TEXT    NOT NULL,
    quantity           REAL    NOT NULL CHECK (quantity > 0),
    type               TEXT    NOT NULL CHECK (type IN ('buy', 'sell')),
    triggered_by       TEXT    NOT NULL CHECK (triggered_by IN ('user', 'ai', 'system', 'test')),
    status             TEXT    NOT NULL CHECK (
                           status IN ('on_hold', 'succeeded', 'canceled', 'failed')
                       ),
    transaction_date   TEXT    NOT NULL,
    price_per_share    REAL,
    transaction_value  REAL,
    executed_at        TEXT,
    failure_reason     TEXT
);
"""

_DDL_TRANSACTIONS_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_transactions_on_hold
    ON transactions(transaction_date)
    WHERE status = 'on_hold';
CREATE INDEX IF NOT EXISTS idx_transactions_optimization
    ON transactions(optimization_id);
"""

_DDL_PRICE_QUOTES = """
CREATE TABLE IF NOT EXISTS price_quotes (
    quote_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol      TEXT    NOT NULL,
    price       REAL    NOT NULL CHECK (price > 0),
    kind        TEXT    NOT NULL DEFAULT 'intraday' CHECK (kind IN ('intraday', 'close')),
    quoted_at   TEXT    NOT NULL
);
"""

_DDL_PRICE_QUOTES_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_price_quotes_symbol_time
    ON price_quotes(symbol, kind, quoted_at);
"""

_ALL_DDL = [
    _DDL_PORTFOLIOS,
    _DDL_PORTFOLIO_HOLDINGS,
    _DDL_HOLDING_APPLICATIONS,
    _DDL_OPTIMIZATIONS,
    _DDL_OPTIMIZATIONS_INDEXES,
    _DDL_OPTIMIZATION_RECOMMENDATIONS,
    _DDL_TRANSACTIONS,
    _DDL_TRANSACTIONS_INDEXES,
    _DDL_PRICE_QUOTES,
    _DDL_PRICE_QUOTES_INDEXES,
]

# Table names for introspection / tests
ALL_TABLE_NAMES = [
    "portfolios",
    "portfolio_holdings",
    "holding_applications",
    "optimizations",
    "optimization_recommendations",
    "transactions",
    "price_quotes",
]


def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply all DDL statements to ``conn``.

    Idempotent — safe to call on an already-initialized database.
    Each statement uses ``IF NOT EXISTS`` guards.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    logger.debug("Applying schema to database...")

    for ddl in _ALL_DDL:
        for statement in _split_ddl(ddl):
            if statement.strip():
                conn.execute(statement)

    conn.commit()
    logger.info("Schema applied: %d tables, indexes created/verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    """Split a multi-statement DDL block on semicolons."""
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return list of table names present in the database (sorted)."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]


def get_existing_indexes(conn: sqlite3.Connection) -> list[str]:
    """Return list of index names present in the database (sorted)."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]
