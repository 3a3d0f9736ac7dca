"""Tests for status taxonomy integrity — enums, partitions, schema agreement."""

from __future__ import annotations

import re

import pytest

from portfolio_engine.db import schema
from portfolio_engine.taxonomy.status_taxonomy import (
    ACTIVE_OPTIMIZATION_STATUSES,
    TERMINAL_OPTIMIZATION_STATUSES,
    OptimizationStatus,
    QuoteKind,
    RecommendationAction,
    TransactionStatus,
    TransactionTrigger,
    TransactionType,
)


class TestOptimizationStatus:
    def test_active_and_terminal_partition_all_states(self):
        assert ACTIVE_OPTIMIZATION_STATUSES | TERMINAL_OPTIMIZATION_STATUSES == set(OptimizationStatus)
        assert not ACTIVE_OPTIMIZATION_STATUSES & TERMINAL_OPTIMIZATION_STATUSES

    def test_is_terminal(self):
        assert OptimizationStatus.APPLIED.is_terminal
        assert not OptimizationStatus.IN_PROGRESS.is_terminal

    def test_str_is_value(self):
        assert f"{OptimizationStatus.IN_PROGRESS}" == "in_progress"


class TestTransactionStatus:
    def test_only_on_hold_is_pending(self):
        assert [s for s in TransactionStatus if not s.is_terminal] == [TransactionStatus.ON_HOLD]


@pytest.mark.parametrize(
    "enum_cls, ddl",
    [
        (OptimizationStatus, schema._DDL_OPTIMIZATIONS),
        (TransactionStatus, schema._DDL_TRANSACTIONS),
        (TransactionType, schema._DDL_TRANSACTIONS),
        (TransactionTrigger, schema._DDL_TRANSACTIONS),
        (RecommendationAction, schema._DDL_OPTIMIZATION_RECOMMENDATIONS),
        (QuoteKind, schema._DDL_PRICE_QUOTES),
    ],
)
def test_schema_check_constraints_cover_enum(enum_cls, ddl):
    allowed = set(re.findall(r"'([a-z_]+)'", ddl))
    for member in enum_cls:
        assert member.value in allowed, f"{member.value} missing from CHECK constraint"
