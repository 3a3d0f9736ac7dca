"""
Optimization models.

``Recommendation`` is one symbol-level suggestion from the prediction
service; ``PredictionResult`` is the full service response; ``Optimization``
is the durable record of one optimization attempt and its lifecycle state.

All three are frozen.  An ``Optimization`` changes state only through the
repository's conditional updates, which return a freshly loaded instance.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from portfolio_engine.taxonomy.status_taxonomy import (
    ACTIVE_OPTIMIZATION_STATUSES,
    OptimizationStatus,
    RecommendationAction,
)


def normalize_symbol(v: str) -> str:
    v = v.strip().upper()
    if not v:
        raise ValueError("symbol must not be empty.")
    return v


def _unique_symbols(recommendations: list[Recommendation]) -> list[Recommendation]:
    seen: set[str] = set()
    for rec in recommendations:
        if rec.symbol in seen:
            raise ValueError(f"duplicate recommendation for symbol {rec.symbol}.")
        seen.add(rec.symbol)
    return recommendations


class Recommendation(BaseModel):
    """One symbol-level target from the prediction service.

    Attributes:
        symbol: Ticker, normalized to upper case.
        action: Closed ``buy``/``sell``/``hold`` variant.
        current_quantity: Shares held when the prediction was produced.
        target_quantity: Shares the service wants held afterwards.
        current_weight: Share of portfolio value before, in [0, 1].
        target_weight: Share of portfolio value after, in [0, 1].
        explanation: Free-text rationale.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    action: RecommendationAction
    current_quantity: float = 0.0
    target_quantity: float
    current_weight: float = 0.0
    target_weight: float = 0.0
    explanation: str = ""

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)

    @field_validator("current_quantity", "target_quantity")
    @classmethod
    def validate_quantity(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"quantities must be non-negative, got {v}.")
        return v

    @field_validator("current_weight", "target_weight")
    @classmethod
    def validate_weight(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"weights must be in [0, 1], got {v}.")
        return v


class OptimizationMetrics(BaseModel):
    """Pre- and post-optimization portfolio statistics.

    Opaque to the engine: stored and returned, never recomputed.  Unknown
    keys sent by the service are kept.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    sharpe_ratio: Optional[float] = None
    mean_return: Optional[float] = None
    variance: Optional[float] = None
    expected_return: Optional[float] = None
    projected_sharpe_ratio: Optional[float] = None
    projected_mean_return: Optional[float] = None
    projected_variance: Optional[float] = None
    projected_expected_return: Optional[float] = None


class PredictionResult(BaseModel):
    """What ``PredictionProvider.get_optimization`` returns."""

    model_config = ConfigDict(frozen=True)

    recommendations: list[Recommendation] = Field(default_factory=list)
    metrics: OptimizationMetrics = Field(default_factory=OptimizationMetrics)
    confidence: float = 0.0
    explanation: str = ""
    model_version: str = ""

    @field_validator("confidence")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {v}.")
        return v

    @field_validator("recommendations")
    @classmethod
    def validate_recommendations(cls, v: list[Recommendation]) -> list[Recommendation]:
        return _unique_symbols(v)

    @property
    def symbols(self) -> set[str]:
        return {r.symbol for r in self.recommendations}


class Optimization(BaseModel):
    """Durable record of one optimization attempt.

    Attributes:
        optimization_id: uuid4 string.
        user_id: Owner of the portfolio.
        portfolio_id: Portfolio being optimized.
        status: Lifecycle state.
        created_at: UTC creation time.
        updated_at: UTC time of the last status change; set to
            ``created_at`` on insert.  For an ``in_progress`` optimization
            this is when ``apply`` ran.
        applied_at: UTC time the optimization reached ``applied``; starts
            the cool-off window.  ``None`` otherwise.
        confidence: Service confidence in [0, 1].
        explanation: Service rationale plus lifecycle annotations.
        model_version: Version string reported by the service.
        metrics: Opaque statistics payload.
        recommendations: Ordered per-symbol targets; frozen once the
            optimization leaves ``created``.
        transaction_ids: Transactions spawned by ``apply``; empty while
            ``created``.
    """

    model_config = ConfigDict(frozen=True)

    optimization_id: str
    user_id: str
    portfolio_id: str
    status: OptimizationStatus = OptimizationStatus.CREATED
    created_at: datetime
    updated_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    confidence: float = 0.0
    explanation: str = ""
    model_version: str = ""
    metrics: OptimizationMetrics = Field(default_factory=OptimizationMetrics)
    recommendations: list[Recommendation] = Field(default_factory=list)
    transaction_ids: list[str] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {v}.")
        return v

    @field_validator("recommendations")
    @classmethod
    def validate_recommendations(cls, v: list[Recommendation]) -> list[Recommendation]:
        return _unique_symbols(v)

    @model_validator(mode="after")
    def validate_lifecycle_fields(self) -> "Optimization":
        if self.status is OptimizationStatus.CREATED and self.transaction_ids:
            raise ValueError("A created optimization cannot own transactions.")
        if self.status is OptimizationStatus.APPLIED and self.applied_at is None:
            raise ValueError("An applied optimization must have applied_at set.")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_OPTIMIZATION_STATUSES

    @property
    def symbols(self) -> set[str]:
        return {r.symbol for r in self.recommendations}
