"""
Error taxonomy for the engine.

Four families, each with a different propagation policy:

  - ``GuardViolation``           — user-correctable (already active, cooling
                                   off, empty portfolio, wrong state).
                                   Raised to the caller; no state change.
  - ``NotFoundError``            — unknown optimization or portfolio.
                                   Raised to the caller; never retried.
  - ``UpstreamUnavailableError`` — prediction or price service did not
                                   answer.  Raised to interactive callers;
                                   absorbed by background passes, which
                                   leave the record for the next pass.
  - ``DomainViolation``          — a trade that can never succeed.  Recorded
                                   on the transaction as ``failed``.

Every error carries a machine-readable ``reason`` so a web layer can map it
without string matching.
"""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum


class ErrorReason(StrEnum):
    ALREADY_ACTIVE = "already_active"
    COOLING_OFF = "cooling_off"
    EMPTY_PORTFOLIO = "empty_portfolio"
    INVALID_STATE = "invalid_state"
    NOT_FOUND = "not_found"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    PRICE_UNAVAILABLE = "price_unavailable"
    INSUFFICIENT_HOLDINGS = "insufficient_holdings"
    UNKNOWN_SYMBOL = "unknown_symbol"


class EngineError(RuntimeError):
    """Base class for every error the engine raises on purpose."""

    reason: ErrorReason

    def __init__(self, message: str, reason: ErrorReason) -> None:
        self.reason = reason
        super().__init__(message)


# ── Guard violations ──────────────────────────────────────────────────────────


class GuardViolation(EngineError):
    """A request was refused without changing any state."""


class AlreadyActiveError(GuardViolation):
    """Another optimization for the same portfolio is created or in progress."""

    def __init__(self, user_id: str, portfolio_id: str) -> None:
        self.user_id = user_id
        self.portfolio_id = portfolio_id
        super().__init__(
            f"Portfolio '{portfolio_id}' of user '{user_id}' already has an "
            "optimization that is created or in progress.",
            ErrorReason.ALREADY_ACTIVE,
        )


class CoolingOffError(GuardViolation):
    """The portfolio was optimized too recently.

    Attributes:
        remaining: Exact time left before a new request is accepted.
    """

    def __init__(self, portfolio_id: str, remaining: timedelta) -> None:
        self.portfolio_id = portfolio_id
        self.remaining = remaining
        super().__init__(
            f"Portfolio '{portfolio_id}' is cooling off; "
            f"{_format_duration(remaining)} remaining.",
            ErrorReason.COOLING_OFF,
        )


class EmptyPortfolioError(GuardViolation):
    def __init__(self, portfolio_id: str) -> None:
        self.portfolio_id = portfolio_id
        super().__init__(
            f"Portfolio '{portfolio_id}' has no holdings to optimize.",
            ErrorReason.EMPTY_PORTFOLIO,
        )


class InvalidTransitionError(GuardViolation):
    """The optimization is not in a state that allows the requested event."""

    def __init__(self, optimization_id: str, current: str, event: str) -> None:
        self.optimization_id = optimization_id
        self.current = current
        self.event = event
        super().__init__(
            f"Cannot {event} optimization '{optimization_id}' with status '{current}'.",
            ErrorReason.INVALID_STATE,
        )


# ── Not found ─────────────────────────────────────────────────────────────────


class NotFoundError(EngineError):
    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found.", ErrorReason.NOT_FOUND)


# ── Upstream ──────────────────────────────────────────────────────────────────


class UpstreamUnavailableError(EngineError):
    """An external service timed out, refused, or answered garbage."""

    def __init__(
        self,
        service: str,
        detail: str,
        reason: ErrorReason = ErrorReason.UPSTREAM_UNAVAILABLE,
    ) -> None:
        self.service = service
        super().__init__(f"{service} unavailable: {detail}", reason)


class PriceUnavailableError(UpstreamUnavailableError):
    def __init__(self, symbol: str, detail: str = "no current price") -> None:
        self.symbol = symbol
        super().__init__("price oracle", f"{symbol}: {detail}", ErrorReason.PRICE_UNAVAILABLE)


# ── Domain violations ─────────────────────────────────────────────────────────


class DomainViolation(EngineError):
    """A transaction that can never execute; terminal for that transaction."""


class InsufficientHoldingsError(DomainViolation):
    def __init__(self, portfolio_id: str, symbol: str, requested: float, held: float) -> None:
        self.portfolio_id = portfolio_id
        self.symbol = symbol
        self.requested = requested
        self.held = held
        super().__init__(
            f"Cannot sell {requested:g} shares of {symbol} in portfolio "
            f"'{portfolio_id}': only {held:g} held.",
            ErrorReason.INSUFFICIENT_HOLDINGS,
        )


class UnknownSymbolError(DomainViolation):
    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"Symbol '{symbol}' is not tradable.", ErrorReason.UNKNOWN_SYMBOL)


def _format_duration(value: timedelta) -> str:
    total = int(value.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours}h{minutes:02d}m{seconds:02d}s"
