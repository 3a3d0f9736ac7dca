"""
Prediction service client.

The lifecycle manager depends only on the ``PredictionProvider`` protocol;
``HttpPredictionProvider`` is the production implementation.

Endpoint::

    POST {base_url}/optimize
    {"user_id": "...", "portfolio_id": "...", "symbols": ["ACME", ...]}

The response body is validated into a ``PredictionResult``.  Every failure
mode (timeout, connection refused, non-2xx, malformed body) is reported as
``UpstreamUnavailableError`` so the caller never sees an ``httpx`` type.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from portfolio_engine.config import PredictionConfig
from portfolio_engine.engine.errors import UpstreamUnavailableError
from portfolio_engine.models.optimization import PredictionResult

logger = logging.getLogger(__name__)

SERVICE_NAME = "prediction service"


class PredictionProvider(Protocol):
    def get_optimization(
        self,
        user_id: str,
        symbols: list[str],
        portfolio_id: Optional[str] = None,
    ) -> PredictionResult:
        ...


class HttpPredictionProvider:
    """Calls the remote optimization endpoint with a bounded timeout.

    Attributes:
        base_url: Service root, without trailing slash.
        timeout_seconds: Hard limit for the whole request.
        api_key: Optional bearer token.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        api_key: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key

    @classmethod
    def from_config(cls, config: PredictionConfig) -> "HttpPredictionProvider":
        return cls(config.base_url, config.timeout_seconds, config.api_key)

    def get_optimization(
        self,
        user_id: str,
        symbols: list[str],
        portfolio_id: Optional[str] = None,
    ) -> PredictionResult:
        """Request recommendations for ``symbols``.

        Raises:
            UpstreamUnavailableError: The service could not produce a usable
                answer within the timeout.
        """
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            resp = httpx.post(
                f"{self.base_url}/optimize",
                json={"user_id": user_id, "portfolio_id": portfolio_id, "symbols": symbols},
                headers=headers,
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
            result = PredictionResult.model_validate(resp.json())
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailableError(
                SERVICE_NAME, f"timed out after {self.timeout_seconds:g}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise UpstreamUnavailableError(
                SERVICE_NAME, f"HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(SERVICE_NAME, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise UpstreamUnavailableError(SERVICE_NAME, f"malformed response: {exc}") from exc

        logger.info(
            "Prediction for portfolio=%s: %d recommendations, confidence=%.2f, model=%s",
            portfolio_id, len(result.recommendations), result.confidence,
            result.model_version or "?",
        )
        return result
