"""
Pulse Analytics Python Client

Thin httpx wrapper around the Pulse REST API for services that want
forecasts, correlations or pattern reports without importing the engine.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

import httpx


@dataclass
class PulseClientConfig:
    """Configuration for the Pulse client."""

    base_url: str = field(
        default_factory=lambda: os.getenv("PULSE_API_URL", "http://localhost:8002")
    )
    api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("PULSE_API_KEY")
    )
    timeout: float = 30.0


class PulseClientError(Exception):
    """Base exception for Pulse client errors."""

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict | None = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class PulseConnectionError(PulseClientError):
    """Raised when unable to connect to the Pulse service."""
    pass


class PulseNotFoundError(PulseClientError):
    """Raised when the requested entity or resource is not found."""
    pass


class PulseClient:
    """
    Client for the Pulse Analytics API.

    Example:
        >>> pulse = PulseClient()
        >>> forecast = pulse.forecast("store-42", date(2025, 7, 4))
        >>> print(f"Expected revenue: {forecast['mid']:.0f} ({forecast['low']:.0f}-{forecast['high']:.0f})")

        >>> for c in pulse.correlations("store-42")[:5]:
        ...     print(f"{c['description']} (confidence {c['confidence']:.0f})")
    """

    def __init__(self, config: PulseClientConfig | None = None, transport: httpx.BaseTransport | None = None):
        """
        Initialize Pulse client.

        Args:
            config: Optional configuration. Uses environment variables if not provided.
            transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        """
        self.config = config or PulseClientConfig()
        self._transport = transport
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Lazy-initialize HTTP client."""
        if self._client is None:
            headers = {}
            if self.config.api_key:
                headers["X-API-Key"] = self.config.api_key

            self._client = httpx.Client(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "PulseClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle API response and raise appropriate errors."""
        try:
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            try:
                error_data = response.json().get("error", {})
            except ValueError:
                error_data = {}

            code = error_data.get("code", "HTTP_ERROR")
            message = error_data.get("message", str(e))
            details = error_data.get("details", {})

            if response.status_code == 404:
                raise PulseNotFoundError(message, code, details) from e
            raise PulseClientError(message, code, details) from e

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.ConnectError as e:
            raise PulseConnectionError(
                f"Unable to connect to Pulse service at {self.config.base_url}",
                "CONNECTION_ERROR",
            ) from e
        return self._handle_response(response)

    # =========================================================================
    # Health & Status
    # =========================================================================

    def health(self) -> dict:
        """Check Pulse service health."""
        return self._request("GET", "/health")

    def is_healthy(self) -> bool:
        try:
            return self.health().get("status") == "healthy"
        except PulseClientError:
            return False

    # =========================================================================
    # Learning
    # =========================================================================

    def discover(self, entity_id: str, start_date: date, end_date: date) -> dict:
        """Run correlation discovery (and roll-up) for an entity."""
        return self._request(
            "POST",
            f"/api/v1/entities/{entity_id}/discover",
            json={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )

    def validate(self, entity_id: str, as_of: Optional[date] = None) -> dict:
        """Backtest an entity's active patterns."""
        return self._request(
            "POST",
            f"/api/v1/entities/{entity_id}/validate",
            json={"as_of": as_of.isoformat() if as_of else None},
        )

    def roll_up(self, entity_id: str) -> dict:
        return self._request("POST", f"/api/v1/entities/{entity_id}/rollup")

    def correlations(self, entity_id: str, min_confidence: Optional[float] = None) -> list[dict]:
        """Patterns that apply to an entity, most specific first."""
        params = {}
        if min_confidence is not None:
            params["min_confidence"] = min_confidence
        return self._request("GET", f"/api/v1/entities/{entity_id}/correlations", params=params)

    # =========================================================================
    # Forecasts & Patterns
    # =========================================================================

    def forecast(
        self,
        entity_id: str,
        target_date: date,
        known_factors: Optional[list[dict]] = None,
    ) -> dict:
        """
        Revenue forecast for ``target_date``.

        Args:
            entity_id: Entity to forecast
            target_date: Day to forecast
            known_factors: Optional factor dicts (``{"factor_type": "weather", ...}``);
                when omitted the service looks them up itself.
        """
        if known_factors is None:
            return self._request(
                "GET",
                f"/api/v1/entities/{entity_id}/forecast",
                params={"target_date": target_date.isoformat()},
            )
        return self._request(
            "POST",
            f"/api/v1/entities/{entity_id}/forecast",
            json={"target_date": target_date.isoformat(), "known_factors": known_factors},
        )

    def internal_patterns(self, entity_id: str, start_date: date, end_date: date) -> dict:
        return self._request(
            "GET",
            f"/api/v1/entities/{entity_id}/patterns",
            params={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )


__all__ = [
    "PulseClient",
    "PulseClientConfig",
    "PulseClientError",
    "PulseConnectionError",
    "PulseNotFoundError",
]
