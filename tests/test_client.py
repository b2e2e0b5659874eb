"""Tests for the httpx client."""

import json
from datetime import date

import httpx
import pytest

from pulse_analytics.client import (
    PulseClient,
    PulseClientConfig,
    PulseClientError,
    PulseConnectionError,
    PulseNotFoundError,
)


def make_client(handler, api_key=None) -> PulseClient:
    config = PulseClientConfig(base_url="http://pulse.test", api_key=api_key)
    return PulseClient(config, transport=httpx.MockTransport(handler))


def test_health_and_api_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers.get("X-API-Key")
        return httpx.Response(200, json={"status": "healthy", "version": "0.1.0", "database_path": "x.db"})

    with make_client(handler, api_key="secret") as client:
        assert client.is_healthy() is True
    assert seen["key"] == "secret"


def test_forecast_uses_get_without_factors():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/api/v1/entities/s1/forecast"
        assert request.url.params["target_date"] == "2024-07-04"
        return httpx.Response(200, json={"mid": 1000.0})

    with make_client(handler) as client:
        assert client.forecast("s1", date(2024, 7, 4))["mid"] == 1000.0


def test_forecast_posts_known_factors():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        body = json.loads(request.content)
        assert body == {
            "target_date": "2024-07-04",
            "known_factors": [{"factor_type": "weather", "temperature_f": 95}],
        }
        return httpx.Response(200, json={"mid": 1200.0})

    with make_client(handler) as client:
        result = client.forecast("s1", date(2024, 7, 4), [{"factor_type": "weather", "temperature_f": 95}])
    assert result["mid"] == 1200.0


def test_discover_body():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"start_date": "2024-06-01", "end_date": "2024-06-30"}
        return httpx.Response(200, json={"created": 2})

    with make_client(handler) as client:
        assert client.discover("s1", date(2024, 6, 1), date(2024, 6, 30))["created"] == 2


def test_correlations_min_confidence_param():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["min_confidence"] == "75"
        return httpx.Response(200, json=[])

    with make_client(handler) as client:
        assert client.correlations("s1", min_confidence=75) == []


def test_not_found_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {
            "code": "ENTITY_NOT_FOUND", "message": "No location registered for s9", "details": {"entity_id": "s9"},
        }})

    with make_client(handler) as client:
        with pytest.raises(PulseNotFoundError) as exc:
            client.roll_up("s9")
    assert exc.value.code == "ENTITY_NOT_FOUND"
    assert exc.value.details == {"entity_id": "s9"}


def test_server_error_without_json_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    with make_client(handler) as client:
        with pytest.raises(PulseClientError) as exc:
            client.validate("s1")
    assert exc.value.code == "HTTP_ERROR"


def test_connection_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with make_client(handler) as client:
        with pytest.raises(PulseConnectionError):
            client.health()
        assert client.is_healthy() is False
