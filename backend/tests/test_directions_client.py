from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

import venue_nav.directions_client as directions_module
from venue_nav.directions_client import DirectionsClient, DirectionsError, matrix_element, parse_directions_route
from venue_nav.distance_cache import DistanceCacheStore
from venue_nav.distance_estimator import DistanceEstimator
from venue_nav.geo import LatLon

A = LatLon(51.5007, -0.1246)
B = LatLon(51.5033, -0.1195)


def _ok_directions() -> dict[str, Any]:
    return {
        "status": "OK",
        "routes": [
            {
                "overview_polyline": {"points": "xyz"},
                "legs": [
                    {
                        "distance": {"value": 450},
                        "duration": {"value": 330},
                        "steps": [
                            {
                                "html_instructions": "Walk <div>east</div>",
                                "distance": {"value": 450},
                                "duration": {"value": 330},
                                "end_location": {"lat": B.lat, "lng": B.lon},
                            }
                        ],
                    }
                ],
            }
        ],
    }


class Recorder:
    def __init__(self, responses: list[httpx.Response | Exception]) -> None:
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses[min(len(self.requests) - 1, len(self.responses) - 1)]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(directions_module, "asyncio", SimpleNamespace(sleep=_sleep))
    return delays


def _client(recorder: Recorder, *, max_retries: int = 3) -> DirectionsClient:
    return DirectionsClient(
        base_url="https://maps.example.test/api/",
        api_key="k-123",
        timeout_s=2.0,
        max_retries=max_retries,
        transport=httpx.MockTransport(recorder),
    )


async def _fetch(client: DirectionsClient, **kwargs: Any) -> dict[str, Any]:
    try:
        return await client.fetch_directions(origin=A, destination=B, **kwargs)
    finally:
        await client.aclose()


def test_fetch_directions_sends_key_and_mode() -> None:
    recorder = Recorder([httpx.Response(200, json=_ok_directions())])
    route = asyncio.run(_fetch(_client(recorder), mode="walking", traffic_model="best_guess"))

    assert len(recorder.requests) == 1
    req = recorder.requests[0]
    assert req.url.path == "/api/directions/json"
    assert req.url.params["key"] == "k-123"
    assert req.url.params["mode"] == "walking"
    assert req.url.params["origin"] == f"{A.lat},{A.lon}"
    # Traffic model is a driving-only parameter.
    assert "traffic_model" not in req.url.params
    leg = parse_directions_route(route)
    assert leg.steps[0]["instruction"] == "Walk east"
    assert leg.traffic_duration_s is None


def test_driving_requests_carry_traffic_model_and_departure_time() -> None:
    recorder = Recorder([httpx.Response(200, json={"status": "OK", "rows": [{"elements": [{"status": "OK"}]}]})])
    client = _client(recorder)
    when = datetime(2026, 3, 1, 8, 30, tzinfo=UTC)

    async def _run() -> None:
        try:
            await client.fetch_distance_matrix(
                origins=[A],
                destinations=[B],
                mode="driving",
                traffic_model="best_guess",
                departure_time=when,
            )
        finally:
            await client.aclose()

    asyncio.run(_run())
    params = recorder.requests[0].url.params
    assert params["traffic_model"] == "best_guess"
    assert params["departure_time"] == str(int(when.timestamp()))
    assert params["destinations"] == f"{B.lat},{B.lon}"


def test_retryable_status_is_retried_with_backoff(no_backoff: list[float]) -> None:
    recorder = Recorder(
        [
            httpx.Response(503, text="busy"),
            httpx.Response(429, json={"status": "OVER_QUERY_LIMIT"}),
            httpx.Response(200, json=_ok_directions()),
        ]
    )
    asyncio.run(_fetch(_client(recorder), mode="walking"))
    assert len(recorder.requests) == 3
    assert no_backoff == [0.25, 0.5]


def test_transport_errors_exhaust_retries_as_directions_error(no_backoff: list[float]) -> None:
    recorder = Recorder([httpx.ConnectTimeout("")])
    with pytest.raises(DirectionsError) as exc:
        asyncio.run(_fetch(_client(recorder, max_retries=2), mode="walking"))
    assert "ConnectTimeout" in str(exc.value)
    assert len(recorder.requests) == 2


def test_non_ok_api_status_is_not_retried(no_backoff: list[float]) -> None:
    recorder = Recorder([httpx.Response(200, json={"status": "REQUEST_DENIED", "error_message": "bad key"})])
    with pytest.raises(DirectionsError, match="REQUEST_DENIED"):
        asyncio.run(_fetch(_client(recorder), mode="walking"))
    assert len(recorder.requests) == 1
    assert no_backoff == []


def test_client_error_status_is_not_retried() -> None:
    recorder = Recorder([httpx.Response(403, json={"status": "REQUEST_DENIED", "error_message": "forbidden"})])
    with pytest.raises(DirectionsError, match="403 REQUEST_DENIED: forbidden"):
        asyncio.run(_fetch(_client(recorder), mode="walking"))
    assert len(recorder.requests) == 1


def test_empty_routes_is_a_failure() -> None:
    recorder = Recorder([httpx.Response(200, json={"status": "OK", "routes": []})])
    with pytest.raises(DirectionsError, match="no routes"):
        asyncio.run(_fetch(_client(recorder), mode="walking"))


def test_matrix_element_rejects_non_ok_and_malformed_elements() -> None:
    data = {
        "rows": [
            {
                "elements": [
                    {"status": "NOT_FOUND"},
                    {"status": "OK", "distance": {"value": "x"}, "duration": {"value": 1}},
                    {"status": "OK", "distance": {"value": 10}, "duration": {"value": 20}},
                ]
            }
        ]
    }
    with pytest.raises(DirectionsError, match="NOT_FOUND"):
        matrix_element(data, 0, 0)
    with pytest.raises(DirectionsError, match="malformed"):
        matrix_element(data, 0, 1)
    with pytest.raises(DirectionsError, match="missing"):
        matrix_element(data, 0, 5)
    assert matrix_element(data, 0, 2) == (10.0, 20.0, None)


def test_estimator_over_real_client_falls_back_on_denied_status() -> None:
    recorder = Recorder([httpx.Response(200, json={"status": "REQUEST_DENIED"})])
    client = _client(recorder)
    estimator = DistanceEstimator(client=client, cache=DistanceCacheStore(ttl_s=60, max_entries=8))

    async def _run():
        try:
            return await estimator.estimate(A, B, "walking")
        finally:
            await client.aclose()

    calc = asyncio.run(_run())
    assert calc.source == "local"
    assert calc.distance > 0
    assert estimator.cache_stats()["size"] == 0
