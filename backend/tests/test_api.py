from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from venue_nav.distance_cache import DistanceCacheStore
from venue_nav.distance_estimator import DistanceEstimator
from venue_nav.main import app, distance_estimator, graph_store
from venue_nav.metrics_store import reset_metrics
from venue_nav.settings import settings
from venue_nav.venue_graph import FileVenueGraphProvider, GraphStore

FIXTURES = Path(__file__).resolve().parent / "fixtures" / "venues"

ORIGIN = {"lat": 51.5007, "lon": -0.1246}
DEST = {"lat": 51.5033, "lon": -0.1195}


class FakeDirections:
    def __init__(self) -> None:
        self.directions_calls = 0
        self.matrix_calls = 0

    async def fetch_directions(self, **_: Any) -> dict[str, Any]:
        self.directions_calls += 1
        return {
            "overview_polyline": {"points": "abc"},
            "legs": [
                {
                    "distance": {"value": 900},
                    "duration": {"value": 600},
                    "duration_in_traffic": {"value": 960},
                    "steps": [],
                }
            ],
        }

    async def fetch_distance_matrix(self, *, destinations: list[Any], **_: Any) -> dict[str, Any]:
        self.matrix_calls += 1
        elements = [
            {"status": "OK", "distance": {"value": 100.0 * (i + 1)}, "duration": {"value": 60.0 * (i + 1)}}
            for i, _ in enumerate(destinations)
        ]
        return {"status": "OK", "rows": [{"elements": elements}]}


@pytest.fixture
def api(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    reset_metrics()
    monkeypatch.setattr(settings, "out_dir", str(tmp_path / "out"))

    venues = tmp_path / "venues"
    venues.mkdir()
    (venues / "demo_mall.json").write_text((FIXTURES / "demo_mall.json").read_text(encoding="utf-8"), encoding="utf-8")
    (venues / "broken.json").write_text(
        json.dumps(
            {
                "nodes": [{"id": "A", "x": 0, "y": 0}],
                "edges": [{"from": "A", "to": "GHOST", "distance": 4}],
            }
        ),
        encoding="utf-8",
    )

    directions = FakeDirections()
    estimator = DistanceEstimator(client=directions, cache=DistanceCacheStore(ttl_s=1800, max_entries=64))
    store = GraphStore(FileVenueGraphProvider(venues))
    app.dependency_overrides[distance_estimator] = lambda: estimator
    app.dependency_overrides[graph_store] = lambda: store
    try:
        with TestClient(app) as client:
            yield client, directions
    finally:
        app.dependency_overrides.clear()


def test_health(api) -> None:
    client, _ = api
    assert client.get("/health").json() == {"status": "ok"}


def test_indoor_route_standard_and_accessible(api) -> None:
    client, _ = api
    standard = client.post("/venues/demo_mall/route", json={"from_node_id": "E", "to_node_id": "S2"})
    assert standard.status_code == 200
    body = standard.json()
    assert body["reason_code"] is None
    assert body["route"]["path"] == ["E", "ST0", "ST1", "S2"]
    assert body["route"]["accessible"] is False
    assert body["route"]["frame"] == "indoor"
    assert body["route"]["steps"][0]["maneuver"] == "start"
    assert body["route"]["steps"][-1]["maneuver"] == "arrive"

    accessible = client.post(
        "/venues/demo_mall/route",
        json={"from_node_id": "E", "to_node_id": "S2", "accessible_only": True},
    ).json()
    assert accessible["route"]["path"] == ["E", "J1", "J2", "L0", "L1", "S2"]
    assert accessible["route"]["accessible"] is True
    assert accessible["route"]["total_distance"] == pytest.approx(75.0)
    assert accessible["route"]["warnings"] == []


def test_indoor_route_closure_falls_back_with_warning(api) -> None:
    client, _ = api
    payload = {"from_node_id": "E", "to_node_id": "S2", "accessible_only": True, "closed_node_ids": ["L0"]}
    body = client.post("/venues/demo_mall/route", json=payload).json()
    assert body["route"]["path"] == ["E", "ST0", "ST1", "S2"]
    assert body["route"]["warnings"] == ["no accessible route - showing standard route instead"]

    strict = client.post("/venues/demo_mall/route", json={**payload, "fallback_to_standard": False}).json()
    assert strict["route"] is None
    assert strict["reason_code"] == "no_accessible_route"


def test_indoor_route_unknown_node_reports_route_not_found(api) -> None:
    client, _ = api
    body = client.post("/venues/demo_mall/route", json={"from_node_id": "E", "to_node_id": "NOPE"}).json()
    assert body["route"] is None
    assert body["reason_code"] == "route_not_found"


def test_unknown_venue_is_404_and_broken_venue_is_422(api) -> None:
    client, _ = api
    missing = client.post("/venues/nowhere/route", json={"from_node_id": "A", "to_node_id": "B"})
    assert missing.status_code == 404
    assert missing.json()["detail"]["reason_code"] == "venue_not_found"

    broken = client.post("/venues/broken/route", json={"from_node_id": "A", "to_node_id": "B"})
    assert broken.status_code == 422
    detail = broken.json()["detail"]
    assert detail["reason_code"] == "graph_dangling_edge"
    assert detail["details"]["missing"] == ["GHOST"]


def test_estimate_uses_service_then_cache(api) -> None:
    client, directions = api
    payload = {"origin": ORIGIN, "destination": DEST, "mode": "driving"}
    first = client.post("/estimate", json=payload).json()
    assert first["source"] == "service"
    assert first["distance"] == pytest.approx(900.0)
    assert first["traffic"] == "heavy"

    second = client.post("/estimate", json=payload).json()
    assert second["source"] == "cache"
    assert directions.directions_calls == 1
    assert client.get("/cache/stats").json()["size"] == 1

    cleared = client.delete("/cache").json()
    assert cleared == {"cleared": 1}
    assert client.get("/cache/stats").json()["size"] == 0


def test_estimate_rejects_out_of_range_coordinates(api) -> None:
    client, _ = api
    resp = client.post("/estimate", json={"origin": {"lat": 95.0, "lon": 0.0}, "destination": DEST})
    assert resp.status_code == 422


def test_batch_estimate_keeps_input_order(api) -> None:
    client, directions = api
    destinations = [{"id": f"d{i}", "lat": 51.5 + i / 1000.0, "lon": -0.12} for i in range(30)]
    body = client.post("/estimate/batch", json={"origin": ORIGIN, "destinations": destinations}).json()
    assert [item["id"] for item in body["results"]] == [d["id"] for d in destinations]
    assert body["results"][0]["estimate"]["distance"] == pytest.approx(100.0)
    assert body["results"][25]["estimate"]["distance"] == pytest.approx(100.0)
    assert directions.matrix_calls == 2


def test_batch_estimate_rejects_duplicate_ids(api) -> None:
    client, _ = api
    destinations = [{"id": "x", "lat": 51.5, "lon": -0.12}, {"id": "x", "lat": 51.6, "lon": -0.12}]
    resp = client.post("/estimate/batch", json={"origin": ORIGIN, "destinations": destinations})
    assert resp.status_code == 422


def test_indoor_estimate(api) -> None:
    client, _ = api
    body = client.post("/estimate/indoor", json={"distance_m": 100}).json()
    assert body == {"distance_m": 100.0, "duration_s": pytest.approx(130.0)}


def test_mode_recommend_derives_tier_from_model(api) -> None:
    client, _ = api
    caps = {"is_physical_device": True, "has_gyroscope": True, "has_accelerometer": True, "has_camera": True}
    low = client.post(
        "/mode/recommend",
        json={"capabilities": {**caps, "model_name": "iPhone SE"}, "context": {"inside_known_venue": True}},
    ).json()
    assert low == {"mode": "map", "frame": "indoor", "performance_tier": "low"}

    high = client.post("/mode/recommend", json={"capabilities": {**caps, "performance_tier": "high"}}).json()
    assert high == {"mode": "ar", "frame": "outdoor", "performance_tier": "high"}


def test_metrics_count_requests_errors_and_outcomes(api) -> None:
    client, _ = api
    client.post("/venues/demo_mall/route", json={"from_node_id": "E", "to_node_id": "S1"})
    client.post("/venues/demo_mall/route", json={"from_node_id": "E", "to_node_id": "NOPE"})
    client.post("/venues/nowhere/route", json={"from_node_id": "A", "to_node_id": "B"})
    client.post("/estimate", json={"origin": ORIGIN, "destination": DEST})

    snap = client.get("/metrics").json()
    route_counters = snap["endpoints"]["venue_route"]
    assert route_counters["request_count"] == 3
    assert route_counters["error_count"] == 1
    assert snap["endpoints"]["estimate"]["request_count"] == 1
    assert snap["outcomes"]["route_not_found"] == 1
    assert snap["outcomes"]["estimate_service"] == 1
    assert snap["total_requests"] == 4
