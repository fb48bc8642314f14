from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest

from venue_nav.route_model import Frame, Maneuver
from venue_nav.route_planner import NO_ACCESSIBLE_ROUTE_WARNING, RoutePlanner, classify_turn
from venue_nav.shortest_path import PathNotFoundError, SearchCancelledError, dijkstra_shortest_path
from venue_nav.venue_graph import FileVenueGraphProvider, GraphStore, NavigationGraph, parse_venue_graph

FIXTURES = Path(__file__).resolve().parent / "fixtures" / "venues"


def _node(node_id: str, x: float, y: float, floor: int = 0, kind: str = "junction") -> dict[str, object]:
    return {"id": node_id, "x": x, "y": y, "floor": floor, "kind": kind}


def _triangle_graph() -> NavigationGraph:
    return parse_venue_graph(
        {
            "nodes": [_node("A", 0, 0), _node("B", 10, 0), _node("C", 20, 0)],
            "edges": [
                {"from": "A", "to": "B", "distance": 10, "accessible": True},
                {"from": "B", "to": "C", "distance": 10, "accessible": False},
                {"from": "A", "to": "C", "distance": 30, "accessible": True},
            ],
        },
        venue_id="triangle",
    )


def _diamond() -> NavigationGraph:
    return parse_venue_graph(
        {
            "nodes": [_node("A", 0, 0), _node("C", 5, -5), _node("B", 5, 5), _node("D", 10, 0)],
            "edges": [
                {"from": "A", "to": "C", "distance": 1, "accessible": True},
                {"from": "A", "to": "B", "distance": 1, "accessible": True},
                {"from": "C", "to": "D", "distance": 1, "accessible": True},
                {"from": "B", "to": "D", "distance": 1, "accessible": True},
            ],
        },
        venue_id="diamond",
    )


def _demo_mall() -> NavigationGraph:
    return GraphStore(FileVenueGraphProvider(FIXTURES)).load("demo_mall")


def test_accessible_only_avoids_inaccessible_shortcut() -> None:
    route = RoutePlanner().find_route(_triangle_graph(), "A", "C", accessible_only=True)
    assert route is not None
    assert route.path == ("A", "C")
    assert route.total_distance == pytest.approx(30.0)
    assert route.accessible is True


def test_standard_route_takes_shorter_inaccessible_path() -> None:
    route = RoutePlanner().find_route(_triangle_graph(), "A", "C", accessible_only=False)
    assert route is not None
    assert route.path == ("A", "B", "C")
    assert route.total_distance == pytest.approx(20.0)
    # Recomputed from the path, not from the planning flag.
    assert route.accessible is False


def test_every_edge_on_accessible_route_is_accessible() -> None:
    graph = _demo_mall()
    route = RoutePlanner().find_route(graph, "E", "S2", accessible_only=True)
    assert route is not None
    for a, b in zip(route.path, route.path[1:]):
        assert graph.edge(a, b).accessible


def test_no_accessible_path_returns_none() -> None:
    graph = parse_venue_graph(
        {
            "nodes": [_node("A", 0, 0), _node("B", 10, 0)],
            "edges": [{"from": "A", "to": "B", "distance": 10, "accessible": False}],
        },
        venue_id="v",
    )
    planner = RoutePlanner()
    assert planner.find_route(graph, "A", "B", accessible_only=True) is None
    assert planner.find_route(graph, "A", "B", accessible_only=False) is not None


def test_unreachable_and_unknown_endpoints_return_none() -> None:
    graph = _triangle_graph()
    planner = RoutePlanner()
    assert planner.find_route(graph, "C", "A") is None
    assert planner.find_route(graph, "A", "nope") is None
    assert planner.find_route(graph, "nope", "A") is None


def test_equal_cost_ties_break_on_lowest_node_id_and_are_stable() -> None:
    graph = _diamond()
    planner = RoutePlanner()
    paths = {planner.find_route(graph, "A", "D").path for _ in range(10)}
    assert paths == {("A", "B", "D")}


def test_same_start_and_destination_is_zero_length_arrival() -> None:
    route = RoutePlanner().find_route(_triangle_graph(), "B", "B")
    assert route is not None
    assert route.path == ("B",)
    assert route.total_distance == 0.0
    assert route.total_duration == 0.0
    assert [s.maneuver for s in route.steps] == [Maneuver.ARRIVE]


def test_route_steps_turns_and_floor_change() -> None:
    route = RoutePlanner().find_route(_demo_mall(), "E", "S2", accessible_only=True)
    assert route is not None
    assert route.path == ("E", "J1", "J2", "L0", "L1", "S2")
    assert route.frame is Frame.INDOOR
    assert route.total_distance == pytest.approx(75.0)
    assert route.total_duration == pytest.approx(75.0 * 1.3)
    assert [s.maneuver for s in route.steps] == [
        Maneuver.START,
        Maneuver.LEFT,
        Maneuver.STRAIGHT,
        Maneuver.STRAIGHT,
        Maneuver.STRAIGHT,
        Maneuver.ARRIVE,
    ]
    assert [s.distance_from_start for s in route.steps] == [0.0, 20.0, 40.0, 50.0, 55.0, 75.0]
    assert route.steps[0].instruction.startswith("Start at Main Entrance")
    assert route.steps[3].instruction == "Take the elevator at Lift Lobby to floor 1"
    assert route.steps[-1].instruction == "Arrive at Bookstore"
    assert route.coordinates[1] == (20.0, 0.0)


def test_right_turn_is_negative_angle() -> None:
    route = RoutePlanner().find_route(_demo_mall(), "S1", "J2")
    assert route is not None
    assert route.path == ("S1", "J1", "J2")
    assert route.steps[1].maneuver is Maneuver.RIGHT


def test_standard_route_prefers_stairs_when_shorter() -> None:
    route = RoutePlanner().find_route(_demo_mall(), "E", "S2")
    assert route is not None
    assert route.path == ("E", "ST0", "ST1", "S2")
    assert route.accessible is False
    assert route.steps[1].instruction == "Use the stairs at West Stairs to floor 1"


@pytest.mark.parametrize(
    ("angle", "expected"),
    [
        (0.0, Maneuver.STRAIGHT),
        (15.0, Maneuver.STRAIGHT),
        (-15.0, Maneuver.STRAIGHT),
        (15.1, Maneuver.LEFT),
        (-90.0, Maneuver.RIGHT),
        (179.0, Maneuver.LEFT),
    ],
)
def test_classify_turn_dead_band(angle: float, expected: Maneuver) -> None:
    assert classify_turn(angle, dead_band_deg=15.0) is expected


def test_fallback_returns_standard_route_with_warning() -> None:
    graph = parse_venue_graph(
        {
            "nodes": [_node("A", 0, 0), _node("B", 10, 0)],
            "edges": [{"from": "A", "to": "B", "distance": 10, "accessible": False}],
        },
        venue_id="v",
    )
    route = RoutePlanner().find_route_with_fallback(graph, "A", "B")
    assert route is not None
    assert route.path == ("A", "B")
    assert route.warnings == (NO_ACCESSIBLE_ROUTE_WARNING,)

    accessible = RoutePlanner().find_route_with_fallback(_triangle_graph(), "A", "C")
    assert accessible is not None
    assert accessible.warnings == ()
    assert accessible.path == ("A", "C")


def test_closures_force_detour() -> None:
    planner = RoutePlanner()
    graph = _demo_mall()
    detour = planner.find_route(graph, "E", "S2", closed_node_ids=["ST1"])
    assert detour is not None
    assert "ST1" not in detour.path
    assert planner.find_route(graph, "E", "S2", closed_edges=[("L0", "L1")], accessible_only=True) is None


def test_kernel_cancellation_and_unknown_endpoints() -> None:
    graph = _triangle_graph()
    with pytest.raises(SearchCancelledError):
        dijkstra_shortest_path(graph, start="A", goal="C", cancel_check=lambda: True)
    with pytest.raises(PathNotFoundError, match="unknown"):
        dijkstra_shortest_path(graph, start="A", goal="Q")


def test_async_plan_matches_sync_and_honours_cancel_event() -> None:
    planner = RoutePlanner()
    graph = _demo_mall()
    route = asyncio.run(planner.plan(graph, "E", "S1"))
    assert route == planner.find_route(graph, "E", "S1")

    cancelled = threading.Event()
    cancelled.set()
    with pytest.raises(SearchCancelledError):
        asyncio.run(planner.plan(graph, "E", "S1", cancel_event=cancelled))


def test_async_fallback_plans_off_the_event_loop_and_honours_closures() -> None:
    planner = RoutePlanner()
    graph = _demo_mall()
    route = asyncio.run(planner.plan_with_fallback(graph, "E", "S2", closed_edges=[("L0", "L1")]))
    assert route is not None
    assert route.path == ("E", "ST0", "ST1", "S2")
    assert route.accessible is False
    assert route.warnings == (NO_ACCESSIBLE_ROUTE_WARNING,)

    cancelled = threading.Event()
    cancelled.set()
    with pytest.raises(SearchCancelledError):
        asyncio.run(planner.plan_with_fallback(graph, "E", "S2", cancel_event=cancelled))
