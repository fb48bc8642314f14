from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from .distance_estimator import estimate_indoor_walk
from .geo import signed_turn_angle_deg
from .logging_utils import log_event
from .route_model import Frame, Maneuver, Route, Step
from .settings import settings
from .shortest_path import PathNotFoundError, PathResult, dijkstra_shortest_path, normalize_no_path_reason
from .venue_graph import Edge, NavigationGraph, Node

NO_ACCESSIBLE_ROUTE_WARNING = "no accessible route - showing standard route instead"

_VERTICAL_VERBS: dict[str, str] = {
    "elevator": "Take the elevator",
    "escalator": "Take the escalator",
    "stairs": "Use the stairs",
}


def _label(node: Node) -> str:
    return node.name or node.id


def classify_turn(angle_deg: float, *, dead_band_deg: float) -> Maneuver:
    if abs(angle_deg) <= dead_band_deg:
        return Maneuver.STRAIGHT
    return Maneuver.LEFT if angle_deg > 0 else Maneuver.RIGHT


def _intermediate_step(
    prev: Node,
    node: Node,
    nxt: Node,
    out_edge: Edge,
    *,
    dead_band_deg: float,
) -> tuple[Maneuver, str]:
    if nxt.floor != node.floor:
        verb = _VERTICAL_VERBS.get(out_edge.kind, "Change level")
        return Maneuver.STRAIGHT, f"{verb} at {_label(node)} to floor {nxt.floor}"
    angle = signed_turn_angle_deg((prev.x, prev.y), (node.x, node.y), (nxt.x, nxt.y))
    maneuver = classify_turn(angle, dead_band_deg=dead_band_deg)
    leg = f"{out_edge.distance:.0f} m"
    if maneuver is Maneuver.LEFT:
        return maneuver, f"Turn left at {_label(node)} and continue {leg}"
    if maneuver is Maneuver.RIGHT:
        return maneuver, f"Turn right at {_label(node)} and continue {leg}"
    return maneuver, f"Continue straight past {_label(node)} for {leg}"


def build_steps(graph: NavigationGraph, result: PathResult, *, dead_band_deg: float) -> tuple[Step, ...]:
    nodes = [graph.nodes[nid] for nid in result.nodes]
    if len(nodes) == 1:
        only = nodes[0]
        return (
            Step(
                instruction="You are already at your destination",
                distance_from_start=0.0,
                maneuver=Maneuver.ARRIVE,
                coordinate=(only.x, only.y),
                floor=only.floor,
            ),
        )

    steps: list[Step] = []
    travelled = 0.0
    for idx, node in enumerate(nodes):
        if idx > 0:
            travelled += float(result.edges[idx - 1].distance)
        if idx == 0:
            first_edge = result.edges[0]
            maneuver = Maneuver.START
            instruction = f"Start at {_label(node)} and head towards {_label(nodes[1])} ({first_edge.distance:.0f} m)"
        elif idx == len(nodes) - 1:
            maneuver = Maneuver.ARRIVE
            instruction = f"Arrive at {_label(node)}"
        else:
            maneuver, instruction = _intermediate_step(
                nodes[idx - 1],
                node,
                nodes[idx + 1],
                result.edges[idx],
                dead_band_deg=dead_band_deg,
            )
        steps.append(
            Step(
                instruction=instruction,
                distance_from_start=round(travelled, 3),
                maneuver=maneuver,
                coordinate=(node.x, node.y),
                floor=node.floor,
            )
        )
    return tuple(steps)


class RoutePlanner:
    """Shortest-path planner over a loaded venue graph."""

    def __init__(self, *, turn_dead_band_deg: float | None = None) -> None:
        self.turn_dead_band_deg = float(
            settings.turn_dead_band_deg if turn_dead_band_deg is None else turn_dead_band_deg
        )

    def find_route(
        self,
        graph: NavigationGraph,
        from_node_id: str,
        to_node_id: str,
        accessible_only: bool = False,
        *,
        closed_node_ids: Iterable[str] = (),
        closed_edges: Iterable[tuple[str, str]] = (),
        cancel_check: Callable[[], bool] | None = None,
    ) -> Route | None:
        """Return the shortest route, or None when no (accessible) path exists.

        A missing route is a normal outcome. Callers decide whether to fall back to
        a standard route or report that nothing was found.
        """
        t0 = time.perf_counter()
        search_graph = graph.with_closures(closed_node_ids=closed_node_ids, closed_edges=closed_edges)
        explored = [0]
        try:
            result = dijkstra_shortest_path(
                search_graph,
                start=str(from_node_id),
                goal=str(to_node_id),
                accessible_only=accessible_only,
                explored_counter=explored,
                cancel_check=cancel_check,
            )
        except PathNotFoundError as exc:
            log_event(
                "route_not_found",
                venue_id=graph.venue_id,
                from_node_id=from_node_id,
                to_node_id=to_node_id,
                accessible_only=accessible_only,
                reason_code=(
                    "no_accessible_route"
                    if accessible_only and normalize_no_path_reason(str(exc)) == "route_not_found"
                    else normalize_no_path_reason(str(exc))
                ),
                explored_states=explored[0],
            )
            return None

        steps = build_steps(search_graph, result, dead_band_deg=self.turn_dead_band_deg)
        # Recomputed from the reconstructed edges, independent of the planning flag.
        accessible = all(edge.accessible for edge in result.edges)
        total_distance = round(sum(float(e.distance) for e in result.edges), 3)
        route = Route(
            path=result.nodes,
            total_distance=total_distance,
            total_duration=estimate_indoor_walk(total_distance),
            accessible=accessible,
            steps=steps,
            frame=Frame.INDOOR,
            mode="walking",
        )
        log_event(
            "route_planned",
            venue_id=graph.venue_id,
            from_node_id=from_node_id,
            to_node_id=to_node_id,
            accessible_only=accessible_only,
            accessible=accessible,
            hop_count=len(result.edges),
            total_distance_m=total_distance,
            explored_states=explored[0],
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return route

    def find_route_with_fallback(
        self,
        graph: NavigationGraph,
        from_node_id: str,
        to_node_id: str,
        **kwargs: Any,
    ) -> Route | None:
        route = self.find_route(graph, from_node_id, to_node_id, True, **kwargs)
        if route is not None:
            return route
        standard = self.find_route(graph, from_node_id, to_node_id, False, **kwargs)
        if standard is None:
            return None
        return standard.with_warning(NO_ACCESSIBLE_ROUTE_WARNING)

    async def plan(
        self,
        graph: NavigationGraph,
        from_node_id: str,
        to_node_id: str,
        accessible_only: bool = False,
        *,
        cancel_event: threading.Event | None = None,
        closed_node_ids: Iterable[str] = (),
        closed_edges: Iterable[tuple[str, str]] = (),
    ) -> Route | None:
        """Run the search in a worker thread so position updates never wait on it."""
        cancel_check = cancel_event.is_set if cancel_event is not None else None
        return await asyncio.to_thread(
            self.find_route,
            graph,
            from_node_id,
            to_node_id,
            accessible_only,
            closed_node_ids=tuple(closed_node_ids),
            closed_edges=tuple(closed_edges),
            cancel_check=cancel_check,
        )

    async def plan_with_fallback(
        self,
        graph: NavigationGraph,
        from_node_id: str,
        to_node_id: str,
        *,
        cancel_event: threading.Event | None = None,
        closed_node_ids: Iterable[str] = (),
        closed_edges: Iterable[tuple[str, str]] = (),
    ) -> Route | None:
        """Accessible route if one exists, else the standard route carrying a warning."""
        cancel_check = cancel_event.is_set if cancel_event is not None else None
        return await asyncio.to_thread(
            self.find_route_with_fallback,
            graph,
            from_node_id,
            to_node_id,
            closed_node_ids=tuple(closed_node_ids),
            closed_edges=tuple(closed_edges),
            cancel_check=cancel_check,
        )
