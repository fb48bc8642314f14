from __future__ import annotations

import heapq
from collections.abc import Callable
from dataclasses import dataclass
from math import inf

from .venue_graph import Edge, NavigationGraph


@dataclass(frozen=True)
class PathResult:
    nodes: tuple[str, ...]
    edges: tuple[Edge, ...]
    cost: float


class PathNotFoundError(ValueError):
    pass


class SearchCancelledError(RuntimeError):
    pass


EdgeFilter = Callable[[Edge], bool]


def dijkstra_shortest_path(
    graph: NavigationGraph,
    *,
    start: str,
    goal: str,
    accessible_only: bool = False,
    edge_filter: EdgeFilter | None = None,
    explored_counter: list[int] | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> PathResult:
    """Single-source shortest path over edge distance.

    The frontier is a binary heap keyed by (tentative cost, node id), so equal-cost
    frontiers always settle the lowest node id first and the result is stable
    across calls.
    """
    if start not in graph.nodes or goal not in graph.nodes:
        raise PathNotFoundError("start/goal unknown")
    dist: dict[str, float] = {start: 0.0}
    prev: dict[str, Edge] = {}
    settled: set[str] = set()
    heap: list[tuple[float, str]] = [(0.0, start)]
    found = False
    while heap:
        if cancel_check is not None and cancel_check():
            raise SearchCancelledError("search cancelled")
        cost, node = heapq.heappop(heap)
        if node in settled:
            continue
        settled.add(node)
        if explored_counter is not None:
            explored_counter[0] += 1
        if node == goal:
            found = True
            break
        for edge in graph.adjacency.get(node, ()):
            if accessible_only and not edge.accessible:
                continue
            if edge_filter is not None and not edge_filter(edge):
                continue
            nxt = edge.to_node_id
            if nxt in settled:
                continue
            new_cost = cost + float(edge.distance)
            if new_cost < dist.get(nxt, inf):
                dist[nxt] = new_cost
                prev[nxt] = edge
                heapq.heappush(heap, (new_cost, nxt))
    if not found:
        raise PathNotFoundError("no path")

    edges: list[Edge] = []
    current = goal
    while current != start:
        edge = prev.get(current)
        if edge is None:
            # Predecessor chain broken; treat as no path rather than return a partial route.
            raise PathNotFoundError("path reconstruction failed")
        edges.append(edge)
        current = edge.from_node_id
        if len(edges) > len(graph.nodes):
            raise PathNotFoundError("path reconstruction cycle")
    edges.reverse()
    nodes = (start, *(e.to_node_id for e in edges))
    return PathResult(nodes=nodes, edges=tuple(edges), cost=dist[goal])


def normalize_no_path_reason(message: str) -> str:
    lowered = str(message or "").strip().lower()
    if "unknown" in lowered:
        return "route_endpoint_unknown"
    if "cancelled" in lowered:
        return "search_cancelled"
    return "route_not_found"
