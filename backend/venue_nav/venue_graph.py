from __future__ import annotations

import json
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Protocol, runtime_checkable

from .logging_utils import log_event
from .nav_errors import GraphIntegrityError, VenueNotFoundError
from .settings import settings


class NodeKind(str, Enum):
    ENTRANCE = "entrance"
    POI = "poi"
    JUNCTION = "junction"
    EXIT = "exit"


EDGE_KINDS: frozenset[str] = frozenset({"walkway", "elevator", "escalator", "stairs"})


@dataclass(frozen=True)
class Node:
    id: str
    x: float
    y: float
    floor: int
    kind: NodeKind
    name: str | None = None


@dataclass(frozen=True)
class Edge:
    from_node_id: str
    to_node_id: str
    distance: float
    accessible: bool
    kind: str = "walkway"


@dataclass(frozen=True)
class NavigationGraph:
    """Immutable venue graph. Build with `build_navigation_graph`, never mutate."""

    venue_id: str
    nodes: dict[str, Node]
    edges: tuple[Edge, ...]
    adjacency: dict[str, tuple[Edge, ...]] = field(repr=False)
    edge_index: dict[tuple[str, str], Edge] = field(repr=False)

    def node(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def edge(self, from_node_id: str, to_node_id: str) -> Edge | None:
        return self.edge_index.get((from_node_id, to_node_id))

    def neighbors(self, node_id: str, accessible_only: bool = False) -> tuple[tuple[Edge, Node], ...]:
        out: list[tuple[Edge, Node]] = []
        for edge in self.adjacency.get(node_id, ()):
            if accessible_only and not edge.accessible:
                continue
            out.append((edge, self.nodes[edge.to_node_id]))
        return tuple(out)

    def nearest_node(self, x: float, y: float, *, floor: int | None = None) -> Node | None:
        best: Node | None = None
        best_d = math.inf
        for node in self.nodes.values():
            if floor is not None and node.floor != floor:
                continue
            d = math.hypot(node.x - x, node.y - y)
            # Ties go to the lowest id.
            if d < best_d or (d == best_d and best is not None and node.id < best.id):
                best = node
                best_d = d
        return best

    def with_closures(
        self,
        *,
        closed_node_ids: Iterable[str] = (),
        closed_edges: Iterable[tuple[str, str]] = (),
    ) -> NavigationGraph:
        """Return a copy with temporarily closed nodes/edges removed."""
        closed_nodes = {str(n) for n in closed_node_ids}
        closed_pairs = {(str(a), str(b)) for a, b in closed_edges}
        if not closed_nodes and not closed_pairs:
            return self
        nodes = {nid: node for nid, node in self.nodes.items() if nid not in closed_nodes}
        edges = [
            e
            for e in self.edges
            if e.from_node_id in nodes
            and e.to_node_id in nodes
            and (e.from_node_id, e.to_node_id) not in closed_pairs
        ]
        return build_navigation_graph(venue_id=self.venue_id, nodes=list(nodes.values()), edges=edges)


def build_navigation_graph(*, venue_id: str, nodes: list[Node], edges: list[Edge]) -> NavigationGraph:
    node_map: dict[str, Node] = {}
    for node in nodes:
        if node.id in node_map:
            raise GraphIntegrityError(
                reason_code="graph_duplicate_node",
                message=f"duplicate node id {node.id!r} in venue {venue_id!r}",
                details={"venue_id": venue_id, "node_id": node.id},
            )
        node_map[node.id] = node

    adjacency_mut: dict[str, list[Edge]] = {}
    edge_index: dict[tuple[str, str], Edge] = {}
    kept: list[Edge] = []
    for edge in edges:
        missing = [nid for nid in (edge.from_node_id, edge.to_node_id) if nid not in node_map]
        if missing:
            raise GraphIntegrityError(
                reason_code="graph_dangling_edge",
                message=(
                    f"edge {edge.from_node_id!r}->{edge.to_node_id!r} references "
                    f"unknown node(s) {', '.join(repr(m) for m in missing)}"
                ),
                details={"venue_id": venue_id, "missing": missing},
            )
        if not (edge.distance > 0.0) or math.isinf(edge.distance):
            raise GraphIntegrityError(
                reason_code="graph_invalid_edge_distance",
                message=f"edge {edge.from_node_id!r}->{edge.to_node_id!r} has non-positive distance",
                details={"venue_id": venue_id, "distance": edge.distance},
            )
        key = (edge.from_node_id, edge.to_node_id)
        previous = edge_index.get(key)
        # Parallel edges stay searchable; the index keeps the cheapest.
        if previous is None or edge.distance < previous.distance:
            edge_index[key] = edge
        adjacency_mut.setdefault(edge.from_node_id, []).append(edge)
        kept.append(edge)

    adjacency = {
        nid: tuple(sorted(out, key=lambda e: (e.to_node_id, e.distance)))
        for nid, out in adjacency_mut.items()
    }
    return NavigationGraph(
        venue_id=venue_id,
        nodes=node_map,
        edges=tuple(kept),
        adjacency=adjacency,
        edge_index=edge_index,
    )


def _parse_float(raw: object, *, field_name: str, venue_id: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str, Decimal)):
        raise GraphIntegrityError(
            reason_code="venue_payload_invalid",
            message=f"field {field_name!r} must be numeric",
            details={"venue_id": venue_id, "value": repr(raw)},
        )
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise GraphIntegrityError(
            reason_code="venue_payload_invalid",
            message=f"field {field_name!r} must be numeric",
            details={"venue_id": venue_id, "value": repr(raw)},
        ) from e
    if math.isnan(value):
        raise GraphIntegrityError(
            reason_code="venue_payload_invalid",
            message=f"field {field_name!r} is NaN",
            details={"venue_id": venue_id},
        )
    return value


def _parse_flag(raw: object, *, field_name: str, venue_id: str) -> bool:
    if not isinstance(raw, bool):
        raise GraphIntegrityError(
            reason_code="venue_payload_invalid",
            message=f"field {field_name!r} must be true or false",
            details={"venue_id": venue_id, "value": repr(raw)},
        )
    return raw


def _parse_node(raw: object, *, venue_id: str) -> Node:
    if not isinstance(raw, dict) or raw.get("id") is None:
        raise GraphIntegrityError(
            reason_code="venue_payload_invalid",
            message="node entries must be objects with an 'id'",
            details={"venue_id": venue_id},
        )
    node_id = str(raw["id"])
    kind_raw = str(raw.get("kind", raw.get("type", "junction"))).strip().lower()
    try:
        kind = NodeKind(kind_raw)
    except ValueError as e:
        raise GraphIntegrityError(
            reason_code="graph_unknown_node_kind",
            message=f"node {node_id!r} has unknown kind {kind_raw!r}",
            details={"venue_id": venue_id, "node_id": node_id},
        ) from e
    name = raw.get("name")
    return Node(
        id=node_id,
        x=_parse_float(raw.get("x"), field_name="x", venue_id=venue_id),
        y=_parse_float(raw.get("y"), field_name="y", venue_id=venue_id),
        floor=int(_parse_float(raw.get("floor", 0), field_name="floor", venue_id=venue_id)),
        kind=kind,
        name=str(name) if name is not None else None,
    )


def _parse_edges(raw: object, *, venue_id: str) -> list[Edge]:
    if not isinstance(raw, dict):
        raise GraphIntegrityError(
            reason_code="venue_payload_invalid",
            message="edge entries must be objects",
            details={"venue_id": venue_id},
        )
    u = raw.get("from", raw.get("from_node_id"))
    v = raw.get("to", raw.get("to_node_id"))
    if u is None or v is None:
        raise GraphIntegrityError(
            reason_code="venue_payload_invalid",
            message="edge entries need 'from' and 'to'",
            details={"venue_id": venue_id},
        )
    distance = _parse_float(raw.get("distance"), field_name="distance", venue_id=venue_id)
    accessible = _parse_flag(raw.get("accessible", False), field_name="accessible", venue_id=venue_id)
    kind = str(raw.get("kind", "walkway")).strip().lower() or "walkway"
    if kind not in EDGE_KINDS:
        kind = "walkway"
    forward = Edge(from_node_id=str(u), to_node_id=str(v), distance=distance, accessible=accessible, kind=kind)
    if not _parse_flag(raw.get("bidirectional", False), field_name="bidirectional", venue_id=venue_id):
        return [forward]
    backward = Edge(from_node_id=str(v), to_node_id=str(u), distance=distance, accessible=accessible, kind=kind)
    return [forward, backward]


def parse_venue_graph(payload: dict[str, Any], *, venue_id: str) -> NavigationGraph:
    raw_nodes = payload.get("nodes")
    raw_edges = payload.get("edges", [])
    if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
        raise GraphIntegrityError(
            reason_code="venue_payload_invalid",
            message="venue payload must contain 'nodes' and 'edges' lists",
            details={"venue_id": venue_id},
        )
    nodes = [_parse_node(item, venue_id=venue_id) for item in raw_nodes]
    edges: list[Edge] = []
    for item in raw_edges:
        edges.extend(_parse_edges(item, venue_id=venue_id))
    return build_navigation_graph(venue_id=venue_id, nodes=nodes, edges=edges)


@runtime_checkable
class VenueGraphProvider(Protocol):
    def fetch(self, venue_id: str) -> dict[str, Any] | None:
        """Return the raw venue payload, or None when the venue is unknown."""


class FileVenueGraphProvider:
    def __init__(self, base_dir: str | Path | None = None) -> None:
        self.base_dir = Path(base_dir if base_dir is not None else settings.venue_graph_dir)

    def _path_for(self, venue_id: str) -> Path | None:
        safe = str(venue_id).strip()
        if not safe or "/" in safe or "\\" in safe or safe.startswith("."):
            return None
        return self.base_dir / f"{safe}.json"

    def fetch(self, venue_id: str) -> dict[str, Any] | None:
        path = self._path_for(venue_id)
        if path is None or not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise GraphIntegrityError(
                reason_code="venue_payload_invalid",
                message=f"venue payload for {venue_id!r} is not valid JSON",
                details={"venue_id": venue_id, "path": str(path)},
            ) from e
        if not isinstance(raw, dict):
            raise GraphIntegrityError(
                reason_code="venue_payload_invalid",
                message=f"venue payload for {venue_id!r} is not a JSON object",
                details={"venue_id": venue_id, "path": str(path)},
            )
        return raw


class GraphStore:
    """Holds the graph of the currently loaded venue for one navigation session."""

    def __init__(self, provider: VenueGraphProvider | None = None) -> None:
        self._provider = provider if provider is not None else FileVenueGraphProvider()
        self._lock = threading.Lock()
        self._current: NavigationGraph | None = None

    @property
    def current(self) -> NavigationGraph | None:
        with self._lock:
            return self._current

    def load(self, venue_id: str) -> NavigationGraph:
        payload = self._provider.fetch(venue_id)
        if payload is None:
            log_event("venue_not_found", venue_id=venue_id)
            raise VenueNotFoundError(
                reason_code="venue_not_found",
                message=f"venue {venue_id!r} not found",
                details={"venue_id": venue_id},
            )
        try:
            graph = parse_venue_graph(payload, venue_id=venue_id)
        except GraphIntegrityError as e:
            log_event("venue_integrity_error", venue_id=venue_id, reason_code=e.reason_code, detail=e.message)
            raise
        with self._lock:
            self._current = graph
        log_event(
            "venue_loaded",
            venue_id=venue_id,
            node_count=len(graph.nodes),
            edge_count=len(graph.edges),
        )
        return graph

    def unload(self) -> None:
        with self._lock:
            self._current = None


def compute_component_index(graph: NavigationGraph) -> tuple[dict[str, int], dict[int, int]]:
    """Weakly connected components: (component_by_node, component_sizes)."""
    undirected: dict[str, set[str]] = {nid: set() for nid in graph.nodes}
    for edge in graph.edges:
        undirected[edge.from_node_id].add(edge.to_node_id)
        undirected[edge.to_node_id].add(edge.from_node_id)
    component_by_node: dict[str, int] = {}
    component_sizes: dict[int, int] = {}
    component_idx = 0
    for node_id in sorted(graph.nodes):
        if node_id in component_by_node:
            continue
        component_idx += 1
        q: deque[str] = deque([node_id])
        size = 0
        while q:
            current = q.popleft()
            if current in component_by_node:
                continue
            component_by_node[current] = component_idx
            size += 1
            for nxt in undirected.get(current, ()):
                if nxt not in component_by_node:
                    q.append(nxt)
        component_sizes[component_idx] = size
    return component_by_node, component_sizes
