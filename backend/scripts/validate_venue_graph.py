from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

import numpy as np

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from venue_nav.venue_graph import NavigationGraph, compute_component_index, parse_venue_graph  # noqa: E402


def _load_payload(path: Path) -> dict[str, Any]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise RuntimeError("Venue payload is not a JSON object.")
    return payload


def _edge_geometry(graph: NavigationGraph) -> tuple[np.ndarray, np.ndarray]:
    """Declared distance and straight-line length for every same-floor edge."""
    declared: list[float] = []
    straight: list[float] = []
    for edge in graph.edges:
        a = graph.nodes[edge.from_node_id]
        b = graph.nodes[edge.to_node_id]
        if a.floor != b.floor:
            continue
        declared.append(edge.distance)
        straight.append(float(np.hypot(b.x - a.x, b.y - a.y)))
    return np.asarray(declared, dtype=np.float64), np.asarray(straight, dtype=np.float64)


def validate(
    *,
    venue_path: Path,
    min_nodes: int = 2,
    require_connected: bool = False,
    shortcut_tolerance: float = 0.01,
) -> dict[str, Any]:
    payload = _load_payload(venue_path)
    venue_id = str(payload.get("venue_id") or venue_path.stem)
    graph = parse_venue_graph(payload, venue_id=venue_id)

    if len(graph.nodes) < min_nodes:
        raise RuntimeError(f"Venue node count too low: {len(graph.nodes)} < {min_nodes}")

    _component_by_node, component_sizes = compute_component_index(graph)
    if require_connected and len(component_sizes) > 1:
        raise RuntimeError(f"Venue graph has {len(component_sizes)} disconnected components.")

    distances = np.asarray([e.distance for e in graph.edges], dtype=np.float64)
    accessible = np.asarray([e.accessible for e in graph.edges], dtype=bool)
    declared, straight = _edge_geometry(graph)
    # An edge shorter than the straight line between its endpoints has bad coordinates or distance.
    shortcuts = int(np.count_nonzero(declared < straight * (1.0 - shortcut_tolerance))) if declared.size else 0

    return {
        "venue_path": str(venue_path),
        "venue_id": venue_id,
        "nodes": len(graph.nodes),
        "edges": len(graph.edges),
        "floors": sorted({n.floor for n in graph.nodes.values()}),
        "components": len(component_sizes),
        "largest_component": max(component_sizes.values()) if component_sizes else 0,
        "accessible_edge_ratio": round(float(np.mean(accessible)), 4) if accessible.size else 0.0,
        "edge_length_m": {
            "min": round(float(np.min(distances)), 3) if distances.size else 0.0,
            "p50": round(float(np.percentile(distances, 50)), 3) if distances.size else 0.0,
            "p95": round(float(np.percentile(distances, 95)), 3) if distances.size else 0.0,
            "max": round(float(np.max(distances)), 3) if distances.size else 0.0,
        },
        "shorter_than_straight_line": shortcuts,
        "integrity_passed": True,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Validate a venue navigation graph payload.")
    parser.add_argument("--venue", type=Path, required=True, help="Venue graph JSON path.")
    parser.add_argument("--min-nodes", type=int, default=2)
    parser.add_argument("--require-connected", action="store_true")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    report = validate(
        venue_path=args.venue,
        min_nodes=args.min_nodes,
        require_connected=args.require_connected,
    )
    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
