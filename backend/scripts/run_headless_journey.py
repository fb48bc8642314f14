from __future__ import annotations

import argparse
import asyncio
import json
import math
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Sequence

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from venue_nav.navigation_session import NavigationSession  # noqa: E402
from venue_nav.route_model import Route  # noqa: E402
from venue_nav.venue_graph import FileVenueGraphProvider, GraphStore  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Plan an indoor route and replay a position trace through the progress tracker."
    )
    parser.add_argument("--venue", type=Path, required=True, help="Venue graph JSON path.")
    parser.add_argument("--from-node", required=True)
    parser.add_argument("--to-node", required=True)
    parser.add_argument("--accessible-only", action="store_true")
    parser.add_argument(
        "--trace-json",
        type=Path,
        default=None,
        help="JSON list of [x, y] or [x, y, floor] positions; defaults to walking the route.",
    )
    parser.add_argument("--step-m", type=float, default=1.0, help="Spacing of the synthetic walk.")
    return parser


def load_trace(path: Path) -> list[list[float]]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list) or not payload:
        raise ValueError("trace JSON must be a non-empty list of positions")
    trace: list[list[float]] = []
    for item in payload:
        if not isinstance(item, (list, tuple)) or len(item) < 2:
            raise ValueError("each trace position needs at least x and y")
        trace.append([float(v) for v in item[:3]])
    return trace


def synthetic_walk(route: Route, *, step_m: float = 1.0) -> list[list[float]]:
    """Positions every `step_m` meters along the route's step coordinates."""
    points: list[list[float]] = []
    coords = [(s.coordinate, s.floor) for s in route.steps]
    for (a, floor), (b, _) in zip(coords, coords[1:]):
        seg = math.dist(a, b)
        n = max(1, int(seg // max(step_m, 0.1)))
        for i in range(n):
            t = i / n
            pos = [a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t]
            points.append(pos + ([float(floor)] if floor is not None else []))
    last = route.steps[-1]
    points.append([last.coordinate[0], last.coordinate[1]] + ([float(last.floor)] if last.floor is not None else []))
    return points


async def run_journey(
    *,
    venue_path: Path,
    from_node: str,
    to_node: str,
    accessible_only: bool = False,
    trace: list[list[float]] | None = None,
    step_m: float = 1.0,
) -> dict[str, Any]:
    store = GraphStore(FileVenueGraphProvider(venue_path.parent))
    session = NavigationSession(graph_store=store)
    session.load_venue(venue_path.stem)

    route = await session.start_indoor(from_node, to_node, accessible_only)
    if route is None:
        return {"venue_id": venue_path.stem, "route": None, "snapshots": [], "final_state": session.state.value}

    positions = trace if trace is not None else synthetic_walk(route, step_m=step_m)
    snapshots: list[dict[str, Any]] = []
    for pos in positions:
        snap = await session.on_position(pos)
        await session.wait_for_recalculation()
        snapshots.append({k: (v.value if hasattr(v, "value") else v) for k, v in asdict(snap).items()})

    return {
        "venue_id": venue_path.stem,
        "route": {
            "path": list(route.path),
            "total_distance": route.total_distance,
            "total_duration": route.total_duration,
            "accessible": route.accessible,
            "warnings": list(route.warnings),
            "instructions": [s.instruction for s in route.steps],
        },
        "snapshots": snapshots,
        "final_state": session.state.value,
    }


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    trace = load_trace(args.trace_json) if args.trace_json is not None else None
    summary = asyncio.run(
        run_journey(
            venue_path=args.venue,
            from_node=args.from_node,
            to_node=args.to_node,
            accessible_only=args.accessible_only,
            trace=trace,
            step_m=args.step_m,
        )
    )
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
