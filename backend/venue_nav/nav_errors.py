from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "venue_not_found",
        "venue_payload_invalid",
        "graph_duplicate_node",
        "graph_dangling_edge",
        "graph_invalid_edge_distance",
        "graph_unknown_node_kind",
        "route_not_found",
        "route_endpoint_unknown",
        "no_accessible_route",
        "estimation_failed",
        "directions_unavailable",
        "search_cancelled",
        "tracking_desync",
        "recalculation_failed",
        "navigation_error",
    }
)


@dataclass
class NavigationError(Exception):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class GraphIntegrityError(NavigationError):
    """Venue payload cannot form a consistent graph; fatal to the venue load."""


class VenueNotFoundError(NavigationError):
    pass


class RouteNotFound(NavigationError):
    """No path exists (or none satisfies accessibility). Expected, never fatal."""


def normalize_reason_code(reason_code: str, *, default: str = "navigation_error") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
