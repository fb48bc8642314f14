from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True)
class LatLon:
    lat: float
    lon: float


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def planar_distance(ax: float, ay: float, bx: float, by: float) -> float:
    return math.hypot(bx - ax, by - ay)


def point_segment_distance(
    px: float,
    py: float,
    ax: float,
    ay: float,
    bx: float,
    by: float,
) -> float:
    """Distance from P to the closed segment AB (perpendicular when the foot lies on AB)."""
    dx = bx - ax
    dy = by - ay
    seg_len_sq = dx * dx + dy * dy
    if seg_len_sq <= 1e-12:
        return planar_distance(px, py, ax, ay)
    t = ((px - ax) * dx + (py - ay) * dy) / seg_len_sq
    t = max(0.0, min(1.0, t))
    return planar_distance(px, py, ax + t * dx, ay + t * dy)


def segment_fraction(
    px: float,
    py: float,
    ax: float,
    ay: float,
    bx: float,
    by: float,
) -> float:
    """Unclamped position of P's foot along AB: 0 at A, 1 at B. A degenerate segment reads as 1."""
    dx = bx - ax
    dy = by - ay
    seg_len_sq = dx * dx + dy * dy
    if seg_len_sq <= 1e-12:
        return 1.0
    return ((px - ax) * dx + (py - ay) * dy) / seg_len_sq


def project_local_m(lat: float, lon: float, *, ref_lat: float, ref_lon: float) -> tuple[float, float]:
    """Equirectangular projection around a reference point; accurate at route-segment scale."""
    x = math.radians(lon - ref_lon) * EARTH_RADIUS_M * math.cos(math.radians(ref_lat))
    y = math.radians(lat - ref_lat) * EARTH_RADIUS_M
    return x, y


def geo_point_segment_distance_m(point: LatLon, start: LatLon, end: LatLon) -> float:
    ref_lat, ref_lon = start.lat, start.lon
    px, py = project_local_m(point.lat, point.lon, ref_lat=ref_lat, ref_lon=ref_lon)
    bx, by = project_local_m(end.lat, end.lon, ref_lat=ref_lat, ref_lon=ref_lon)
    return point_segment_distance(px, py, 0.0, 0.0, bx, by)


def signed_turn_angle_deg(
    prev_xy: tuple[float, float],
    current_xy: tuple[float, float],
    next_xy: tuple[float, float],
) -> float:
    """Signed angle in (-180, 180] from the incoming to the outgoing vector.

    Positive is counter-clockwise (a left turn in a y-up frame).
    """
    in_x = current_xy[0] - prev_xy[0]
    in_y = current_xy[1] - prev_xy[1]
    out_x = next_xy[0] - current_xy[0]
    out_y = next_xy[1] - current_xy[1]
    if (abs(in_x) <= 1e-12 and abs(in_y) <= 1e-12) or (abs(out_x) <= 1e-12 and abs(out_y) <= 1e-12):
        return 0.0
    cross = in_x * out_y - in_y * out_x
    dot = in_x * out_x + in_y * out_y
    return math.degrees(math.atan2(cross, dot))


def geo_segment_fraction(point: LatLon, start: LatLon, end: LatLon) -> float:
    ref_lat, ref_lon = start.lat, start.lon
    px, py = project_local_m(point.lat, point.lon, ref_lat=ref_lat, ref_lon=ref_lon)
    bx, by = project_local_m(end.lat, end.lon, ref_lat=ref_lat, ref_lon=ref_lon)
    return segment_fraction(px, py, 0.0, 0.0, bx, by)
