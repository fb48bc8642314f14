from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Any, Literal, Protocol

from .directions_client import DirectionsError, matrix_element, parse_directions_route
from .distance_cache import DistanceCacheStore
from .geo import LatLon, haversine_m
from .logging_utils import log_event
from .route_model import Frame, Maneuver, Route, Step
from .settings import settings

MODE_SPEED_MPS: dict[str, float] = {
    "walking": 1.4,
    "transit": 8.0,
    "driving": 15.0,
}

INDOOR_WALK_SPEED_MPS = 1.0
INDOOR_OVERHEAD_FACTOR = 1.3  # turns, doors, crowds

LOCAL_ESTIMATE_WARNING = "directions service unavailable - showing straight-line estimate"

TrafficLevel = Literal["light", "moderate", "heavy"]
EstimateSource = Literal["service", "cache", "local"]


@dataclass(frozen=True)
class RouteCalculation:
    distance: float
    duration: float
    traffic: TrafficLevel
    polyline: str = ""
    steps: tuple[dict[str, Any], ...] = ()
    source: EstimateSource = "service"


class DirectionsService(Protocol):
    async def fetch_distance_matrix(
        self,
        *,
        origins: list[LatLon],
        destinations: list[LatLon],
        mode: str,
        traffic_model: str | None = None,
        departure_time: Any = None,
    ) -> dict[str, Any]: ...

    async def fetch_directions(
        self,
        *,
        origin: LatLon,
        destination: LatLon,
        mode: str,
        traffic_model: str | None = None,
        departure_time: Any = None,
    ) -> dict[str, Any]: ...


def estimate_indoor_walk(distance_m: float) -> float:
    """Seconds to walk `distance_m` indoors at 1 m/s with 30% overhead."""
    return max(0.0, float(distance_m)) / INDOOR_WALK_SPEED_MPS * INDOOR_OVERHEAD_FACTOR


def mode_speed_mps(mode: str) -> float:
    try:
        return MODE_SPEED_MPS[mode]
    except KeyError as e:
        raise ValueError(f"unsupported travel mode: {mode}") from e


def classify_traffic(free_flow_s: float, traffic_s: float | None) -> TrafficLevel:
    if traffic_s is None or free_flow_s <= 0:
        return "light"
    ratio = float(traffic_s) / float(free_flow_s)
    if ratio < 1.2:
        return "light"
    if ratio < 1.5:
        return "moderate"
    return "heavy"


def local_estimate(origin: LatLon, destination: LatLon, mode: str) -> RouteCalculation:
    distance = haversine_m(origin.lat, origin.lon, destination.lat, destination.lon)
    return RouteCalculation(
        distance=round(distance, 3),
        duration=round(distance / mode_speed_mps(mode), 3),
        traffic="light",
        source="local",
    )


def remaining_duration_s(distance_m: float, frame: Frame, mode: str = "walking") -> float:
    if frame is Frame.INDOOR:
        return estimate_indoor_walk(distance_m)
    return max(0.0, float(distance_m)) / mode_speed_mps(mode)


def _maneuver_from_service(raw: str) -> Maneuver:
    text = str(raw or "").lower()
    if "left" in text:
        return Maneuver.LEFT
    if "right" in text:
        return Maneuver.RIGHT
    return Maneuver.STRAIGHT


def route_from_calculation(
    calc: RouteCalculation,
    *,
    origin: LatLon,
    destination: LatLon,
    mode: str,
) -> Route:
    """Build an outdoor Route whose steps sit on the maneuver points of the estimate.

    Each service step's maneuver happens where the previous step ends, so step k
    is anchored at the end location of service step k-1.
    """
    service_steps = list(calc.steps)
    first_instruction = (
        service_steps[0]["instruction"] if service_steps and service_steps[0].get("instruction") else "Head towards your destination"
    )
    steps: list[Step] = [
        Step(
            instruction=first_instruction,
            distance_from_start=0.0,
            maneuver=Maneuver.START,
            coordinate=(origin.lat, origin.lon),
        )
    ]
    travelled = 0.0
    for prev, raw in zip(service_steps, service_steps[1:]):
        travelled += float(prev["distance"])
        steps.append(
            Step(
                instruction=str(raw.get("instruction") or "Continue"),
                distance_from_start=round(travelled, 3),
                maneuver=_maneuver_from_service(raw.get("maneuver", "")),
                coordinate=(float(prev["lat"]), float(prev["lon"])),
            )
        )
    steps.append(
        Step(
            instruction="Arrive at your destination",
            distance_from_start=round(float(calc.distance), 3),
            maneuver=Maneuver.ARRIVE,
            coordinate=(destination.lat, destination.lon),
        )
    )
    warnings = (LOCAL_ESTIMATE_WARNING,) if calc.source == "local" else ()
    return Route(
        path=tuple(step.coordinate for step in steps),
        total_distance=float(calc.distance),
        total_duration=float(calc.duration),
        accessible=True,
        steps=tuple(steps),
        frame=Frame.OUTDOOR,
        mode=mode,  # type: ignore[arg-type]
        warnings=warnings,
    )


class DistanceEstimator:
    """Outdoor distance/ETA estimates: cache first, then the service, then haversine.

    `estimate` and `batch_estimate` never raise for service problems. Local
    fallback values are not cached, so the next call retries the service.
    """

    def __init__(
        self,
        *,
        client: DirectionsService | None = None,
        cache: DistanceCacheStore[RouteCalculation] | None = None,
        coord_precision: int | None = None,
        traffic_model: str | None = None,
        chunk_size: int | None = None,
        concurrency: int | None = None,
    ) -> None:
        self.client = client
        self.cache: DistanceCacheStore[RouteCalculation] = cache or DistanceCacheStore(
            ttl_s=settings.distance_cache_ttl_s,
            max_entries=settings.distance_cache_max_entries,
        )
        self.coord_precision = int(
            settings.distance_cache_coord_precision if coord_precision is None else coord_precision
        )
        self.traffic_model = traffic_model or settings.directions_traffic_model
        self.chunk_size = max(1, min(25, int(chunk_size or settings.batch_chunk_size)))
        self.concurrency = max(1, int(concurrency or settings.batch_concurrency))

    def cache_key(self, origin: LatLon, destination: LatLon, mode: str) -> str:
        p = self.coord_precision
        return (
            f"{round(origin.lat, p):.{p}f},{round(origin.lon, p):.{p}f}"
            f"|{round(destination.lat, p):.{p}f},{round(destination.lon, p):.{p}f}|{mode}"
        )

    def clear_cache(self) -> int:
        cleared = self.cache.clear()
        log_event("distance_cache_cleared", entries=cleared)
        return cleared

    def cache_stats(self) -> dict[str, int]:
        return self.cache.snapshot()

    async def estimate(self, origin: LatLon, destination: LatLon, mode: str = "walking") -> RouteCalculation:
        mode_speed_mps(mode)
        key = self.cache_key(origin, destination, mode)
        cached = self.cache.get(key)
        if cached is not None:
            return replace(cached, source="cache")

        if self.client is None:
            return local_estimate(origin, destination, mode)

        t0 = time.perf_counter()
        try:
            raw_route = await self.client.fetch_directions(
                origin=origin,
                destination=destination,
                mode=mode,
                traffic_model=self.traffic_model,
            )
            leg = parse_directions_route(raw_route)
        except Exception as exc:
            log_event(
                "estimate_fallback",
                mode=mode,
                reason_code="estimation_failed",
                error=f"{type(exc).__name__}: {exc}",
                duration_ms=round((time.perf_counter() - t0) * 1000, 2),
            )
            return local_estimate(origin, destination, mode)

        calc = RouteCalculation(
            distance=leg.distance_m,
            duration=leg.traffic_duration_s if leg.traffic_duration_s is not None else leg.duration_s,
            traffic=classify_traffic(leg.duration_s, leg.traffic_duration_s),
            polyline=leg.polyline,
            steps=leg.steps,
            source="service",
        )
        self.cache.put(key, calc)
        log_event(
            "estimate_resolved",
            mode=mode,
            distance_m=calc.distance,
            traffic=calc.traffic,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return calc

    async def _estimate_chunk(
        self,
        origin: LatLon,
        destinations: list[LatLon],
        mode: str,
    ) -> list[RouteCalculation]:
        if self.client is None:
            return [local_estimate(origin, dest, mode) for dest in destinations]
        try:
            data = await self.client.fetch_distance_matrix(
                origins=[origin],
                destinations=destinations,
                mode=mode,
                traffic_model=self.traffic_model,
            )
        except Exception as exc:
            log_event(
                "estimate_fallback",
                mode=mode,
                reason_code="estimation_failed",
                chunk_size=len(destinations),
                error=f"{type(exc).__name__}: {exc}",
            )
            return [local_estimate(origin, dest, mode) for dest in destinations]

        out: list[RouteCalculation] = []
        for col, dest in enumerate(destinations):
            try:
                distance_m, duration_s, traffic_s = matrix_element(data, 0, col)
            except DirectionsError as exc:
                log_event("estimate_fallback", mode=mode, reason_code="estimation_failed", element=col, error=str(exc))
                out.append(local_estimate(origin, dest, mode))
                continue
            calc = RouteCalculation(
                distance=distance_m,
                duration=traffic_s if traffic_s is not None else duration_s,
                traffic=classify_traffic(duration_s, traffic_s),
                source="service",
            )
            self.cache.put(self.cache_key(origin, dest, mode), calc)
            out.append(calc)
        return out

    async def batch_estimate(
        self,
        origin: LatLon,
        destinations: Sequence[tuple[str, LatLon]],
        mode: str = "walking",
    ) -> list[tuple[str, RouteCalculation]]:
        """Estimate many destinations; output order always matches input order."""
        mode_speed_mps(mode)
        items = list(destinations)
        results: list[RouteCalculation | None] = [None] * len(items)
        pending: list[int] = []
        for idx, (_, point) in enumerate(items):
            cached = self.cache.get(self.cache_key(origin, point, mode))
            if cached is not None:
                results[idx] = replace(cached, source="cache")
            else:
                pending.append(idx)

        chunks = [pending[i : i + self.chunk_size] for i in range(0, len(pending), self.chunk_size)]
        sem = asyncio.Semaphore(self.concurrency)

        async def _run(chunk: list[int]) -> None:
            async with sem:
                calcs = await self._estimate_chunk(origin, [items[i][1] for i in chunk], mode)
            for idx, calc in zip(chunk, calcs):
                results[idx] = calc

        await asyncio.gather(*(_run(chunk) for chunk in chunks))
        log_event(
            "batch_estimated",
            mode=mode,
            destinations=len(items),
            cache_hits=len(items) - len(pending),
            chunks=len(chunks),
        )
        return [(dest_id, results[idx]) for idx, (dest_id, _) in enumerate(items)]  # type: ignore[misc]
