from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .distance_estimator import remaining_duration_s
from .geo import (
    LatLon,
    geo_point_segment_distance_m,
    geo_segment_fraction,
    haversine_m,
    planar_distance,
    point_segment_distance,
    segment_fraction,
)
from .logging_utils import log_event
from .nav_errors import normalize_reason_code
from .route_model import Coordinate, Frame, Route
from .settings import settings


class TrackerState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    OFF_ROUTE = "off_route"
    RECALCULATING = "recalculating"
    ARRIVED = "arrived"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TrackerState.ARRIVED, TrackerState.CANCELLED})


@dataclass(frozen=True)
class Tolerances:
    off_route_m: float
    step_m: float
    arrival_m: float


def default_tolerances() -> dict[Frame, Tolerances]:
    return {
        Frame.OUTDOOR: Tolerances(
            off_route_m=settings.off_route_threshold_outdoor_m,
            step_m=settings.step_tolerance_outdoor_m,
            arrival_m=settings.arrival_tolerance_outdoor_m,
        ),
        Frame.INDOOR: Tolerances(
            off_route_m=settings.off_route_threshold_indoor_m,
            step_m=settings.step_tolerance_indoor_m,
            arrival_m=settings.arrival_tolerance_indoor_m,
        ),
    }


@dataclass(frozen=True)
class ProgressSnapshot:
    state: TrackerState
    current_step_index: int
    distance_to_next_turn: float
    distance_to_destination: float
    estimated_time_remaining: float
    is_off_route: bool
    route_progress: float
    rerouting_failed: bool = False
    needs_recalculation: bool = False
    route_version: int = 0
    deviation_m: float | None = None


IDLE_SNAPSHOT = ProgressSnapshot(
    state=TrackerState.IDLE,
    current_step_index=0,
    distance_to_next_turn=0.0,
    distance_to_destination=0.0,
    estimated_time_remaining=0.0,
    is_off_route=False,
    route_progress=0.0,
)

ProgressListener = Callable[[ProgressSnapshot], None]


def _as_coordinate(position: Coordinate | LatLon) -> Coordinate:
    if isinstance(position, LatLon):
        return (position.lat, position.lon)
    return (float(position[0]), float(position[1]))


def _point_distance(frame: Frame, a: Coordinate, b: Coordinate) -> float:
    if frame is Frame.INDOOR:
        return planar_distance(a[0], a[1], b[0], b[1])
    return haversine_m(a[0], a[1], b[0], b[1])


def _segment_distance(frame: Frame, p: Coordinate, a: Coordinate, b: Coordinate) -> float:
    if frame is Frame.INDOOR:
        return point_segment_distance(p[0], p[1], a[0], a[1], b[0], b[1])
    return geo_point_segment_distance_m(LatLon(*p), LatLon(*a), LatLon(*b))


def _segment_fraction(frame: Frame, p: Coordinate, a: Coordinate, b: Coordinate) -> float:
    if frame is Frame.INDOOR:
        return segment_fraction(p[0], p[1], a[0], a[1], b[0], b[1])
    return geo_segment_fraction(LatLon(*p), LatLon(*a), LatLon(*b))


class ProgressTracker:
    """Position-tick state machine over one held Route.

    All state lives behind a single lock so a route replacement is observed
    atomically: readers see either the old route with its index or the new
    route at index 0. Results carrying a sequence number older than the latest
    one seen are ignored.
    """

    def __init__(self, *, tolerances: dict[Frame, Tolerances] | None = None) -> None:
        self.tolerances = tolerances or default_tolerances()
        self._lock = threading.Lock()
        self._listeners: list[ProgressListener] = []

        self._state = TrackerState.IDLE
        self._route: Route | None = None
        self._destination: Any = None
        self._mode = "walking"
        self._index = 0
        self._version = 0
        self._latest_seq = 0
        self._rerouting_failed = False
        self._snapshot = IDLE_SNAPSHOT

    # ----- read side -----

    @property
    def state(self) -> TrackerState:
        with self._lock:
            return self._state

    @property
    def route(self) -> Route | None:
        with self._lock:
            return self._route

    @property
    def destination(self) -> Any:
        with self._lock:
            return self._destination

    @property
    def mode(self) -> str:
        with self._lock:
            return self._mode

    @property
    def latest_seq(self) -> int:
        with self._lock:
            return self._latest_seq

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot

    def estimated_arrival(self, now: datetime | None = None) -> datetime | None:
        with self._lock:
            if self._route is None or self._state in TERMINAL_STATES:
                return None
            eta_s = self._snapshot.estimated_time_remaining
        return (now or datetime.now(UTC)) + timedelta(seconds=eta_s)

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # ----- write side -----

    def _accept_seq(self, seq: int | None) -> bool:
        if seq is None:
            return True
        if seq < self._latest_seq:
            return False
        self._latest_seq = seq
        return True

    def load_route(
        self,
        route: Route,
        *,
        destination: Any = None,
        mode: str | None = None,
        seq: int | None = None,
    ) -> bool:
        """Start tracking `route` from index 0. Returns False for a superseded result."""
        with self._lock:
            if not self._accept_seq(seq):
                stale = True
            else:
                stale = False
                self._route = route
                self._destination = destination if destination is not None else route.destination
                self._mode = mode or route.mode
                self._index = 0
                self._version += 1
                self._rerouting_failed = False
                self._state = TrackerState.ACTIVE
                self._snapshot = self._progress_locked(None)
                snap = self._snapshot
        if stale:
            log_event("request_superseded", seq=seq, latest_seq=self.latest_seq, kind="load_route")
            return False
        log_event(
            "tracking_started",
            frame=route.frame.value,
            steps=len(route.steps),
            total_distance_m=route.total_distance,
            route_version=snap.route_version,
        )
        self._notify(snap)
        return True

    def on_position(self, position: Coordinate | LatLon) -> ProgressSnapshot:
        pos = _as_coordinate(position)
        entered_off_route = False
        arrived = False
        with self._lock:
            route = self._route
            if route is None or self._state in TERMINAL_STATES or self._state is TrackerState.IDLE:
                return self._snapshot

            tol = self.tolerances[route.frame]
            if self._state is TrackerState.ACTIVE:
                last = len(route.steps) - 1
                while self._index < last and self._step_passed_locked(pos, tol):
                    self._index += 1

                if self._index == last and _point_distance(route.frame, pos, route.steps[last].coordinate) <= tol.arrival_m:
                    self._state = TrackerState.ARRIVED
                    arrived = True
                else:
                    deviation = self._deviation_locked(pos)
                    if deviation > tol.off_route_m:
                        self._state = TrackerState.OFF_ROUTE
                        entered_off_route = True

            self._snapshot = self._progress_locked(pos)
            snap = self._snapshot

        if entered_off_route:
            log_event(
                "off_route",
                frame=route.frame.value,
                deviation_m=snap.deviation_m,
                threshold_m=tol.off_route_m,
                step_index=snap.current_step_index,
                reason_code="tracking_desync",
            )
        if arrived:
            log_event("route_arrived", frame=route.frame.value, route_version=snap.route_version)
        self._notify(snap)
        return snap

    def begin_recalculation(self, seq: int) -> bool:
        with self._lock:
            if self._state is not TrackerState.OFF_ROUTE or not self._accept_seq(seq):
                return False
            self._state = TrackerState.RECALCULATING
            self._snapshot = self._progress_locked(None)
            snap = self._snapshot
        self._notify(snap)
        return True

    def apply_route(self, route: Route, seq: int) -> bool:
        """Atomically swap in a recalculated route; the index restarts at 0."""
        with self._lock:
            if self._state not in (TrackerState.RECALCULATING, TrackerState.OFF_ROUTE) or not self._accept_seq(seq):
                stale = True
            else:
                stale = False
                self._route = route
                self._index = 0
                self._version += 1
                self._rerouting_failed = False
                self._state = TrackerState.ACTIVE
                self._snapshot = self._progress_locked(None)
                snap = self._snapshot
        if stale:
            log_event("request_superseded", seq=seq, kind="recalculation")
            return False
        log_event(
            "recalculation_applied",
            seq=seq,
            frame=route.frame.value,
            total_distance_m=route.total_distance,
            route_version=snap.route_version,
        )
        self._notify(snap)
        return True

    def fail_recalculation(self, seq: int, reason: str = "recalculation_failed") -> bool:
        """Keep the last route on screen, flagged off-route with rerouting failed."""
        with self._lock:
            if self._state not in (TrackerState.RECALCULATING, TrackerState.OFF_ROUTE) or not self._accept_seq(seq):
                return False
            self._state = TrackerState.OFF_ROUTE
            self._rerouting_failed = True
            self._snapshot = self._progress_locked(None)
            snap = self._snapshot
        log_event("recalculation_failed", seq=seq, reason_code="recalculation_failed", reason=normalize_reason_code(reason))
        self._notify(snap)
        return True

    def cancel(self) -> bool:
        with self._lock:
            if self._state in TERMINAL_STATES:
                return False
            self._state = TrackerState.CANCELLED
            self._route = None
            self._destination = None
            self._snapshot = ProgressSnapshot(
                state=TrackerState.CANCELLED,
                current_step_index=self._index,
                distance_to_next_turn=0.0,
                distance_to_destination=0.0,
                estimated_time_remaining=0.0,
                is_off_route=False,
                route_progress=self._snapshot.route_progress,
                route_version=self._version,
            )
            snap = self._snapshot
        log_event("tracking_cancelled", route_version=snap.route_version)
        self._notify(snap)
        return True

    # ----- internals (lock held) -----

    def _step_passed_locked(self, pos: Coordinate, tol: Tolerances) -> bool:
        """True once the walker has reached or gone beyond the step at the current index.

        Either the step is within the step radius, or the position lies on the
        outgoing leg within the off-route threshold, having run past the end of
        the incoming leg or sitting closer to the outgoing leg than to it.
        """
        route = self._route
        assert route is not None
        coords = route.coordinates
        k = self._index
        if _point_distance(route.frame, pos, coords[k]) <= tol.step_m:
            return True
        out_d = _segment_distance(route.frame, pos, coords[k], coords[k + 1])
        if out_d > tol.off_route_m or _segment_fraction(route.frame, pos, coords[k], coords[k + 1]) <= 0.0:
            return False
        if k == 0:
            return True
        if _segment_fraction(route.frame, pos, coords[k - 1], coords[k]) >= 1.0:
            return True
        return out_d < _segment_distance(route.frame, pos, coords[k - 1], coords[k])

    def _deviation_locked(self, pos: Coordinate) -> float:
        route = self._route
        assert route is not None
        coords = route.coordinates
        if len(coords) == 1:
            return _point_distance(route.frame, pos, coords[0])
        # Current segment plus the following one.
        first = max(self._index - 1, 0)
        candidates = [first]
        if self._index + 1 < len(coords) and self._index != first:
            candidates.append(self._index)
        return min(_segment_distance(route.frame, pos, coords[i], coords[i + 1]) for i in candidates)

    def _progress_locked(self, pos: Coordinate | None) -> ProgressSnapshot:
        route = self._route
        assert route is not None
        state = self._state
        off_route = state in (TrackerState.OFF_ROUTE, TrackerState.RECALCULATING)
        deviation = self._deviation_locked(pos) if pos is not None else None

        if state is TrackerState.ARRIVED:
            to_next = 0.0
            remaining = 0.0
        else:
            step = route.steps[self._index]
            if pos is None:
                # No fix on this route yet; measure from the previous step's anchor.
                prev_start = route.steps[self._index - 1].distance_from_start if self._index > 0 else 0.0
                to_next = max(0.0, step.distance_from_start - prev_start)
            else:
                to_next = _point_distance(route.frame, pos, step.coordinate)
            remaining = to_next + max(0.0, route.total_distance - step.distance_from_start)

        if route.total_distance > 0:
            progress = min(1.0, max(0.0, 1.0 - remaining / route.total_distance))
        else:
            progress = 1.0 if state is TrackerState.ARRIVED else 0.0

        return ProgressSnapshot(
            state=state,
            current_step_index=self._index,
            distance_to_next_turn=round(to_next, 3),
            distance_to_destination=round(remaining, 3),
            estimated_time_remaining=round(remaining_duration_s(remaining, route.frame, self._mode), 3),
            is_off_route=off_route,
            route_progress=round(progress, 4),
            rerouting_failed=self._rerouting_failed,
            needs_recalculation=state is TrackerState.OFF_ROUTE,
            route_version=self._version,
            deviation_m=round(deviation, 3) if deviation is not None else None,
        )

    def _notify(self, snap: ProgressSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(snap)
