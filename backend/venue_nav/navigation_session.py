from __future__ import annotations

import asyncio
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .distance_estimator import DistanceEstimator, route_from_calculation
from .geo import LatLon
from .logging_utils import log_event
from .mode_arbiter import DeviceCapabilities, ModeArbiter, ModeRecommendation, VenueContext
from .nav_errors import NavigationError, RouteNotFound, VenueNotFoundError
from .progress_tracker import ProgressSnapshot, ProgressTracker, TrackerState
from .route_model import Frame, Route
from .route_planner import RoutePlanner
from .shortest_path import SearchCancelledError
from .venue_graph import GraphStore, NavigationGraph

Position = Sequence[float] | LatLon


@dataclass(frozen=True)
class Journey:
    frame: Frame
    destination: Any  # indoor: node id; outdoor: LatLon
    mode: str = "walking"
    accessible_only: bool = False


class NavigationSession:
    """One user's navigation engine, wired from injected collaborators.

    Each plan/estimate request takes the next sequence number. Starting a new
    request signals the superseded search to stop, and a result is handed to
    the tracker only while its sequence number is still the latest.
    """

    def __init__(
        self,
        *,
        graph_store: GraphStore | None = None,
        planner: RoutePlanner | None = None,
        estimator: DistanceEstimator | None = None,
        arbiter: ModeArbiter | None = None,
        tracker: ProgressTracker | None = None,
    ) -> None:
        self.graph_store = graph_store or GraphStore()
        self.planner = planner or RoutePlanner()
        self.estimator = estimator or DistanceEstimator()
        self.arbiter = arbiter or ModeArbiter(
            DeviceCapabilities(
                is_physical_device=False,
                has_gyroscope=False,
                has_accelerometer=False,
                has_camera=False,
            )
        )
        self.tracker = tracker or ProgressTracker()

        self._seq = 0
        self._journey: Journey | None = None
        self._cancel_event: threading.Event | None = None
        self._recalc_task: asyncio.Task[None] | None = None

    @property
    def seq(self) -> int:
        return self._seq

    @property
    def journey(self) -> Journey | None:
        return self._journey

    @property
    def snapshot(self) -> ProgressSnapshot:
        return self.tracker.snapshot()

    def _next_request(self) -> tuple[int, threading.Event]:
        self._seq += 1
        if self._cancel_event is not None:
            self._cancel_event.set()
        if self._recalc_task is not None and not self._recalc_task.done():
            self._recalc_task.cancel()
        self._cancel_event = threading.Event()
        return self._seq, self._cancel_event

    def _is_current(self, seq: int, kind: str) -> bool:
        if seq == self._seq:
            return True
        log_event("request_superseded", seq=seq, latest_seq=self._seq, kind=kind)
        return False

    def _require_graph(self) -> NavigationGraph:
        graph = self.graph_store.current
        if graph is None:
            raise VenueNotFoundError("venue_not_found", "no venue graph is loaded")
        return graph

    def load_venue(self, venue_id: str) -> NavigationGraph:
        return self.graph_store.load(venue_id)

    async def start_indoor(
        self,
        from_node_id: str,
        to_node_id: str,
        accessible_only: bool = False,
        *,
        allow_fallback: bool = True,
    ) -> Route | None:
        """Plan and start an indoor journey.

        Returns None when no route exists or when a newer request superseded
        this one before it finished.
        """
        seq, cancel_event = self._next_request()
        graph = self._require_graph()
        try:
            if accessible_only and allow_fallback:
                route = await self.planner.plan_with_fallback(graph, from_node_id, to_node_id, cancel_event=cancel_event)
            else:
                route = await self.planner.plan(graph, from_node_id, to_node_id, accessible_only, cancel_event=cancel_event)
        except SearchCancelledError:
            self._is_current(seq, "plan_indoor")
            return None

        if not self._is_current(seq, "plan_indoor") or route is None:
            return None
        self._journey = Journey(frame=Frame.INDOOR, destination=to_node_id, accessible_only=accessible_only)
        if not self.tracker.load_route(route, destination=to_node_id, mode="walking", seq=seq):
            return None
        return route

    async def start_outdoor(self, origin: LatLon, destination: LatLon, mode: str = "walking") -> Route | None:
        seq, _ = self._next_request()
        calc = await self.estimator.estimate(origin, destination, mode)
        if not self._is_current(seq, "estimate_outdoor"):
            return None
        route = route_from_calculation(calc, origin=origin, destination=destination, mode=mode)
        self._journey = Journey(frame=Frame.OUTDOOR, destination=destination, mode=mode)
        if not self.tracker.load_route(route, destination=destination, mode=mode, seq=seq):
            return None
        return route

    async def on_position(self, position: Position) -> ProgressSnapshot:
        """Feed one position tick. Never waits on a recalculation it schedules."""
        point = position if isinstance(position, LatLon) else (float(position[0]), float(position[1]))
        snap = self.tracker.on_position(point)
        if snap.needs_recalculation and (self._recalc_task is None or self._recalc_task.done()):
            floor = None
            if not isinstance(position, LatLon) and len(position) > 2:
                floor = int(position[2])
            seq, cancel_event = self._next_request()
            self._recalc_task = asyncio.create_task(self._recalculate(seq, point, floor, cancel_event))
        return snap

    async def _recalculate(
        self,
        seq: int,
        position: LatLon | tuple[float, float],
        floor: int | None,
        cancel_event: threading.Event,
    ) -> None:
        journey = self._journey
        if journey is None or not self.tracker.begin_recalculation(seq):
            return
        try:
            route = await self._replan(journey, position, floor, cancel_event)
        except SearchCancelledError:
            self._is_current(seq, "recalculation")
            return
        except NavigationError as exc:
            if self._is_current(seq, "recalculation"):
                self.tracker.fail_recalculation(seq, exc.reason_code)
            return

        if self._is_current(seq, "recalculation"):
            self.tracker.apply_route(route, seq)

    async def _replan(
        self,
        journey: Journey,
        position: LatLon | tuple[float, float],
        floor: int | None,
        cancel_event: threading.Event,
    ) -> Route:
        if journey.frame is Frame.INDOOR:
            graph = self._require_graph()
            x, y = (position.lat, position.lon) if isinstance(position, LatLon) else position
            start = graph.nearest_node(x, y, floor=floor)
            if start is None:
                raise RouteNotFound(
                    reason_code="route_endpoint_unknown",
                    message="no venue node on the current floor",
                    details={"venue_id": graph.venue_id, "floor": floor},
                )
            route = await self.planner.plan(
                graph,
                start.id,
                journey.destination,
                journey.accessible_only,
                cancel_event=cancel_event,
            )
            if route is None:
                raise RouteNotFound(
                    reason_code="no_accessible_route" if journey.accessible_only else "route_not_found",
                    message=f"no route from {start.id!r} to {journey.destination!r}",
                    details={"venue_id": graph.venue_id, "from_node_id": start.id},
                )
            return route

        origin = position if isinstance(position, LatLon) else LatLon(*position)
        calc = await self.estimator.estimate(origin, journey.destination, journey.mode)
        return route_from_calculation(calc, origin=origin, destination=journey.destination, mode=journey.mode)

    def update_context(self, context: VenueContext) -> ModeRecommendation:
        rec, changed = self.arbiter.update_context(context)
        if changed and rec.frame is Frame.INDOOR and context.venue_id:
            current = self.graph_store.current
            if current is None or current.venue_id != context.venue_id:
                try:
                    self.load_venue(context.venue_id)
                except VenueNotFoundError:
                    log_event("venue_autoload_skipped", venue_id=context.venue_id, reason_code="venue_not_found")
        return rec

    async def wait_for_recalculation(self) -> None:
        task = self._recalc_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    def cancel(self) -> bool:
        self._next_request()
        self._journey = None
        cancelled = self.tracker.cancel()
        return cancelled

    @property
    def state(self) -> TrackerState:
        return self.tracker.state
