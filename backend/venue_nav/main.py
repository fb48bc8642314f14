from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .directions_client import DirectionsClient
from .distance_cache import DistanceCacheStore
from .distance_estimator import DistanceEstimator, estimate_indoor_walk
from .geo import LatLon
from .logging_utils import log_event
from .metrics_store import count_outcome, metrics_snapshot, record_request
from .mode_arbiter import DeviceCapabilities, PerformanceTier, VenueContext, classify_performance_tier, recommend
from .models import (
    BatchEstimateItem,
    BatchEstimateRequest,
    BatchEstimateResponse,
    CacheClearResponse,
    EstimateRequest,
    IndoorEstimateRequest,
    IndoorEstimateResponse,
    IndoorRouteRequest,
    IndoorRouteResponse,
    ModeRecommendRequest,
    ModeRecommendResponse,
    RouteCalculationOut,
    RouteOut,
)
from .nav_errors import GraphIntegrityError, NavigationError, VenueNotFoundError, normalize_reason_code
from .route_planner import RoutePlanner
from .settings import settings
from .venue_graph import GraphStore, NavigationGraph


@asynccontextmanager
async def lifespan(app: FastAPI):
    client: DirectionsClient | None = None
    if settings.directions_api_key:
        client = DirectionsClient(
            base_url=settings.directions_base_url,
            api_key=settings.directions_api_key,
            timeout_s=settings.directions_timeout_s,
            max_retries=settings.directions_max_retries,
        )
    else:
        log_event("directions_disabled", reason="DIRECTIONS_API_KEY not set; using local estimates")
    app.state.estimator = DistanceEstimator(
        client=client,
        cache=DistanceCacheStore(
            ttl_s=settings.distance_cache_ttl_s,
            max_entries=settings.distance_cache_max_entries,
        ),
    )
    app.state.graph_store = GraphStore()
    app.state.planner = RoutePlanner()
    yield
    if client is not None:
        await client.aclose()


app = FastAPI(title="Venue Navigation Engine", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def distance_estimator(request: Request) -> DistanceEstimator:
    estimator: DistanceEstimator | None = getattr(request.app.state, "estimator", None)
    if estimator is None:
        raise HTTPException(status_code=503, detail="distance estimator not initialised")
    return estimator


def graph_store(request: Request) -> GraphStore:
    store: GraphStore | None = getattr(request.app.state, "graph_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="graph store not initialised")
    return store


def route_planner(request: Request) -> RoutePlanner:
    planner: RoutePlanner | None = getattr(request.app.state, "planner", None)
    if planner is None:
        raise HTTPException(status_code=503, detail="route planner not initialised")
    return planner


EstimatorDep = Annotated[DistanceEstimator, Depends(distance_estimator)]
GraphStoreDep = Annotated[GraphStore, Depends(graph_store)]
PlannerDep = Annotated[RoutePlanner, Depends(route_planner)]


@contextmanager
def _timed(endpoint: str) -> Iterator[None]:
    t0 = time.perf_counter()
    failed = False
    try:
        yield
    except Exception:
        failed = True
        raise
    finally:
        record_request(endpoint, duration_ms=(time.perf_counter() - t0) * 1000, error=failed)


def _error_detail(exc: NavigationError) -> dict[str, object]:
    return {"reason_code": normalize_reason_code(exc.reason_code), "message": exc.message, "details": exc.details or {}}


def _graph_for(store: GraphStore, venue_id: str) -> NavigationGraph:
    current = store.current
    if current is not None and current.venue_id == venue_id:
        return current
    try:
        return store.load(venue_id)
    except VenueNotFoundError as e:
        raise HTTPException(status_code=404, detail=_error_detail(e)) from e
    except GraphIntegrityError as e:
        raise HTTPException(status_code=422, detail=_error_detail(e)) from e


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/venues/{venue_id}/route", response_model=IndoorRouteResponse)
async def plan_indoor_route(
    venue_id: str,
    req: IndoorRouteRequest,
    store: GraphStoreDep,
    planner: PlannerDep,
) -> IndoorRouteResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()
    with _timed("venue_route"):
        graph = await asyncio.to_thread(_graph_for, store, venue_id)
        closures = {"closed_node_ids": req.closed_node_ids, "closed_edges": req.closed_edges}
        if req.accessible_only and req.fallback_to_standard:
            route = await planner.plan_with_fallback(graph, req.from_node_id, req.to_node_id, **closures)
        else:
            route = await planner.plan(graph, req.from_node_id, req.to_node_id, req.accessible_only, **closures)

    reason_code = None
    if route is None:
        reason_code = "no_accessible_route" if req.accessible_only and not req.fallback_to_standard else "route_not_found"
        count_outcome(reason_code)

    log_event(
        "venue_route_request",
        request_id=request_id,
        venue_id=venue_id,
        from_node_id=req.from_node_id,
        to_node_id=req.to_node_id,
        accessible_only=req.accessible_only,
        found=route is not None,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return IndoorRouteResponse(
        venue_id=venue_id,
        route=RouteOut.from_route(route) if route is not None else None,
        reason_code=reason_code,
    )


@app.post("/estimate", response_model=RouteCalculationOut)
async def estimate(req: EstimateRequest, estimator: EstimatorDep) -> RouteCalculationOut:
    with _timed("estimate"):
        calc = await estimator.estimate(
            LatLon(req.origin.lat, req.origin.lon),
            LatLon(req.destination.lat, req.destination.lon),
            req.mode,
        )
    count_outcome(f"estimate_{calc.source}")
    return RouteCalculationOut.from_calculation(calc)


@app.post("/estimate/batch", response_model=BatchEstimateResponse)
async def estimate_batch(req: BatchEstimateRequest, estimator: EstimatorDep) -> BatchEstimateResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()
    with _timed("estimate_batch"):
        results = await estimator.batch_estimate(
            LatLon(req.origin.lat, req.origin.lon),
            [(d.id, LatLon(d.lat, d.lon)) for d in req.destinations],
            req.mode,
        )
    log_event(
        "batch_estimate_request",
        request_id=request_id,
        destination_count=len(req.destinations),
        mode=req.mode,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return BatchEstimateResponse(
        results=[BatchEstimateItem(id=dest_id, estimate=RouteCalculationOut.from_calculation(calc)) for dest_id, calc in results]
    )


@app.post("/estimate/indoor", response_model=IndoorEstimateResponse)
async def estimate_indoor(req: IndoorEstimateRequest) -> IndoorEstimateResponse:
    with _timed("estimate_indoor"):
        return IndoorEstimateResponse(distance_m=req.distance_m, duration_s=estimate_indoor_walk(req.distance_m))


@app.post("/mode/recommend", response_model=ModeRecommendResponse)
async def mode_recommend(req: ModeRecommendRequest) -> ModeRecommendResponse:
    with _timed("mode_recommend"):
        caps = req.capabilities
        tier = (
            PerformanceTier(caps.performance_tier)
            if caps.performance_tier is not None
            else classify_performance_tier(caps.model_name)
        )
        rec = recommend(
            DeviceCapabilities(
                is_physical_device=caps.is_physical_device,
                has_gyroscope=caps.has_gyroscope,
                has_accelerometer=caps.has_accelerometer,
                has_camera=caps.has_camera,
                performance_tier=tier,
            ),
            VenueContext(
                inside_known_venue=req.context.inside_known_venue,
                beacon_id=req.context.beacon_id,
                venue_id=req.context.venue_id,
            ),
        )
    return ModeRecommendResponse(mode=rec.mode.value, frame=rec.frame.value, performance_tier=tier.value)


@app.delete("/cache", response_model=CacheClearResponse)
async def clear_cache(estimator: EstimatorDep) -> CacheClearResponse:
    return CacheClearResponse(cleared=estimator.clear_cache())


@app.get("/cache/stats")
async def cache_stats(estimator: EstimatorDep) -> dict[str, int]:
    return estimator.cache_stats()


@app.get("/metrics")
async def metrics() -> dict[str, object]:
    return metrics_snapshot()
