from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .distance_estimator import RouteCalculation
from .route_model import Route

TravelMode = Literal["driving", "walking", "transit"]
PerformanceTierName = Literal["low", "medium", "high"]


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class StepOut(BaseModel):
    instruction: str
    distance_from_start: float
    maneuver: Literal["start", "straight", "left", "right", "arrive"]
    coordinate: tuple[float, float]
    floor: int | None = None


class RouteOut(BaseModel):
    path: list[Any]
    total_distance: float
    total_duration: float
    accessible: bool
    frame: Literal["indoor", "outdoor"]
    mode: TravelMode
    steps: list[StepOut]
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_route(cls, route: Route) -> RouteOut:
        return cls(
            path=list(route.path),
            total_distance=route.total_distance,
            total_duration=route.total_duration,
            accessible=route.accessible,
            frame=route.frame.value,
            mode=route.mode,
            steps=[
                StepOut(
                    instruction=s.instruction,
                    distance_from_start=s.distance_from_start,
                    maneuver=s.maneuver.value,
                    coordinate=s.coordinate,
                    floor=s.floor,
                )
                for s in route.steps
            ],
            warnings=list(route.warnings),
        )


class IndoorRouteRequest(BaseModel):
    from_node_id: str = Field(..., min_length=1)
    to_node_id: str = Field(..., min_length=1)
    accessible_only: bool = False
    # When accessible_only finds nothing, return the standard route with a warning.
    fallback_to_standard: bool = True
    closed_node_ids: list[str] = Field(default_factory=list)
    closed_edges: list[tuple[str, str]] = Field(default_factory=list)


class IndoorRouteResponse(BaseModel):
    venue_id: str
    route: RouteOut | None = None
    reason_code: str | None = None


class EstimateRequest(BaseModel):
    origin: LatLng
    destination: LatLng
    mode: TravelMode = "walking"


class RouteCalculationOut(BaseModel):
    distance: float
    duration: float
    traffic: Literal["light", "moderate", "heavy"]
    polyline: str = ""
    steps: list[dict[str, Any]] = Field(default_factory=list)
    source: Literal["service", "cache", "local"]

    @classmethod
    def from_calculation(cls, calc: RouteCalculation) -> RouteCalculationOut:
        return cls(
            distance=calc.distance,
            duration=calc.duration,
            traffic=calc.traffic,
            polyline=calc.polyline,
            steps=[dict(s) for s in calc.steps],
            source=calc.source,
        )


class BatchDestination(BaseModel):
    id: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class BatchEstimateRequest(BaseModel):
    origin: LatLng
    destinations: list[BatchDestination] = Field(..., min_length=1, max_length=500)
    mode: TravelMode = "walking"

    @field_validator("destinations")
    @classmethod
    def unique_ids(cls, v: list[BatchDestination]) -> list[BatchDestination]:
        ids = [d.id for d in v]
        if len(set(ids)) != len(ids):
            raise ValueError("destination ids must be unique")
        return v


class BatchEstimateItem(BaseModel):
    id: str
    estimate: RouteCalculationOut


class BatchEstimateResponse(BaseModel):
    results: list[BatchEstimateItem]


class IndoorEstimateRequest(BaseModel):
    distance_m: float = Field(..., ge=0)


class IndoorEstimateResponse(BaseModel):
    distance_m: float
    duration_s: float


class DeviceCapabilitiesIn(BaseModel):
    is_physical_device: bool
    has_gyroscope: bool
    has_accelerometer: bool
    has_camera: bool
    performance_tier: PerformanceTierName | None = None
    # Used to derive the tier when performance_tier is omitted.
    model_name: str | None = None


class VenueContextIn(BaseModel):
    inside_known_venue: bool = False
    beacon_id: str | None = None
    venue_id: str | None = None


class ModeRecommendRequest(BaseModel):
    capabilities: DeviceCapabilitiesIn
    context: VenueContextIn = Field(default_factory=VenueContextIn)


class ModeRecommendResponse(BaseModel):
    mode: Literal["ar", "map"]
    frame: Literal["indoor", "outdoor"]
    performance_tier: PerformanceTierName


class CacheClearResponse(BaseModel):
    cleared: int
