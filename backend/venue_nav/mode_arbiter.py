from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum

from .logging_utils import log_event
from .route_model import Frame


class PerformanceTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NavigationMode(str, Enum):
    AR = "ar"
    MAP = "map"


_HIGH_TIER_MARKERS: tuple[str, ...] = (
    "pro",
    "ultra",
    "iphone 1",  # iPhone 10 and later
    "samsung galaxy s2",
    "samsung galaxy s3",
    "pixel 6",
    "pixel 7",
    "pixel 8",
)
_LOW_TIER_MARKERS: tuple[str, ...] = ("se", "mini", "lite", "iphone 6", "iphone 7", "iphone 8")


def classify_performance_tier(model_name: str | None) -> PerformanceTier:
    """Coarse tier from the marketing model name; unknown models are medium."""
    name = str(model_name or "").strip().lower()
    if not name:
        return PerformanceTier.MEDIUM
    if any(marker in name for marker in _HIGH_TIER_MARKERS):
        return PerformanceTier.HIGH
    if any(marker in name for marker in _LOW_TIER_MARKERS):
        return PerformanceTier.LOW
    return PerformanceTier.MEDIUM


@dataclass(frozen=True)
class DeviceCapabilities:
    is_physical_device: bool
    has_gyroscope: bool
    has_accelerometer: bool
    has_camera: bool
    performance_tier: PerformanceTier = PerformanceTier.MEDIUM

    @property
    def has_required_sensors(self) -> bool:
        return self.has_gyroscope and self.has_accelerometer and self.has_camera


@dataclass(frozen=True)
class VenueContext:
    """Positioning signal from outside the engine: geofence hit and/or a beacon id."""

    inside_known_venue: bool = False
    beacon_id: str | None = None
    venue_id: str | None = None

    @property
    def has_indoor_signal(self) -> bool:
        return self.inside_known_venue or bool((self.beacon_id or "").strip())


@dataclass(frozen=True)
class ModeRecommendation:
    mode: NavigationMode
    frame: Frame


def recommend(capabilities: DeviceCapabilities, context: VenueContext) -> ModeRecommendation:
    ar_ok = (
        capabilities.is_physical_device
        and capabilities.has_required_sensors
        and capabilities.performance_tier is not PerformanceTier.LOW
    )
    return ModeRecommendation(
        mode=NavigationMode.AR if ar_ok else NavigationMode.MAP,
        frame=Frame.INDOOR if context.has_indoor_signal else Frame.OUTDOOR,
    )


class ModeArbiter:
    """Holds the one-time capability snapshot and re-evaluates on each context change."""

    def __init__(self, capabilities: DeviceCapabilities, context: VenueContext | None = None) -> None:
        self.capabilities = capabilities
        self._lock = threading.Lock()
        self._context = context or VenueContext()
        self._current = recommend(self.capabilities, self._context)

    @property
    def current(self) -> ModeRecommendation:
        with self._lock:
            return self._current

    @property
    def context(self) -> VenueContext:
        with self._lock:
            return self._context

    def update_context(self, context: VenueContext) -> tuple[ModeRecommendation, bool]:
        """Return the new recommendation and whether the coordinate frame changed."""
        rec = recommend(self.capabilities, context)
        with self._lock:
            previous = self._current
            self._context = context
            self._current = rec
        changed = previous.frame is not rec.frame
        if changed:
            log_event(
                "frame_transition",
                from_frame=previous.frame.value,
                to_frame=rec.frame.value,
                venue_id=context.venue_id,
                beacon_id=context.beacon_id,
                mode=rec.mode.value,
            )
        return rec, changed
