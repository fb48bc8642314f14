from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

Coordinate = tuple[float, float]  # indoor (x, y) meters; outdoor (lat, lon)


class Frame(str, Enum):
    INDOOR = "indoor"
    OUTDOOR = "outdoor"


class Maneuver(str, Enum):
    START = "start"
    STRAIGHT = "straight"
    LEFT = "left"
    RIGHT = "right"
    ARRIVE = "arrive"


TravelMode = Literal["driving", "walking", "transit"]
TRAVEL_MODES: tuple[str, ...] = ("driving", "walking", "transit")


@dataclass(frozen=True)
class Step:
    instruction: str
    distance_from_start: float
    maneuver: Maneuver
    coordinate: Coordinate
    floor: int | None = None


@dataclass(frozen=True)
class Route:
    """Immutable route value. A reroute produces a new Route, never edits this one."""

    path: tuple[Any, ...]
    total_distance: float
    total_duration: float
    accessible: bool
    steps: tuple[Step, ...]
    frame: Frame
    mode: TravelMode = "walking"
    warnings: tuple[str, ...] = ()

    @property
    def destination(self) -> Coordinate | None:
        return self.steps[-1].coordinate if self.steps else None

    @property
    def coordinates(self) -> tuple[Coordinate, ...]:
        return tuple(step.coordinate for step in self.steps)

    def with_warning(self, warning: str) -> Route:
        return Route(
            path=self.path,
            total_distance=self.total_distance,
            total_duration=self.total_duration,
            accessible=self.accessible,
            steps=self.steps,
            frame=self.frame,
            mode=self.mode,
            warnings=(*self.warnings, warning),
        )
