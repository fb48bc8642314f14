from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final

import httpx

from .geo import LatLon


class DirectionsError(RuntimeError):
    pass


class DirectionsRetryableError(DirectionsError):
    """A directions-service error that is likely transient and safe to retry."""

    pass


_RETRYABLE_STATUS: Final[set[int]] = {408, 425, 429, 500, 502, 503, 504}
_RETRYABLE_API_STATUS: Final[set[str]] = {"UNKNOWN_ERROR", "OVER_QUERY_LIMIT"}
_HTML_TAG_RE = re.compile(r"<[^>]*>")


def _format_service_error(resp: httpx.Response) -> str:
    """Best-effort decode of service JSON error payloads."""
    try:
        data = resp.json()
        if isinstance(data, dict):
            status = data.get("status")
            message = data.get("error_message")
            if status and message:
                return f"directions {resp.status_code} {status}: {message}"
            if status:
                return f"directions {resp.status_code} {status}"
    except ValueError:
        pass

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"directions {resp.status_code}: {body}"
    return f"directions HTTP {resp.status_code}"


def _fmt_point(point: LatLon) -> str:
    return f"{point.lat},{point.lon}"


def _traffic_params(mode: str, traffic_model: str | None, departure_time: datetime | None) -> dict[str, str]:
    # Traffic-aware durations are only offered for driving.
    if not traffic_model or mode != "driving":
        return {}
    when = departure_time or datetime.now(UTC)
    return {"traffic_model": traffic_model, "departure_time": str(int(when.timestamp()))}


@dataclass(frozen=True)
class DirectionsLeg:
    distance_m: float
    duration_s: float
    traffic_duration_s: float | None
    polyline: str
    steps: tuple[dict[str, Any], ...]


class DirectionsClient:
    """Async client for a distance-matrix/directions web service.

    Every non-OK outcome (HTTP error, transport error, non-OK API status) is raised
    as DirectionsError so callers can treat failures uniformly.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_s: float = 10.0,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max(1, int(max_retries))
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(float(timeout_s), connect=min(5.0, float(timeout_s))),
            headers={"accept": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        url = f"{self.base_url}/{path}"
        query = {**params, "key": self.api_key}
        last_err: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                resp = await self._client.get(url, params=query)

                if 400 <= resp.status_code < 500 and resp.status_code not in _RETRYABLE_STATUS:
                    raise DirectionsError(_format_service_error(resp))
                if resp.status_code in _RETRYABLE_STATUS:
                    raise DirectionsRetryableError(_format_service_error(resp))

                resp.raise_for_status()
                try:
                    data = resp.json()
                except ValueError as e:
                    raise DirectionsError("directions response is not JSON") from e
                if not isinstance(data, dict):
                    raise DirectionsError("directions response is not a JSON object")

                status = str(data.get("status", ""))
                if status in _RETRYABLE_API_STATUS:
                    raise DirectionsRetryableError(f"directions status={status}")
                if status != "OK":
                    raise DirectionsError(
                        f"directions status={status or 'missing'} message={data.get('error_message')}"
                    )
                return data

            except DirectionsRetryableError as e:
                last_err = e
            except (httpx.TimeoutException, httpx.NetworkError, httpx.TransportError) as e:
                last_err = e
            except httpx.HTTPStatusError as e:
                raise DirectionsError(str(e)) from e

            if attempt < self.max_retries - 1:
                await asyncio.sleep(min(0.25 * (2**attempt), 2.0))

        # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
        if last_err is None:
            detail = "unknown error"
        else:
            msg = str(last_err).strip()
            detail = f"{type(last_err).__name__}: {msg}" if msg else f"{type(last_err).__name__}: {last_err!r}"
        raise DirectionsError(
            f"directions request failed after {self.max_retries} attempts (base={self.base_url}): {detail}"
        )

    async def fetch_distance_matrix(
        self,
        *,
        origins: list[LatLon],
        destinations: list[LatLon],
        mode: str,
        traffic_model: str | None = None,
        departure_time: datetime | None = None,
    ) -> dict[str, Any]:
        if not origins or not destinations:
            raise DirectionsError("distance matrix needs at least one origin and destination")
        params = {
            "origins": "|".join(_fmt_point(p) for p in origins),
            "destinations": "|".join(_fmt_point(p) for p in destinations),
            "mode": mode,
            "units": "metric",
            **_traffic_params(mode, traffic_model, departure_time),
        }
        data = await self._get_json("distancematrix/json", params)
        rows = data.get("rows")
        if not isinstance(rows, list) or len(rows) != len(origins):
            raise DirectionsError("distance matrix rows do not match origins")
        return data

    async def fetch_directions(
        self,
        *,
        origin: LatLon,
        destination: LatLon,
        mode: str,
        traffic_model: str | None = None,
        departure_time: datetime | None = None,
    ) -> dict[str, Any]:
        data = await self._get_json(
            "directions/json",
            {
                "origin": _fmt_point(origin),
                "destination": _fmt_point(destination),
                "mode": mode,
                "units": "metric",
                **_traffic_params(mode, traffic_model, departure_time),
            },
        )
        routes = data.get("routes", [])
        if not isinstance(routes, list) or not routes:
            raise DirectionsError("directions returned no routes")
        return routes[0]


def matrix_element(data: dict[str, Any], row: int, col: int) -> tuple[float, float, float | None]:
    """Return (distance_m, duration_s, duration_in_traffic_s | None) for one element."""
    try:
        element = data["rows"][row]["elements"][col]
    except (KeyError, IndexError, TypeError) as e:
        raise DirectionsError(f"distance matrix missing element ({row}, {col})") from e
    if not isinstance(element, dict):
        raise DirectionsError(f"distance matrix element ({row}, {col}) is malformed")
    status = str(element.get("status", ""))
    if status != "OK":
        raise DirectionsError(f"distance matrix element status={status or 'missing'}")
    try:
        distance_m = float(element["distance"]["value"])
        duration_s = float(element["duration"]["value"])
        traffic_raw = element.get("duration_in_traffic")
        traffic_s = float(traffic_raw["value"]) if isinstance(traffic_raw, dict) else None
    except (KeyError, TypeError, ValueError) as e:
        raise DirectionsError(f"distance matrix element ({row}, {col}) is malformed") from e
    return distance_m, duration_s, traffic_s


def parse_directions_route(route: dict[str, Any]) -> DirectionsLeg:
    """Flatten the first leg of a directions route (HTML stripped from instructions)."""
    try:
        polyline = str(route.get("overview_polyline", {}).get("points", ""))
        leg = route["legs"][0]
        raw_steps = leg["steps"]
        distance_m = float(leg["distance"]["value"])
        duration_s = float(leg["duration"]["value"])
        traffic_raw = leg.get("duration_in_traffic")
        traffic_s = float(traffic_raw["value"]) if isinstance(traffic_raw, dict) else None
    except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
        raise DirectionsError("directions route is missing legs/steps") from e
    if not isinstance(raw_steps, list):
        raise DirectionsError("directions steps are malformed")
    steps: list[dict[str, Any]] = []
    for raw in raw_steps:
        try:
            steps.append(
                {
                    "instruction": _HTML_TAG_RE.sub("", str(raw.get("html_instructions", ""))).strip(),
                    "distance": float(raw["distance"]["value"]),
                    "duration": float(raw["duration"]["value"]),
                    "maneuver": str(raw.get("maneuver") or "straight"),
                    "lat": float(raw["end_location"]["lat"]),
                    "lon": float(raw["end_location"]["lng"]),
                }
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise DirectionsError("directions step is malformed") from e
    return DirectionsLeg(
        distance_m=distance_m,
        duration_s=duration_s,
        traffic_duration_s=traffic_s,
        polyline=polyline,
        steps=tuple(steps),
    )
