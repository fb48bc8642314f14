from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock


@dataclass
class EndpointCounters:
    requests: int = 0
    errors: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0


class MetricsStore:
    """Per-endpoint request timings plus named engine outcome counters."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._since = datetime.now(UTC).isoformat()
        self._endpoints: dict[str, EndpointCounters] = {}
        self._outcomes: dict[str, int] = {}

    def record(self, endpoint: str, *, duration_ms: float, error: bool = False) -> None:
        name = endpoint.strip() or "unknown"
        elapsed = max(float(duration_ms), 0.0)
        with self._lock:
            counters = self._endpoints.setdefault(name, EndpointCounters())
            counters.requests += 1
            counters.errors += int(bool(error))
            counters.total_ms += elapsed
            counters.max_ms = max(counters.max_ms, elapsed)

    def count(self, outcome: str, amount: int = 1) -> None:
        with self._lock:
            self._outcomes[outcome] = self._outcomes.get(outcome, 0) + int(amount)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            endpoints = {
                name: {
                    "request_count": c.requests,
                    "error_count": c.errors,
                    "avg_duration_ms": round(c.total_ms / c.requests, 3) if c.requests else 0.0,
                    "max_duration_ms": round(c.max_ms, 3),
                }
                for name, c in sorted(self._endpoints.items())
            }
            return {
                "since": self._since,
                "total_requests": sum(c.requests for c in self._endpoints.values()),
                "total_errors": sum(c.errors for c in self._endpoints.values()),
                "endpoints": endpoints,
                "outcomes": dict(sorted(self._outcomes.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._since = datetime.now(UTC).isoformat()
            self._endpoints.clear()
            self._outcomes.clear()


METRICS = MetricsStore()


def record_request(endpoint: str, *, duration_ms: float, error: bool = False) -> None:
    METRICS.record(endpoint, duration_ms=duration_ms, error=error)


def count_outcome(outcome: str, amount: int = 1) -> None:
    METRICS.count(outcome, amount)


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()
