from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Optional
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("lead_autopilot")

METRIC_PREFIX = "lead_autopilot"
REQUEST_ID_HEADER = "x-request-id"


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    outcomes: dict[tuple[str, str], int]


class MetricsRegistry:
    """In-process counters rendered in Prometheus text format by ``GET /metrics``."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._outcomes: dict[tuple[str, str], int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_outcome(self, operation: str, outcome: str, count: int = 1) -> None:
        """Domain counters, e.g. ``("dispatch", "sent")`` or ``("proof", "reused")``."""
        if count <= 0:
            return
        with self._lock:
            key = (operation, outcome)
            self._outcomes[key] = self._outcomes.get(key, 0) + count

    def outcome_count(self, operation: str, outcome: str) -> int:
        with self._lock:
            return self._outcomes.get((operation, outcome), 0)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                outcomes=dict(self._outcomes),
            )

    def to_prometheus(self, gauges: Optional[dict[str, int]] = None) -> str:
        snap = self.snapshot()
        avg_latency = snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        lines: list[str] = []

        def metric(name: str, kind: str, help_text: str) -> None:
            lines.append(f"# HELP {METRIC_PREFIX}_{name} {help_text}")
            lines.append(f"# TYPE {METRIC_PREFIX}_{name} {kind}")

        metric("requests_total", "counter", "Total HTTP requests")
        lines.append(f"{METRIC_PREFIX}_requests_total {snap.requests_total}")
        metric("requests_5xx_total", "counter", "Total 5xx HTTP requests")
        lines.append(f"{METRIC_PREFIX}_requests_5xx_total {snap.requests_5xx}")
        metric("request_avg_latency_ms", "gauge", "Average request latency ms")
        lines.append(f"{METRIC_PREFIX}_request_avg_latency_ms {avg_latency:.2f}")

        metric("route_requests_total", "counter", "HTTP requests by route and status")
        with self._lock:
            by_route = sorted(self._by_route_status.items())
        for (route, status_code), count in by_route:
            lines.append(
                f'{METRIC_PREFIX}_route_requests_total{{route="{route}",status="{status_code}"}} {count}'
            )

        metric("outcomes_total", "counter", "Domain operation outcomes")
        for (operation, outcome), count in sorted(snap.outcomes.items()):
            lines.append(
                f'{METRIC_PREFIX}_outcomes_total{{operation="{operation}",outcome="{outcome}"}} {count}'
            )

        # Point-in-time backlog read from the database at scrape time.
        for name, value in sorted((gauges or {}).items()):
            metric(name, "gauge", name.replace("_", " ").capitalize())
            lines.append(f"{METRIC_PREFIX}_{name} {value}")
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    request_id = request.headers.get(REQUEST_ID_HEADER, "").strip()[:128] or uuid4().hex
    request.state.request_id = request_id
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed request_id=%s method=%s path=%s latency_ms=%.2f",
            request_id,
            request.method,
            path,
            latency_ms,
        )
        response = JSONResponse(
            status_code=500,
            content={"detail": "internal server error"},
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    latency_ms = (time.perf_counter() - start) * 1000.0
    metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
    logger.info(
        "request_complete request_id=%s method=%s path=%s status=%s latency_ms=%.2f",
        request_id,
        request.method,
        path,
        response.status_code,
        latency_ms,
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response
