from __future__ import annotations

import logging
import time
from collections import Counter
from threading import Lock
from typing import Optional

from fastapi import Request

logger = logging.getLogger("sampledesk")

PREFIX = "sampledesk"


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # APScheduler logs every job run at INFO; the sweep logs its own summary.
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


class MetricsRegistry:
    """Process-local counters rendered in the Prometheus text format."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._requests: Counter[tuple[str, int]] = Counter()
        self._latency_ms = 0.0
        self._events: Counter[str] = Counter()

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests[(route, status_code)] += 1
            self._latency_ms += latency_ms

    def increment(self, event: str, amount: int = 1) -> None:
        with self._lock:
            self._events[event] += amount

    def event_count(self, event: str) -> int:
        with self._lock:
            return self._events[event]

    def to_prometheus(self, gauges: Optional[dict[str, int]] = None) -> str:
        with self._lock:
            requests = dict(self._requests)
            events = dict(self._events)
            latency_ms = self._latency_ms
        total = sum(requests.values())
        failed = sum(count for (_, code), count in requests.items() if code >= 500)

        lines = [
            f"# TYPE {PREFIX}_requests_total counter",
            f"{PREFIX}_requests_total {total}",
            f"# TYPE {PREFIX}_requests_5xx_total counter",
            f"{PREFIX}_requests_5xx_total {failed}",
            f"# TYPE {PREFIX}_request_avg_latency_ms gauge",
            f"{PREFIX}_request_avg_latency_ms {latency_ms / total if total else 0.0:.2f}",
            f"# TYPE {PREFIX}_route_requests_total counter",
        ]
        for (route, code), count in sorted(requests.items()):
            lines.append(f'{PREFIX}_route_requests_total{{route="{route}",status="{code}"}} {count}')
        lines.append(f"# TYPE {PREFIX}_events_total counter")
        for event, count in sorted(events.items()):
            lines.append(f'{PREFIX}_events_total{{event="{event}"}} {count}')
        if gauges:
            lines.append(f"# TYPE {PREFIX}_desk gauge")
            for name, value in sorted(gauges.items()):
                lines.append(f'{PREFIX}_desk{{name="{name}"}} {value}')
        return "\n".join(lines) + "\n"


def route_label(request: Request) -> str:
    # Routing stores the matched route in the scope; label by its template so
    # participant ids stay out of the series. Unmatched paths keep the raw path.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def observe_request(request: Request, call_next, *, metrics: MetricsRegistry):
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=route_label(request), status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            request.url.path,
            latency_ms,
        )
        raise
    latency_ms = (time.perf_counter() - start) * 1000.0
    metrics.record(route=route_label(request), status_code=response.status_code, latency_ms=latency_ms)
    logger.info(
        "request_complete method=%s path=%s status=%s latency_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
    )
    return response
