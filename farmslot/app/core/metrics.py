"""
Prometheus metrics for application monitoring.
"""
import time

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import generate_latest as generate_latest_openmetrics
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


# Request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Reservation metrics
bookings_created_total = Counter(
    'bookings_created_total',
    'Total number of temporary bookings created',
)

bookings_cancelled_total = Counter(
    'bookings_cancelled_total',
    'Total number of bookings cancelled',
    ['reason']
)

bookings_confirmed_total = Counter(
    'bookings_confirmed_total',
    'Total number of bookings confirmed at checkout or by a producer/admin',
)

booking_conflicts_total = Counter(
    'booking_conflicts_total',
    'Booking requests refused because of capacity, stock or duplicates',
    ['reason']
)

reaper_failures_total = Counter(
    'reaper_failures_total',
    'Expired bookings the reaper failed to release',
)

reaper_last_run_timestamp = Gauge(
    'reaper_last_run_timestamp',
    'Unix time of the last completed expiry sweep',
)

slot_counter_drift_total = Counter(
    'slot_counter_drift_total',
    'Delivery slots whose reserved counter had to be reconciled',
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        # Use the route template so ids do not explode label cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        if request.url.path == "/metrics":
            return await call_next(request)

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.time() - start_time

            http_requests_total.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code
            ).inc()

            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)

        return response


def get_metrics_response(openmetrics: bool = False) -> Response:
    """
    Get Prometheus metrics response.

    Args:
        openmetrics: If True, return OpenMetrics format, else Prometheus format
    """
    if openmetrics:
        content = generate_latest_openmetrics()
        content_type = "application/openmetrics-text; version=1.0.0; charset=utf-8"
    else:
        content = generate_latest()
        content_type = CONTENT_TYPE_LATEST

    return Response(content=content, media_type=content_type)
