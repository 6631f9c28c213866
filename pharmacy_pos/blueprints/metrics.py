"""
Prometheus metrics for the POS service.

Two groups live here: the POS counters incremented by the services
(reservations, checkout, product search) and the per-route HTTP metrics
recorded around every request. /metrics must stay on the internal network.
"""
import os
import time

from flask import Blueprint, Response, g, request
from prometheus_client import (
    CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, Gauge, Histogram,
    generate_latest, multiprocess,
)

metrics_bp = Blueprint('metrics', __name__)

# Gunicorn workers share metrics through PROMETHEUS_MULTIPROC_DIR
MULTIPROCESS_MODE = os.environ.get('PROMETHEUS_MULTIPROC_DIR') is not None

if MULTIPROCESS_MODE:
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry)
else:
    registry = REGISTRY

_metric_registry = None if MULTIPROCESS_MODE else registry

# POS counters
reservation_attempts_total = Counter(
    'pos_reservation_attempts_total',
    'Reservation calls against the inventory service',
    ['operation', 'outcome'],
    registry=_metric_registry,
)

checkout_total = Counter(
    'pos_checkout_total',
    'Checkout submissions by outcome',
    ['outcome'],
    registry=_metric_registry,
)

product_search_total = Counter(
    'pos_product_search_total',
    'Debounced product searches: delivered, or superseded by a newer query',
    ['outcome'],
    registry=_metric_registry,
)

# HTTP metrics, labelled by route rule so path parameters do not explode cardinality
http_requests_total = Counter(
    'pos_http_requests_total',
    'HTTP requests by route and status',
    ['method', 'route', 'http_status'],
    registry=_metric_registry,
)

http_request_duration_seconds = Histogram(
    'pos_http_request_duration_seconds',
    'HTTP request latency in seconds; checkout and imports wait on the inventory service',
    ['method', 'route'],
    registry=_metric_registry,
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

http_requests_in_flight = Gauge(
    'pos_http_requests_in_flight',
    'HTTP requests currently being served',
    registry=_metric_registry,
)

SKIPPED_ROUTES = frozenset(('/metrics', '/health'))


def _route_label() -> str:
    rule = request.url_rule
    return rule.rule if rule is not None else 'unmatched'


def setup_metrics_instrumentation(app):
    """Record per-route request metrics. Called from the app factory."""

    @app.before_request
    def start_request_timer():
        if request.path in SKIPPED_ROUTES:
            return
        g.metrics_started = time.perf_counter()
        http_requests_in_flight.inc()

    @app.after_request
    def record_request_metrics(response):
        started = g.pop('metrics_started', None)
        if started is None:
            return response
        route = _route_label()
        try:
            http_request_duration_seconds.labels(method=request.method, route=route).observe(
                time.perf_counter() - started
            )
            http_requests_total.labels(
                method=request.method, route=route, http_status=response.status_code
            ).inc()
        except Exception as e:
            app.logger.warning(f"[METRICS] could not record {request.method} {route}: {e}")
        finally:
            http_requests_in_flight.dec()
        return response


@metrics_bp.route('/metrics')
def metrics():
    """Prometheus scrape endpoint (unauthenticated)."""
    return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)
