"""
Prometheus metrics blueprint.

Exposes /metrics with HTTP request metrics plus the sale pipeline counters
incremented by the sale processor. Restrict it to the monitoring network.
"""
from flask import Blueprint, Response, request, g
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CollectorRegistry, CONTENT_TYPE_LATEST
from prometheus_client import multiprocess, REGISTRY
import time
import os

metrics_bp = Blueprint('metrics', __name__)

# Check if running in multi-process mode (Gunicorn)
MULTIPROCESS_MODE = os.environ.get('PROMETHEUS_MULTIPROC_DIR') is not None

if MULTIPROCESS_MODE:
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry)
else:
    registry = REGISTRY

_metric_registry = registry if not MULTIPROCESS_MODE else None

# HTTP Request Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'http_status'],
    registry=_metric_registry
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['method', 'endpoint'],
    registry=_metric_registry,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

http_requests_in_flight = Gauge(
    'http_requests_in_flight',
    'Number of HTTP requests currently being processed',
    registry=_metric_registry
)

# Sale pipeline metrics
pos_sales_processed_total = Counter(
    'pos_sales_processed_total',
    'POS sales that reached processed',
    registry=_metric_registry
)

pos_sales_failed_total = Counter(
    'pos_sales_failed_total',
    'Failed POS sale processing attempts',
    ['outcome'],  # retry | dead_letter
    registry=_metric_registry
)

pos_ingredient_deductions_total = Counter(
    'pos_ingredient_deductions_total',
    'Ingredient stock deductions written to the kardex',
    registry=_metric_registry
)

pos_stock_conflicts_total = Counter(
    'pos_stock_conflicts_total',
    'Optimistic lock conflicts on inventory_item.current_stock',
    registry=_metric_registry
)

pos_reconciliation_required_total = Counter(
    'pos_reconciliation_required_total',
    'Sales flagged for manual stock/kardex reconciliation',
    registry=_metric_registry
)

pos_sale_processing_seconds = Histogram(
    'pos_sale_processing_seconds',
    'Time spent processing one POS sale',
    registry=_metric_registry,
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

pos_sales_queue_depth = Gauge(
    'pos_sales_queue_depth',
    'POS sales per queue status (last observed)',
    ['status'],
    registry=_metric_registry,
    multiprocess_mode='livemax'
)


def observe_queue_stats(stats) -> None:
    """Copy a QueueStats snapshot into the queue depth gauge."""
    for status in ('pending', 'queued', 'processing', 'dead_letter'):
        pos_sales_queue_depth.labels(status=status).set(getattr(stats, status))


def setup_metrics_instrumentation(app):
    """Register before/after request hooks that record HTTP metrics."""

    @app.before_request
    def before_request_metrics():
        g._prometheus_metrics_start_time = time.time()
        http_requests_in_flight.inc()

    @app.after_request
    def after_request_metrics(response):
        if hasattr(g, '_prometheus_metrics_start_time'):
            duration = time.time() - g._prometheus_metrics_start_time
            endpoint = request.endpoint or 'unknown'

            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)
            http_requests_total.labels(
                method=request.method,
                endpoint=endpoint,
                http_status=response.status_code
            ).inc()
            http_requests_in_flight.dec()

        return response


@metrics_bp.route('/metrics')
def metrics():
    """Prometheus scrape endpoint (unauthenticated; network-restricted)."""
    data = generate_latest(registry)
    return Response(data, mimetype=CONTENT_TYPE_LATEST)
