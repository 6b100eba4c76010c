from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from pythonjsonlogger import jsonlogger
import logging
from flask import Response

# Basic metrics
HTTP_REQUESTS = Counter('http_requests_total', 'HTTP requests', ['method', 'endpoint', 'status'])
HTTP_LATENCY = Histogram('http_request_duration_seconds', 'HTTP request latency', ['endpoint'])

# Write-behind queue metrics
QUEUE_DRAINS = Counter('impression_queue_drains_total', 'Drain passes by outcome', ['outcome'])
QUEUE_COMMITTED = Counter('impression_queue_committed_total', 'Counts committed to canonical storage', ['kind'])
QUEUE_WRITE_FAILURES = Counter('impression_queue_write_failures_total', 'Per-entity canonical write failures', ['kind'])
QUEUE_EVICTED = Counter('impression_queue_evicted_total', 'Pending counts dropped by TTL expiry', ['kind'])
QUEUE_DRAIN_SECONDS = Histogram('impression_queue_drain_seconds', 'Duration of a drain pass')
QUEUE_PENDING = Gauge('impression_queue_pending_entities', 'Entities waiting in the pending queue', ['kind'])


def configure_logging(level=logging.INFO):
    handler = logging.StreamHandler()
    formatter = jsonlogger.JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    handler.setFormatter(formatter)
    root = logging.getLogger()
    # Avoid adding duplicate handlers
    if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        root.addHandler(handler)
    root.setLevel(level)


def metrics_endpoint():
    """Return a Flask Response with current Prometheus metrics."""
    data = generate_latest()
    return Response(data, mimetype=CONTENT_TYPE_LATEST)
