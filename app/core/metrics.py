"""
Prometheus metrics shared by the HTTP layer and the services.
"""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

ALERTS_CREATED = Counter(
    'alerts_created_total',
    'Total alerts created',
    ['proof_source']
)

PROOFS_PROCESSED = Counter(
    'proofs_processed_total',
    'Total proof files processed',
    ['kind', 'outcome']
)

STATUS_UPDATES = Counter(
    'alert_status_updates_total',
    'Total status transitions applied through the webhook',
    ['status']
)
