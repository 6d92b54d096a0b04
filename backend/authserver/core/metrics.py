"""Prometheus metrics shared by the HTTP layer and the services"""

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "authserver_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "authserver_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
TOKENS_ISSUED = Counter(
    "authserver_tokens_issued_total",
    "Token responses issued by the token endpoint",
    ["grant_type"],
)
AUTHORIZATION_CODES_ISSUED = Counter(
    "authserver_authorization_codes_issued_total",
    "Authorization codes minted",
)
SECURITY_EVENTS = Counter(
    "authserver_security_events_total",
    "Replay and token-reuse detections",
    ["event"],
)
SWEEPER_UP_GAUGE = Gauge("authserver_sweeper_up", "Expiry sweeper liveness (1 running, 0 stopped)")
