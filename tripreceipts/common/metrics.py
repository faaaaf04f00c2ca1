"""Prometheus metric definitions for the fulfillment service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
receipt_emails_total = Counter(
    "receipt_emails_total",
    "Receipt email dispatch outcomes",
    ["service", "outcome"],
)
receipt_email_duration_seconds = Histogram(
    "receipt_email_duration_seconds",
    "Receipt email dispatch duration seconds (token + relay)",
    ["service"],
)
receipt_downloads_total = Counter(
    "receipt_downloads_total",
    "Receipt PDF downloads by outcome (completed, aborted, failed)",
    ["service", "outcome"],
)
token_refreshes_total = Counter(
    "token_refreshes_total",
    "OAuth2 access token refresh exchanges",
    ["service", "outcome"],
)
csrf_rejections_total = Counter(
    "csrf_rejections_total",
    "State-changing requests rejected by CSRF validation",
    ["service", "reason"],
)
session_teardowns_total = Counter(
    "session_teardowns_total",
    "Logout calls, split by whether a live session existed",
    ["service", "had_session"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
