"""Prometheus metric definitions for the authorization server and wallet."""

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
authorization_codes_issued_total = Counter(
    "authorization_codes_issued_total",
    "Authorization codes issued",
    ["client_id"],
)
tokens_issued_total = Counter(
    "tokens_issued_total",
    "Access/refresh token pairs issued",
    ["client_id", "grant_type"],
)
grant_failures_total = Counter(
    "grant_failures_total",
    "Failed code/token redemptions and lookups",
    ["operation", "reason"],
)
wallet_transactions_total = Counter(
    "wallet_transactions_total",
    "Applied wallet transactions",
    ["kind"],
)
wallet_replays_total = Counter(
    "wallet_replays_total",
    "Wallet transactions answered from the idempotency record",
    ["kind"],
)
insufficient_funds_total = Counter(
    "insufficient_funds_total",
    "Debits rejected for insufficient balance",
)
wallet_transaction_seconds = Histogram(
    "wallet_transaction_seconds",
    "Wallet transaction latency seconds including lock wait",
    ["kind"],
)
purged_rows_total = Counter(
    "purged_rows_total",
    "Expired codes and tokens removed by the purge loop",
    ["table"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
