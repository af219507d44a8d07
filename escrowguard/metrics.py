# escrowguard/metrics.py
from prometheus_client import Counter, Histogram, make_asgi_app

# Counters
checkouts_total = Counter("checkouts_total", "Successful checkouts")
orders_created_total = Counter("orders_created_total", "Orders created by checkout")
holds_opened_total = Counter("holds_opened_total", "Escrow holds opened on payment confirmation")
holds_released_total = Counter(
    "holds_released_total",
    "Escrow holds released to the seller",
    ["reason"],
)
refund_transitions_total = Counter(
    "refund_transitions_total",
    "Refund/return state transitions",
    ["flow", "to_status"],
)
reservations_total = Counter(
    "reservations_total",
    "Inventory reservation actions",
    ["action"],
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Notification sink calls that raised and were swallowed",
    ["event"],
)

idempotency_hits = Counter(
    "idempotency_hits_total",
    "Idempotency cache hits (same key, same request)",
    ["endpoint"],
)
idempotency_conflicts = Counter(
    "idempotency_conflicts_total",
    "Key reused for different request (409)",
    ["endpoint"],
)
inflight_retries = Counter(
    "idempotency_inflight_total",
    "Requests returned 425 Too Early (key still in-flight)",
    ["endpoint"],
)

money_errors = Counter("money_errors_total", "Money-path errors", ["operation", "code"])

# Latency
checkout_latency = Histogram("checkout_latency_seconds", "Checkout latency in seconds")
refund_latency = Histogram("refund_latency_seconds", "Refund/return transition latency in seconds")

# ASGI app for /metrics
metrics_asgi_app = make_asgi_app()
