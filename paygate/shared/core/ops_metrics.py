"""
Operational metrics for the payment pipeline.

Counters are module-level singletons registered on the default Prometheus
registry; import them where the event happens.
"""

from prometheus_client import Counter, Histogram

# --- Webhook ingestion ---
WEBHOOKS_RECEIVED = Counter(
    "paygate_webhooks_received_total",
    "Inbound webhook deliveries by ingestion outcome",
    ["provider", "outcome"],  # enqueued | ignored | invalid_signature | rejected
)

# --- Webhook processing ---
WEBHOOKS_PROCESSED = Counter(
    "paygate_webhooks_processed_total",
    "Webhook jobs processed by the worker",
    ["provider", "event_type", "status"],  # processed | failed | duplicate
)

# --- Dunning ---
DUNNING_SUSPENSIONS = Counter(
    "paygate_dunning_suspensions_total",
    "Subscriptions suspended by the dunning sweep",
)

# --- Tenant isolation ---
TENANT_SCOPE_VIOLATIONS = Counter(
    "paygate_tenant_scope_violations_total",
    "Writes to tenant tables attempted without tenant context",
    ["statement_type"],
)

TENANT_SCOPE_LATENCY = Histogram(
    "paygate_tenant_scope_latency_seconds",
    "Latency in seconds to apply tenant context on a PostgreSQL session",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1),
)

# --- API ---
API_ERRORS_TOTAL = Counter(
    "paygate_api_errors_total",
    "API error responses by path, method and status code",
    ["path", "method", "status_code"],
)
