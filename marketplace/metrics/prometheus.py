"""Prometheus metrics collection."""
from prometheus_client import Counter, Histogram


# Request counter with labels: api_key, model, status_code
request_count = Counter(
    "marketplace_proxy_requests_total",
    "Total number of proxied requests",
    ["api_key_id", "model", "status_code"],
)

# Error counter with labels: model, error_kind
error_count = Counter(
    "marketplace_proxy_errors_total",
    "Total number of rejected or failed proxy requests",
    ["model", "error_kind"],
)

# Credits charged with labels: model
cost_total = Counter(
    "marketplace_credits_charged_total",
    "Total credits debited for proxied requests",
    ["model"],
)

# Tokens with labels: model, direction (input, output)
token_count = Counter(
    "marketplace_tokens_total",
    "Total tokens reported by upstream providers",
    ["model", "direction"],
)

# Debits that could not be applied after a successful upstream call
settlement_failures = Counter(
    "marketplace_settlement_failures_total",
    "Chargeable requests whose credit debit failed",
    ["model", "reason"],
)

# Upstream latency histogram with labels: model, streamed
latency_histogram = Histogram(
    "marketplace_upstream_latency_seconds",
    "Upstream request latency in seconds",
    ["model", "streamed"],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)


def record_request(api_key_id: str, model: str, status_code: int):
    """Record a proxied request."""
    request_count.labels(
        api_key_id=api_key_id,
        model=model,
        status_code=str(status_code),
    ).inc()


def record_error(model: str, error_kind: str):
    """Record an error."""
    error_count.labels(model=model, error_kind=error_kind).inc()


def record_usage(model: str, tokens_input: int, tokens_output: int):
    """Record tokens reported by the provider."""
    token_count.labels(model=model, direction="input").inc(tokens_input)
    token_count.labels(model=model, direction="output").inc(tokens_output)


def record_charge(model: str, cost: float):
    """Record credits actually debited."""
    cost_total.labels(model=model).inc(cost)


def record_settlement_failure(model: str, reason: str):
    settlement_failures.labels(model=model, reason=reason).inc()


def record_latency(model: str, latency_seconds: float, streamed: bool = False):
    """Record latency."""
    latency_histogram.labels(
        model=model,
        streamed="true" if streamed else "false",
    ).observe(latency_seconds)
