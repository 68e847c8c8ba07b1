from prometheus_client import Counter, Histogram
# Prometheus metrics definitions

# Generation related metrics
# generation_requests_total: Counter of accepted /generate calls
# generation_latency_seconds: Histogram of end-to-end job processing latency

generation_requests_total = Counter(
    "generation_requests_total", "Total generation requests"
)

# model calls are slow; buckets reach two minutes
_generation_latency_buckets = (
    1.0,
    2.0,
    5.0,
    10.0,
    20.0,
    40.0,
    80.0,
    120.0,
)

generation_latency_seconds = Histogram(
    "generation_latency_seconds",
    "Generation latency",
    buckets=_generation_latency_buckets,
)

# Terminal job outcomes, labelled by final status and blocked reason
job_terminal_total = Counter(
    "job_terminal_total",
    "Jobs reaching a terminal status",
    ["status", "reason"],
)

# Quota rejects when both paid and free allowance are used up
quota_reject_total = Counter(
    "quota_reject_total", "Number of quota rejected requests"
)

# Generation requests rejected by the Redis rate limiter
rate_limited_total = Counter(
    "rate_limited_total", "Number of rate limited generation requests"
)

# Stripe webhook deliveries by outcome (processed, deduped, ignored, failed, rejected)
webhook_events_total = Counter(
    "webhook_events_total", "Stripe webhook deliveries", ["outcome"]
)

# Downloads served with the visible watermark
watermark_applied_total = Counter(
    "watermark_applied_total", "Downloads served with a watermark"
)

__all__ = [
    "generation_requests_total",
    "generation_latency_seconds",
    "job_terminal_total",
    "quota_reject_total",
    "rate_limited_total",
    "webhook_events_total",
    "watermark_applied_total",
]
