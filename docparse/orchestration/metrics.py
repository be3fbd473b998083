"""Prometheus metrics for the parsing pipeline.

Exposes:
- Provider calls by outcome
- Cost spent per provider
- Budget exhaustion events
- Pages accepted/skipped by the page classifier
- Fallback chain duration

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram

provider_calls_total = Counter(
    "docparse_provider_calls_total",
    "Chain element executions",
    ["provider", "outcome"],  # success, low_confidence, failed, unavailable, skipped
)

parsing_cost_dollars_total = Counter(
    "docparse_parsing_cost_dollars_total",
    "Provider spend in USD",
    ["provider"],
)

budget_exhausted_total = Counter(
    "docparse_budget_exhausted_total",
    "Chains that hit a cost ceiling and were forced onto free extraction",
    ["scope"],  # invoice, document, daily
)

pages_classified_total = Counter(
    "docparse_pages_classified_total",
    "Pages scored by the page classifier",
    ["result"],  # invoice, skipped, forced
)

chain_duration_seconds = Histogram(
    "docparse_chain_duration_seconds",
    "Fallback chain execution time in seconds",
    ["kind"],  # invoice, estimate
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)
