"""Prometheus metrics for the HyperShift Lite Operator."""

from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "hypershift_lite_operator_reconcile_total",
    "Total number of reconciliations",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "hypershift_lite_operator_reconcile_duration_seconds",
    "Duration of reconciliations in seconds",
    ["kind"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

error_total = Counter(
    "hypershift_lite_operator_error_total",
    "Total number of reconciliation errors",
    ["kind", "error_type"],
)

# Pass progress metrics
pass_stage_total = Counter(
    "hypershift_lite_operator_pass_stage_total",
    "Stage reached at the end of each reconciliation pass",
    ["stage"],
)

gate_total = Counter(
    "hypershift_lite_operator_gate_total",
    "Subsystem gate evaluations",
    ["subsystem", "result"],
)

subsystem_recreated_total = Counter(
    "hypershift_lite_operator_subsystem_recreated_total",
    "Subsystem workloads deleted for recreation after a failed bootstrap",
    ["subsystem", "reason"],
)

# Certificate metrics
certificate_issued_total = Counter(
    "hypershift_lite_operator_certificate_issued_total",
    "Certificates and key pairs generated",
    ["artifact"],
)

# Release image metrics
release_lookup_total = Counter(
    "hypershift_lite_operator_release_lookup_total",
    "Release image lookups",
    ["result"],
)

# Object store metrics
object_operations_total = Counter(
    "hypershift_lite_operator_object_operations_total",
    "Owned object upserts by outcome",
    ["kind", "operation"],
)

api_call_total = Counter(
    "hypershift_lite_operator_api_call_total",
    "Total number of API calls",
    ["api_type", "operation", "result"],
)

api_call_duration_seconds = Histogram(
    "hypershift_lite_operator_api_call_duration_seconds",
    "Duration of API calls in seconds",
    ["api_type", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0],
)

rate_limit_hits_total = Counter(
    "hypershift_lite_operator_rate_limit_hits_total",
    "Total number of rate limit hits",
    ["api_type"],
)
