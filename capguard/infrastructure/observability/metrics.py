"""Prometheus metrics for accrual, settlement and job health"""

from prometheus_client import Counter, Histogram

# Accrual metrics
positions_accrued_counter = Counter(
    "capguard_positions_accrued_total",
    "Accrual rows written",
)

accrual_errors_counter = Counter(
    "capguard_accrual_errors_total",
    "Positions that failed accrual",
    ["reason"],  # missing_cap | rate_source | invalid_rate | storage | unexpected
)

excess_recorded_counter = Counter(
    "capguard_excess_recorded_units_total",
    "Excess interest recorded in smallest token units",
    ["asset"],
)

rate_source_failures_counter = Counter(
    "capguard_rate_source_failures_total",
    "Rate lookups that fell back to zero",
)

# Settlement metrics
transfer_attempts_counter = Counter(
    "capguard_transfer_attempts_total",
    "Token transfer submission attempts",
)

transfer_outcome_counter = Counter(
    "capguard_transfer_outcomes_total",
    "Settlement batch outcomes",
    ["status"],  # processed | failed | pending
)

confirmation_latency_histogram = Histogram(
    "capguard_confirmation_seconds",
    "Time from broadcast to receipt",
    buckets=[1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

# Jobs
job_runs_counter = Counter(
    "capguard_job_runs_total",
    "Job executions",
    ["job", "outcome"],  # success | failure | skipped
)

job_duration_histogram = Histogram(
    "capguard_job_duration_seconds",
    "Job execution time",
    ["job"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_transfer_outcome(status: str, attempts: int) -> None:
    """Record batch outcome and how many submissions it took"""
    transfer_outcome_counter.labels(status=status).inc()
    if attempts:
        transfer_attempts_counter.inc(attempts)
