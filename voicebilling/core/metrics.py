"""Prometheus metrics for the billing engine.

Tracks invoice generation outcomes, billing run health, retries and
circuit breaker state.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "voicebilling_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# Invoice Generation
# ============================================
INVOICES_GENERATED_TOTAL = Counter(
    "invoices_generated_total",
    "Invoice generation attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

INVOICE_AMOUNT_CENTS_TOTAL = Counter(
    "invoice_amount_cents_total",
    "Total invoiced amount in minor currency units",
    ["currency"],
    registry=REGISTRY,
)


# ============================================
# Billing Runs
# ============================================
BILLING_RUNS_TOTAL = Counter(
    "billing_runs_total",
    "Invoice job runs by final status and trigger",
    ["status", "trigger"],
    registry=REGISTRY,
)

BILLING_RUN_DURATION_SECONDS = Histogram(
    "billing_run_duration_seconds",
    "Invoice job run duration in seconds",
    ["trigger"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600],
    registry=REGISTRY,
)

BILLING_RUN_IN_PROGRESS = Gauge(
    "billing_run_in_progress",
    "Whether an invoice job run is currently executing (1=yes, 0=no)",
    registry=REGISTRY,
)


# ============================================
# Resilience
# ============================================
RETRY_ATTEMPTS_TOTAL = Counter(
    "external_call_retries_total",
    "Retried external calls by operation",
    ["operation"],
    registry=REGISTRY,
)

CIRCUIT_BREAKER_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["service"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
