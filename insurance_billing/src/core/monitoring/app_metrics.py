from prometheus_client import Counter, Histogram
import time
import structlog
from typing import Optional

logger = structlog.get_logger(__name__)

# --- Prometheus Metric Definitions ---
# Registered once with the default REGISTRY at import time.

# 1. Claim lifecycle
CLAIMS_CREATED_TOTAL = Counter(
    'billing_claims_created_total',
    'Total claims created.'
)

CLAIM_TRANSITIONS_TOTAL = Counter(
    'billing_claim_transitions_total',
    'Claim status transitions, labeled by edge and outcome.',
    ['from_status', 'to_status', 'outcome'] # outcome: success, invalid_transition, validation_failed, conflict
)

# 2. Payment allocation
PAYMENT_ALLOCATIONS_TOTAL = Counter(
    'billing_payment_allocations_total',
    'Insurance payment allocation requests, labeled by outcome.',
    ['outcome'] # e.g. 'synced', 'partial_failure', 'rejected', 'replayed'
)

ALLOCATED_AMOUNT_DOLLARS = Histogram(
    'billing_allocated_amount_dollars',
    'Amount allocated to invoices per payment, in dollars.',
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, float('inf'))
)

ALLOCATION_LINE_SYNC_TOTAL = Counter(
    'billing_allocation_line_sync_total',
    'Per-line external invoicing sync outcomes.',
    ['outcome'] # 'synced', 'failed', 'skipped' (zero paid or appointment lines, recorded when stored)
)

# 3. External invoicing API
INVOICING_REQUEST_DURATION_SECONDS = Histogram(
    'billing_invoicing_request_duration_seconds',
    'Duration of calls to the external invoicing API, in seconds.',
    ['operation', 'outcome'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))
)

# 4. Database
DATABASE_QUERY_DURATION_SECONDS = Histogram(
    'billing_database_query_duration_seconds',
    'Duration of key database queries, in seconds.',
    ['query_name']
)


class MetricsCollector:
    """
    Thin facade over the module-level Prometheus metrics so services can be handed
    a collector (and tests a MagicMock) instead of touching globals.
    """

    def __init__(self):
        logger.info("MetricsCollector initialized (stateless, uses global metrics).")

    def record_claim_created(self):
        CLAIMS_CREATED_TOTAL.inc()

    def record_claim_transition(self, from_status: Optional[str], to_status: str, outcome: str):
        CLAIM_TRANSITIONS_TOTAL.labels(
            from_status=from_status or "none", to_status=to_status, outcome=outcome
        ).inc()

    def record_payment_allocation(self, outcome: str, allocated_amount: Optional[float] = None):
        PAYMENT_ALLOCATIONS_TOTAL.labels(outcome=outcome).inc()
        if allocated_amount is not None:
            ALLOCATED_AMOUNT_DOLLARS.observe(allocated_amount)

    def record_allocation_line_sync(self, outcome: str):
        ALLOCATION_LINE_SYNC_TOTAL.labels(outcome=outcome).inc()

    def record_invoicing_request(self, operation: str, outcome: str, duration_seconds: float):
        INVOICING_REQUEST_DURATION_SECONDS.labels(operation=operation, outcome=outcome).observe(duration_seconds)

    def record_database_query_duration(self, query_name: str, duration_seconds: float):
        DATABASE_QUERY_DURATION_SECONDS.labels(query_name=query_name).observe(duration_seconds)

    class _DatabaseTimer:
        def __init__(self, collector_instance: 'MetricsCollector', query_name: str):
            self.collector = collector_instance
            self.query_name = query_name
            self.start_time: Optional[float] = None

        def __enter__(self):
            self.start_time = time.perf_counter()
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            if self.start_time is not None:
                duration_seconds = time.perf_counter() - self.start_time
                self.collector.record_database_query_duration(self.query_name, duration_seconds)

    def time_db_query(self, query_name: str) -> _DatabaseTimer:
        """Returns a context manager that records the duration of a database query."""
        return self._DatabaseTimer(self, query_name)
