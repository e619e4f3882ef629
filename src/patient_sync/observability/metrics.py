"""
Prometheus metrics collection for patient-sync

Pipeline modules record into the module-level REGISTRY; the sync CLI exposes
it on METRICS_PORT while a batch runs.
"""
import os
import time
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

# Global registry for metrics
REGISTRY = CollectorRegistry()


# =======================
# EXTRACTION METRICS
# =======================

pages_fetched_total = Counter(
    name="sync_pages_fetched_total",
    documentation="Total number of pages fetched from the clinical API",
    labelnames=["source_system", "status"],  # status: success, failure
    registry=REGISTRY,
)

fetch_retries_total = Counter(
    name="sync_fetch_retries_total",
    documentation="Total number of page fetch retry attempts",
    labelnames=["source_system", "reason"],  # reason: transport, http_5xx, http_429, parse
    registry=REGISTRY,
)

page_fetch_duration_seconds = Histogram(
    name="sync_page_fetch_duration_seconds",
    documentation="Time spent fetching a single page, including retries and rate limiting",
    labelnames=["source_system"],
    buckets=[0.1, 0.5, 1.0, 3.0, 5.0, 10.0, 30.0, 60.0, 120.0],
    registry=REGISTRY,
)

# =======================
# DATA QUALITY METRICS
# =======================

records_processed_total = Counter(
    name="sync_records_processed_total",
    documentation="Total number of patient documents processed",
    labelnames=["source_system", "status"],  # status: success, failed
    registry=REGISTRY,
)

quality_score = Histogram(
    name="sync_quality_score",
    documentation="Distribution of patient document quality scores",
    labelnames=["source_system"],
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
    registry=REGISTRY,
)

test_data_flagged_total = Counter(
    name="sync_test_data_flagged_total",
    documentation="Total number of documents flagged as test data",
    labelnames=["source_system"],
    registry=REGISTRY,
)

# =======================
# STORAGE METRICS
# =======================

upserts_total = Counter(
    name="sync_upserts_total",
    documentation="Total number of patient record upserts",
    labelnames=["source_system", "outcome"],  # outcome: inserted, updated, error
    registry=REGISTRY,
)

upsert_duration_seconds = Histogram(
    name="sync_upsert_duration_seconds",
    documentation="Time spent upserting a patient record",
    labelnames=["source_system"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=REGISTRY,
)

audit_write_failures_total = Counter(
    name="sync_audit_write_failures_total",
    documentation="Audit entries that could not be persisted",
    labelnames=["operation_type"],
    registry=REGISTRY,
)

# =======================
# BATCH METRICS
# =======================

batches_finalized_total = Counter(
    name="sync_batches_finalized_total",
    documentation="Total number of batches reaching a terminal status",
    labelnames=["source_system", "status"],  # status: completed, failed, cancelled
    registry=REGISTRY,
)

batch_duration_seconds = Histogram(
    name="sync_batch_duration_seconds",
    documentation="Wall-clock duration of a batch run",
    labelnames=["source_system", "status"],
    buckets=[1.0, 10.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0, 7200.0],
    registry=REGISTRY,
)

batches_running = Gauge(
    name="sync_batches_running",
    documentation="Batches whose page loop is executing in this process",
    labelnames=["source_system"],
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def start_metrics_server(port: Optional[int] = None) -> None:
    """
    Expose REGISTRY over HTTP for Prometheus to scrape

    Args:
        port: Port to listen on (defaults to $METRICS_PORT, then 8000)
    """
    # Imported lazily so importing this module never binds a port
    from prometheus_client import start_http_server

    start_http_server(port or int(os.getenv("METRICS_PORT", "8000")), registry=REGISTRY)


class track_duration:
    """
    Observe the wall-clock duration of a block in a histogram

    Usage:
        with track_duration(page_fetch_duration_seconds, source_system="hapi_fhir_r4"):
            fetch()
    """

    def __init__(self, histogram: Histogram, **labels):
        self.histogram = histogram
        self.labels = labels
        self._start = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.histogram.labels(**self.labels).observe(time.perf_counter() - self._start)
        return False


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    counter.labels(**labels).inc(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    histogram.labels(**labels).observe(value)


def record_batch_finalized(source_system: str, status: str, duration_seconds: float) -> None:
    """
    Record a batch reaching a terminal status.

    Args:
        source_system: Source system name
        status: completed, failed or cancelled
        duration_seconds: Wall-clock duration of the run
    """
    increment_counter(batches_finalized_total, source_system=source_system, status=status)
    if duration_seconds > 0:
        observe_histogram(
            batch_duration_seconds, duration_seconds, source_system=source_system, status=status
        )
