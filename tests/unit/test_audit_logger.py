"""
Unit tests for AuditLogger behaviour that needs no database.
"""

import pytest

from patient_sync.core.exceptions import FetchError
from patient_sync.core.models import AuditStatus, OperationType
from patient_sync.observability import metrics
from patient_sync.warehouse.audit import AuditLogger
from patient_sync.warehouse.connection import DatabaseConnectionPool


class CapturingAuditLogger(AuditLogger):
    def __init__(self):
        super().__init__(pool=None)
        self.entries = []

    def log(self, entry):
        self.entries.append(entry)
        return len(self.entries)


class TestAuditLogger:
    """Tests for AuditLogger"""

    def test_failed_write_does_not_raise(self):
        """Test that an unreachable store turns the write into a warning"""
        pool = DatabaseConnectionPool(password="unused")
        audit = AuditLogger(pool)
        before = metrics.REGISTRY.get_sample_value(
            "sync_audit_write_failures_total", {"operation_type": "fetch"}
        ) or 0.0

        log_id = audit.log_event(OperationType.FETCH, "page", AuditStatus.SUCCESS, batch_id="batch-1")

        assert log_id is None
        after = metrics.REGISTRY.get_sample_value(
            "sync_audit_write_failures_total", {"operation_type": "fetch"}
        )
        assert after == before + 1

    def test_log_error_uses_pipeline_error_details(self):
        audit = CapturingAuditLogger()

        audit.log_error(FetchError("HTTP 503", status_code=503, attempts=4), "page", batch_id="batch-1")

        entry = audit.entries[0]
        assert entry.operation_type is OperationType.ERROR
        assert entry.status is AuditStatus.ERROR
        assert entry.error_details["error_type"] == "FetchError"
        assert entry.error_details["status_code"] == 503

    def test_log_error_plain_exception(self):
        audit = CapturingAuditLogger()

        audit.log_error(KeyError("id"), "patient")

        assert audit.entries[0].error_details == {"error_type": "KeyError", "message": "'id'"}

    def test_timed_success(self):
        audit = CapturingAuditLogger()

        with audit.timed(OperationType.FETCH, "page", batch_id="batch-1", metadata={"cursor": "c1"}) as meta:
            meta["entries"] = 2

        entry = audit.entries[0]
        assert entry.status is AuditStatus.SUCCESS
        assert entry.duration_ms >= 0
        assert entry.metadata == {"cursor": "c1", "entries": 2}

    def test_timed_failure_records_and_reraises(self):
        audit = CapturingAuditLogger()

        with pytest.raises(FetchError):
            with audit.timed(OperationType.FETCH, "page", resource_id="3"):
                raise FetchError("Request timed out", attempts=2)

        entry = audit.entries[0]
        assert entry.status is AuditStatus.ERROR
        assert entry.resource_id == "3"
        assert entry.error_details["message"] == "Request timed out"
