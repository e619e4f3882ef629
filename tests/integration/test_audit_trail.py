"""
Integration tests for the audit trail.

Tests that entries are appended, queryable per batch, and counted by
operation type.
"""

import pytest

from patient_sync.core.exceptions import ScoringError
from patient_sync.core.models import AuditLogEntry, AuditStatus, OperationType
from patient_sync.warehouse import AuditLogger


@pytest.fixture
def audit(clean_db):
    return AuditLogger(clean_db)


@pytest.mark.integration
def test_entries_persisted_in_order(audit):
    first = audit.log_event(OperationType.BATCH_START, "batch", AuditStatus.INFO, batch_id="batch-1")
    second = audit.log(AuditLogEntry(
        operation_type=OperationType.FETCH,
        resource_type="page",
        resource_id="1",
        status=AuditStatus.SUCCESS,
        duration_ms=35.2,
        metadata={"cursor": "https://fhir.test.example/r4/Patient?_count=2", "entries": 2},
        batch_id="batch-1",
    ))

    assert first is not None and second > first

    entries = audit.query_by_batch("batch-1")
    assert [e["operation_type"] for e in entries] == ["batch_start", "fetch"]
    assert entries[1]["metadata"]["entries"] == 2
    assert entries[1]["duration_ms"] == pytest.approx(35.2)


@pytest.mark.integration
def test_error_entry_details(audit):
    """Test that error entries keep the structured error for later rollups"""
    audit.log_error(ScoringError("Document has no id or identifier value"), "patient", batch_id="batch-1")

    entry = audit.query_by_batch("batch-1")[0]

    assert entry["operation_type"] == "error"
    assert entry["status"] == "error"
    assert entry["error_details"]["error_type"] == "ScoringError"


@pytest.mark.integration
def test_timed_block_writes_one_entry(audit):
    with audit.timed(OperationType.FETCH, "page", batch_id="batch-1", resource_id="1") as meta:
        meta["entries"] = 0

    entries = audit.query_by_batch("batch-1")
    assert len(entries) == 1
    assert entries[0]["status"] == "success"
    assert entries[0]["duration_ms"] >= 0


@pytest.mark.integration
def test_query_isolated_per_batch(audit):
    audit.log_event(OperationType.BATCH_START, "batch", AuditStatus.INFO, batch_id="batch-1")
    audit.log_event(OperationType.BATCH_START, "batch", AuditStatus.INFO, batch_id="batch-2")

    assert len(audit.query_by_batch("batch-1")) == 1
    assert audit.query_by_batch("batch-3") == []


@pytest.mark.integration
def test_count_by_operation(audit):
    for _ in range(3):
        audit.log_event(OperationType.STORE, "patient", AuditStatus.SUCCESS, batch_id="batch-1")
    audit.log_event(OperationType.RETRY, "page", AuditStatus.WARNING, batch_id="batch-1")

    assert audit.count_by_operation(hours=1) == {"retry": 1, "store": 3}
