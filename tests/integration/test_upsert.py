"""
Integration tests for idempotent patient record upserts.

Tests the natural-key guarantee: the same (source_record_id, source_system)
written any number of times, from any number of threads, is one row.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from patient_sync.core.exceptions import StorageError
from patient_sync.core.models import PatientRecord, SyncBatch, UpsertOutcome
from patient_sync.warehouse import AuditLogger, BatchStore, DatabaseConnectionPool, PatientRecordWriter


@pytest.fixture
def writer(clean_db):
    store = BatchStore(clean_db)
    for batch_id in ("batch-1", "batch-2"):
        store.create(SyncBatch(
            batch_id=batch_id,
            source_system=f"source_{batch_id}",
            base_endpoint="https://fhir.test.example/r4",
        ))
    return PatientRecordWriter(clean_db, AuditLogger(clean_db))


def make_record(document, batch_id="batch-1", score=0.8, flags=None, source_system="test_source"):
    return PatientRecord(
        source_record_id=document["id"],
        source_system=source_system,
        document=document,
        quality_score=score,
        quality_flags=flags or [],
        batch_id=batch_id,
    )


@pytest.mark.integration
def test_same_key_twice_is_one_row(writer, make_patient):
    """Test that the second write updates the first"""
    first = writer.upsert(make_record(make_patient("pat-1"), score=0.6, flags=["missing_contact"]))
    second = writer.upsert(make_record(make_patient("pat-1", gender="female"), batch_id="batch-2", score=0.9))

    assert first.outcome is UpsertOutcome.INSERTED
    assert second.outcome is UpsertOutcome.UPDATED
    assert writer.count_records() == 1

    stored = writer.get_record("pat-1", "test_source")
    assert stored.quality_score == 0.9
    assert stored.quality_flags == []
    assert stored.batch_id == "batch-2"
    assert stored.document["gender"] == "female"
    assert stored.updated_at >= stored.created_at


@pytest.mark.integration
def test_same_id_different_source_are_distinct(writer, make_patient):
    writer.upsert(make_record(make_patient("pat-1"), source_system="source_a"))
    writer.upsert(make_record(make_patient("pat-1"), source_system="source_b"))

    assert writer.count_records() == 2
    assert writer.count_records("source_a") == 1


@pytest.mark.integration
def test_concurrent_writers_insert_once(writer, make_patient):
    """Test that workers racing on one key produce a single insert"""
    barrier = threading.Barrier(8)

    def write(i):
        barrier.wait()
        return writer.upsert(make_record(make_patient("pat-race"), score=round(0.5 + i / 100, 2)))

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(write, range(8)))

    outcomes = [r.outcome for r in results]
    assert outcomes.count(UpsertOutcome.INSERTED) == 1
    assert outcomes.count(UpsertOutcome.UPDATED) == 7
    assert writer.count_records() == 1


@pytest.mark.integration
def test_upsert_appends_store_audit_entries(writer, clean_db, make_patient):
    writer.upsert(make_record(make_patient("pat-1")))
    writer.upsert(make_record(make_patient("pat-1")))

    entries = AuditLogger(clean_db).query_by_batch("batch-1")

    assert [e["operation_type"] for e in entries] == ["store", "store"]
    assert [e["metadata"]["outcome"] for e in entries] == ["inserted", "updated"]
    assert all(e["resource_id"] == "pat-1" for e in entries)


@pytest.mark.integration
def test_unknown_batch_is_storage_error(writer, make_patient):
    """Test that a constraint failure surfaces as a non-systemic StorageError"""
    with pytest.raises(StorageError) as exc_info:
        writer.upsert(make_record(make_patient("pat-1"), batch_id="no-such-batch"))

    assert exc_info.value.systemic is False
    assert writer.count_records() == 0


@pytest.mark.integration
def test_closed_pool_is_systemic(make_patient):
    closed = PatientRecordWriter(DatabaseConnectionPool(password="unused"))

    with pytest.raises(StorageError) as exc_info:
        closed.upsert(make_record(make_patient("pat-1")))

    assert exc_info.value.systemic is True
