"""
Integration tests for sync_batch persistence.

Tests the state machine guards against a real PostgreSQL: single running
batch per source, compare-and-swap finalization, monotonic counters.
"""

import pytest

from patient_sync.core.exceptions import (
    BatchAlreadyRunningError,
    BatchNotFoundError,
    ConcurrentProgressError,
    InvalidBatchStateError,
)
from patient_sync.core.models import BatchStatus, PageResult, SyncBatch
from patient_sync.warehouse import BatchStore

ENDPOINT = "https://fhir.test.example/r4"
FIRST_PAGE = f"{ENDPOINT}/Patient?_count=2"


def new_batch(batch_id: str, source_system: str = "test_source", **fields) -> SyncBatch:
    return SyncBatch(
        batch_id=batch_id,
        source_system=source_system,
        base_endpoint=ENDPOINT,
        page_size=2,
        next_cursor=FIRST_PAGE,
        **fields,
    )


@pytest.fixture
def store(clean_db):
    return BatchStore(clean_db)


@pytest.mark.integration
def test_create_and_get(store):
    """Test that a created batch round-trips with its cursor"""
    created = store.create(new_batch("batch-1"))

    loaded = store.get("batch-1")
    assert loaded.status is BatchStatus.RUNNING
    assert loaded.next_cursor == f"{ENDPOINT}/Patient?_count=2"
    assert loaded.started_at == created.started_at
    assert store.find_running("test_source").batch_id == "batch-1"


@pytest.mark.integration
def test_get_unknown_batch(store):
    with pytest.raises(BatchNotFoundError):
        store.get("missing")


@pytest.mark.integration
def test_second_running_batch_for_source_rejected(store):
    """Test the single-active-batch-per-source constraint"""
    store.create(new_batch("batch-1"))

    with pytest.raises(BatchAlreadyRunningError):
        store.create(new_batch("batch-2"))

    store.create(new_batch("batch-3", source_system="other_source"))
    assert store.count_by_status() == {"running": 2}


@pytest.mark.integration
def test_new_batch_allowed_after_finalize(store):
    store.create(new_batch("batch-1"))
    store.finalize("batch-1", BatchStatus.FAILED, "HTTP 503")

    store.create(new_batch("batch-2", resumed_from="batch-1"))

    assert store.get("batch-2").resumed_from == "batch-1"


@pytest.mark.integration
def test_duplicate_batch_id_rejected(store):
    store.create(new_batch("batch-1"))
    store.finalize("batch-1", BatchStatus.COMPLETED)

    with pytest.raises(InvalidBatchStateError):
        store.create(new_batch("batch-1"))


@pytest.mark.integration
def test_page_progress_accumulates(store):
    """Test that counters grow by each page's totals and the cursor advances"""
    store.create(new_batch("batch-1"))

    store.record_page_progress(
        "batch-1",
        PageResult(page_number=1, total=2, successful=2, next_cursor=f"{ENDPOINT}?page=2"),
        expected_cursor=FIRST_PAGE,
    )
    batch = store.record_page_progress(
        "batch-1",
        PageResult(page_number=2, total=2, successful=1, failed=1, next_cursor=None),
        expected_cursor=f"{ENDPOINT}?page=2",
    )

    assert (batch.total_records, batch.successful_records, batch.failed_records) == (4, 3, 1)
    assert batch.last_processed_page == 2
    assert batch.next_cursor is None
    assert batch.successful_records + batch.failed_records <= batch.total_records


@pytest.mark.integration
def test_second_write_for_same_page_rejected(store):
    """Test that two processes committing the same page only count it once"""
    store.create(new_batch("batch-1"))
    page = PageResult(page_number=1, total=2, successful=2, next_cursor=f"{ENDPOINT}?page=2")

    store.record_page_progress("batch-1", page, expected_cursor=FIRST_PAGE)
    with pytest.raises(ConcurrentProgressError) as exc_info:
        store.record_page_progress("batch-1", page, expected_cursor=FIRST_PAGE)

    assert exc_info.value.current_page == 1
    batch = store.get("batch-1")
    assert batch.total_records == 2
    assert batch.status is BatchStatus.RUNNING


@pytest.mark.integration
def test_progress_from_stale_cursor_rejected(store):
    store.create(new_batch("batch-1"))

    with pytest.raises(ConcurrentProgressError):
        store.record_page_progress(
            "batch-1",
            PageResult(page_number=1, total=1, successful=1),
            expected_cursor=f"{ENDPOINT}?page=7",
        )

    assert store.get("batch-1").total_records == 0


@pytest.mark.integration
def test_finalize_keeps_resume_point(store):
    store.create(new_batch("batch-1"))
    store.record_page_progress(
        "batch-1",
        PageResult(page_number=1, total=2, successful=2, next_cursor=f"{ENDPOINT}?page=2"),
        expected_cursor=FIRST_PAGE,
    )

    batch = store.finalize("batch-1", BatchStatus.FAILED, "Request timed out")

    assert batch.status is BatchStatus.FAILED
    assert batch.ended_at is not None
    assert batch.error_message == "Request timed out"
    assert batch.last_processed_page == 1
    assert batch.next_cursor == f"{ENDPOINT}?page=2"
    assert store.find_running("test_source") is None


@pytest.mark.integration
def test_terminal_batch_cannot_change(store):
    """Test that finalize and progress writes are refused once terminal"""
    store.create(new_batch("batch-1"))
    completed = store.finalize("batch-1", BatchStatus.COMPLETED)

    with pytest.raises(InvalidBatchStateError) as exc_info:
        store.finalize("batch-1", BatchStatus.FAILED, "late failure")
    assert exc_info.value.status == "completed"

    with pytest.raises(InvalidBatchStateError):
        store.record_page_progress(
            "batch-1", PageResult(page_number=1, total=1, successful=1), expected_cursor=FIRST_PAGE
        )

    reloaded = store.get("batch-1")
    assert reloaded.status is BatchStatus.COMPLETED
    assert reloaded.ended_at == completed.ended_at
    assert reloaded.error_message is None


@pytest.mark.integration
def test_finalize_to_running_rejected(store):
    store.create(new_batch("batch-1"))
    with pytest.raises(ValueError):
        store.finalize("batch-1", BatchStatus.RUNNING)


@pytest.mark.integration
def test_cancel_flag(store):
    store.create(new_batch("batch-1"))
    assert store.is_cancel_requested("batch-1") is False

    assert store.request_cancel("batch-1") is True
    assert store.is_cancel_requested("batch-1") is True

    store.finalize("batch-1", BatchStatus.CANCELLED)
    assert store.request_cancel("batch-1") is False


@pytest.mark.integration
def test_list_batches_filters(store):
    store.create(new_batch("batch-1"))
    store.finalize("batch-1", BatchStatus.COMPLETED)
    store.create(new_batch("batch-2"))
    store.create(new_batch("batch-3", source_system="other_source"))

    running = store.list_batches(status=BatchStatus.RUNNING)
    assert {b.batch_id for b in running} == {"batch-2", "batch-3"}

    for_source = store.list_batches(source_system="test_source", limit=1)
    assert len(for_source) == 1

    assert store.count_by_status("test_source") == {"completed": 1, "running": 1}
