"""
Persistence for SyncBatch rows.

The sync_batch row is the single source of truth for resume state. Status
changes are compare-and-swap updates guarded by `status = 'running'`, so no
transition can leave a terminal state even with several orchestrator
processes pointed at the same database.
"""

from typing import Any

from psycopg import errors

from patient_sync.core.exceptions import (
    BatchAlreadyRunningError,
    BatchNotFoundError,
    ConcurrentProgressError,
    InvalidBatchStateError,
)
from patient_sync.core.models import BatchStatus, PageResult, SyncBatch

from .connection import DatabaseConnectionPool

RUNNING_SOURCE_CONSTRAINT = "uq_sync_batch_running_source"

BATCH_COLUMNS = """
    batch_id, source_system, base_endpoint, page_size, started_at, ended_at,
    total_records, successful_records, failed_records, status,
    last_processed_page, next_cursor, error_message, cancel_requested,
    resumed_from, updated_at
"""


class BatchStore:
    """
    Reads and writes sync_batch rows.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        """
        Initialize batch store.

        Args:
            pool: Database connection pool
        """
        self.pool = pool

    def create(self, batch: SyncBatch) -> SyncBatch:
        """
        Insert a new running batch.

        Args:
            batch: Batch to insert (status must be running)

        Returns:
            The persisted batch

        Raises:
            BatchAlreadyRunningError: Another batch is running for the same source
            InvalidBatchStateError: A batch with this id already exists
        """
        query = f"""
            INSERT INTO sync_batch (
                batch_id, source_system, base_endpoint, page_size, started_at,
                status, last_processed_page, next_cursor, resumed_from
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {BATCH_COLUMNS}
        """
        try:
            rows = self.pool.execute_query(
                query,
                (
                    batch.batch_id,
                    batch.source_system,
                    batch.base_endpoint,
                    batch.page_size,
                    batch.started_at,
                    batch.status.value,
                    batch.last_processed_page,
                    batch.next_cursor,
                    batch.resumed_from,
                ),
            )
        except errors.UniqueViolation as e:
            if e.diag.constraint_name == RUNNING_SOURCE_CONSTRAINT:
                raise BatchAlreadyRunningError(batch.source_system) from e
            raise InvalidBatchStateError(batch.batch_id, "exists", "create") from e

        return SyncBatch(**rows[0])

    def get(self, batch_id: str) -> SyncBatch:
        """
        Load a batch.

        Raises:
            BatchNotFoundError: If no batch has this id
        """
        rows = self.pool.execute_query(
            f"SELECT {BATCH_COLUMNS} FROM sync_batch WHERE batch_id = %s",
            (batch_id,),
        )
        if not rows:
            raise BatchNotFoundError(batch_id)
        return SyncBatch(**rows[0])

    def find_running(self, source_system: str) -> SyncBatch | None:
        """Return the running batch for a source, if any."""
        rows = self.pool.execute_query(
            f"SELECT {BATCH_COLUMNS} FROM sync_batch WHERE source_system = %s AND status = 'running'",
            (source_system,),
        )
        return SyncBatch(**rows[0]) if rows else None

    def record_page_progress(self, batch_id: str, page: PageResult, expected_cursor: str | None) -> SyncBatch:
        """
        Persist one processed page: counters, page number and next cursor.

        Counters use atomic increments so they only ever grow. This is the
        last write of each page, making the stored cursor the resume point.

        The write only applies while the batch still sits at the page and
        cursor this page started from, so two processes driving one batch
        cannot both commit the same page.

        Args:
            batch_id: Batch being processed
            page: Folded counters and next cursor for the page
            expected_cursor: Cursor the page was fetched from

        Returns:
            The updated batch

        Raises:
            InvalidBatchStateError: If the batch is no longer running
            ConcurrentProgressError: If another process already moved the batch on
        """
        query = f"""
            UPDATE sync_batch
            SET total_records = total_records + %s,
                successful_records = successful_records + %s,
                failed_records = failed_records + %s,
                last_processed_page = %s,
                next_cursor = %s,
                updated_at = NOW()
            WHERE batch_id = %s
              AND status = 'running'
              AND last_processed_page = %s
              AND next_cursor IS NOT DISTINCT FROM %s
            RETURNING {BATCH_COLUMNS}
        """
        rows = self.pool.execute_query(
            query,
            (
                page.total,
                page.successful,
                page.failed,
                page.page_number,
                page.next_cursor,
                batch_id,
                page.page_number - 1,
                expected_cursor,
            ),
        )
        if not rows:
            current = self.get(batch_id)
            if current.status is not BatchStatus.RUNNING:
                raise InvalidBatchStateError(batch_id, current.status.value, "record progress for")
            raise ConcurrentProgressError(batch_id, page.page_number, current.last_processed_page)
        return SyncBatch(**rows[0])

    def finalize(
        self,
        batch_id: str,
        status: BatchStatus,
        error_message: str | None = None,
    ) -> SyncBatch:
        """
        Move a running batch to a terminal status and stamp its end time.

        Cursor and last processed page are left untouched so failed and
        cancelled batches stay resumable.

        Raises:
            ValueError: If status is not terminal
            InvalidBatchStateError: If the batch is not running
        """
        if not BatchStatus.RUNNING.can_transition_to(status):
            raise ValueError(f"Cannot finalize a batch to non-terminal status '{status.value}'")

        query = f"""
            UPDATE sync_batch
            SET status = %s,
                ended_at = NOW(),
                error_message = COALESCE(%s, error_message),
                updated_at = NOW()
            WHERE batch_id = %s AND status = 'running'
            RETURNING {BATCH_COLUMNS}
        """
        rows = self.pool.execute_query(query, (status.value, error_message, batch_id))
        if not rows:
            current = self.get(batch_id)
            raise InvalidBatchStateError(batch_id, current.status.value, f"mark {status.value}")
        return SyncBatch(**rows[0])

    def request_cancel(self, batch_id: str) -> bool:
        """
        Set the cancellation flag on a running batch.

        Returns:
            True if a running batch was flagged
        """
        rowcount = self.pool.execute_command(
            """
            UPDATE sync_batch
            SET cancel_requested = TRUE, updated_at = NOW()
            WHERE batch_id = %s AND status = 'running'
            """,
            (batch_id,),
        )
        return rowcount == 1

    def is_cancel_requested(self, batch_id: str) -> bool:
        rows = self.pool.execute_query(
            "SELECT cancel_requested FROM sync_batch WHERE batch_id = %s",
            (batch_id,),
        )
        if not rows:
            raise BatchNotFoundError(batch_id)
        return bool(rows[0]["cancel_requested"])

    def count_by_status(self, source_system: str | None = None) -> dict[str, int]:
        """
        Count batches by status.

        Args:
            source_system: Optional source to filter by

        Returns:
            Mapping of status to batch count
        """
        if source_system:
            query = """
                SELECT status, COUNT(*) AS batch_count
                FROM sync_batch
                WHERE source_system = %s
                GROUP BY status
            """
            params: tuple = (source_system,)
        else:
            query = """
                SELECT status, COUNT(*) AS batch_count
                FROM sync_batch
                GROUP BY status
            """
            params = ()

        rows = self.pool.execute_query(query, params)
        return {row["status"]: row["batch_count"] for row in rows}

    def list_batches(
        self,
        status: BatchStatus | None = None,
        source_system: str | None = None,
        limit: int = 50,
    ) -> list[SyncBatch]:
        """List batches, newest first, optionally filtered."""
        conditions = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = %s")
            params.append(status.value)
        if source_system is not None:
            conditions.append("source_system = %s")
            params.append(source_system)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        rows = self.pool.execute_query(
            f"SELECT {BATCH_COLUMNS} FROM sync_batch {where} ORDER BY started_at DESC LIMIT %s",
            tuple(params),
        )
        return [SyncBatch(**row) for row in rows]
