"""
Audit log operations for pipeline observability.

Every notable pipeline operation appends one immutable entry. Writing an
entry is best-effort: a failed audit write is reported as a warning and
never aborts the operation it describes.
"""

import time
from contextlib import contextmanager
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from patient_sync.core.exceptions import PipelineError
from patient_sync.core.models import AuditLogEntry, AuditStatus, OperationType
from patient_sync.observability import metrics
from patient_sync.observability.logger import get_logger

from .connection import DatabaseConnectionPool

logger = get_logger(__name__)

AUDIT_COLUMNS = """
    log_id,
    operation_type,
    resource_type,
    resource_id,
    status,
    duration_ms,
    error_details,
    metadata,
    batch_id,
    created_at
"""


class AuditLogger:
    """
    Append-only audit trail writer and query helper.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        """
        Initialize audit logger.

        Args:
            pool: Database connection pool
        """
        self.pool = pool

    def log(self, entry: AuditLogEntry) -> int | None:
        """
        Append an audit entry (fire-and-forget).

        Args:
            entry: AuditLogEntry to persist

        Returns:
            Generated log_id, or None if the write failed
        """
        insert_sql = """
            INSERT INTO audit_log (
                operation_type,
                resource_type,
                resource_id,
                status,
                duration_ms,
                error_details,
                metadata,
                batch_id,
                created_at
            ) VALUES (
                %(operation_type)s,
                %(resource_type)s,
                %(resource_id)s,
                %(status)s,
                %(duration_ms)s,
                %(error_details)s,
                %(metadata)s,
                %(batch_id)s,
                %(created_at)s
            ) RETURNING log_id;
        """

        params = {
            "operation_type": entry.operation_type.value,
            "resource_type": entry.resource_type,
            "resource_id": entry.resource_id,
            "status": entry.status.value,
            "duration_ms": entry.duration_ms,
            "error_details": Jsonb(entry.error_details) if entry.error_details is not None else None,
            "metadata": Jsonb(entry.metadata) if entry.metadata is not None else None,
            "batch_id": entry.batch_id,
            "created_at": entry.created_at,
        }

        try:
            rows = self.pool.execute_query(insert_sql, params)
        except (psycopg.Error, RuntimeError, TypeError, ValueError) as e:
            metrics.increment_counter(
                metrics.audit_write_failures_total,
                operation_type=entry.operation_type.value,
            )
            logger.warning(
                f"Failed to write audit entry: {e}",
                extra={
                    "operation_type": entry.operation_type.value,
                    "batch_id": entry.batch_id,
                    "resource_id": entry.resource_id,
                },
            )
            return None

        log_id = rows[0]["log_id"] if rows else None
        logger.debug(
            f"Audit entry {log_id}: {entry.operation_type.value}/{entry.status.value}",
            extra={"batch_id": entry.batch_id, "resource_id": entry.resource_id},
        )
        return log_id

    def log_event(
        self,
        operation_type: OperationType,
        resource_type: str,
        status: AuditStatus,
        batch_id: str | None = None,
        resource_id: str | None = None,
        duration_ms: float | None = None,
        error_details: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int | None:
        """Build and append an entry in one call."""
        return self.log(
            AuditLogEntry(
                operation_type=operation_type,
                resource_type=resource_type,
                resource_id=resource_id,
                status=status,
                duration_ms=duration_ms,
                error_details=error_details,
                metadata=metadata,
                batch_id=batch_id,
            )
        )

    def log_error(
        self,
        error: Exception,
        resource_type: str,
        batch_id: str | None = None,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int | None:
        """Append an `error` entry describing an exception."""
        if isinstance(error, PipelineError):
            details = error.to_dict()
        else:
            details = {"error_type": type(error).__name__, "message": str(error)}
        return self.log_event(
            OperationType.ERROR,
            resource_type,
            AuditStatus.ERROR,
            batch_id=batch_id,
            resource_id=resource_id,
            error_details=details,
            metadata=metadata,
        )

    @contextmanager
    def timed(
        self,
        operation_type: OperationType,
        resource_type: str,
        batch_id: str | None = None,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        """
        Time a block and append one entry for it.

        Success appends a `success` entry with the measured duration; an
        exception appends an `error` entry with its details and re-raises.
        The yielded dict may be updated inside the block to add metadata.

        Usage:
            with audit.timed(OperationType.FETCH, "page", batch_id=bid) as meta:
                meta["entries"] = 50
        """
        extra: dict[str, Any] = dict(metadata or {})
        start = time.monotonic()
        try:
            yield extra
        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            details = e.to_dict() if isinstance(e, PipelineError) else {
                "error_type": type(e).__name__,
                "message": str(e),
            }
            self.log_event(
                operation_type,
                resource_type,
                AuditStatus.ERROR,
                batch_id=batch_id,
                resource_id=resource_id,
                duration_ms=duration_ms,
                error_details=details,
                metadata=extra or None,
            )
            raise
        duration_ms = (time.monotonic() - start) * 1000
        self.log_event(
            operation_type,
            resource_type,
            AuditStatus.SUCCESS,
            batch_id=batch_id,
            resource_id=resource_id,
            duration_ms=duration_ms,
            metadata=extra or None,
        )

    def query_by_batch(self, batch_id: str, limit: int = 1000) -> list[dict[str, Any]]:
        """
        Query audit entries for a batch, oldest first.

        Args:
            batch_id: Batch to query
            limit: Maximum number of entries to return

        Returns:
            List of audit entries as dictionaries

        Raises:
            psycopg.DatabaseError: If query fails
        """
        query_sql = f"""
            SELECT {AUDIT_COLUMNS}
            FROM audit_log
            WHERE batch_id = %(batch_id)s
            ORDER BY log_id ASC
            LIMIT %(limit)s;
        """
        try:
            return self.pool.execute_query(query_sql, {"batch_id": batch_id, "limit": limit})
        except psycopg.DatabaseError as e:
            logger.error(f"Failed to query audit entries for batch {batch_id}: {e}")
            raise

    def count_by_operation(self, hours: int = 24) -> dict[str, int]:
        """
        Count audit entries by operation type over a recent window.

        Args:
            hours: Size of the window ending now

        Returns:
            Mapping of operation type to entry count

        Raises:
            psycopg.DatabaseError: If query fails
        """
        query_sql = """
            SELECT operation_type, COUNT(*) AS entry_count
            FROM audit_log
            WHERE created_at >= NOW() - make_interval(hours => %(hours)s::int)
            GROUP BY operation_type
            ORDER BY operation_type;
        """
        try:
            rows = self.pool.execute_query(query_sql, {"hours": hours})
        except psycopg.DatabaseError as e:
            logger.error(f"Failed to count audit entries: {e}")
            raise
        return {row["operation_type"]: row["entry_count"] for row in rows}
