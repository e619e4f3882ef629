"""
Idempotent upsert operations for patient records.

Duplicates are resolved by a single atomic INSERT ... ON CONFLICT UPDATE on
the natural key (source_record_id, source_system). Two workers racing on the
same key can never both insert.
"""

import time
from typing import Any

import psycopg
from psycopg import errors
from psycopg.types.json import Jsonb

from patient_sync.core.exceptions import StorageError, WriteConflictError
from patient_sync.core.models import (
    AuditStatus,
    OperationType,
    PatientRecord,
    UpsertOutcome,
    UpsertResult,
)
from patient_sync.observability import metrics
from patient_sync.observability.logger import get_logger

from .audit import AuditLogger
from .connection import DatabaseConnectionPool

logger = get_logger(__name__)

CONTENTION_ERRORS = (
    errors.UniqueViolation,
    errors.SerializationFailure,
    errors.DeadlockDetected,
)

UPSERT_SQL = """
    INSERT INTO patient_record (
        source_record_id, source_system, document, quality_score,
        quality_flags, batch_id, processed_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (source_record_id, source_system) DO UPDATE SET
        document = EXCLUDED.document,
        quality_score = EXCLUDED.quality_score,
        quality_flags = EXCLUDED.quality_flags,
        batch_id = EXCLUDED.batch_id,
        processed_at = EXCLUDED.processed_at,
        updated_at = NOW()
    RETURNING (xmax = 0) AS inserted
"""

UPDATE_SQL = """
    UPDATE patient_record SET
        document = %s,
        quality_score = %s,
        quality_flags = %s,
        batch_id = %s,
        processed_at = %s,
        updated_at = NOW()
    WHERE source_record_id = %s AND source_system = %s
"""


class PatientRecordWriter:
    """
    Writes scored patient documents to patient_record.

    Each call is its own transaction and appends one `store` audit entry.
    Safe to call from several worker threads sharing one pool.
    """

    def __init__(self, pool: DatabaseConnectionPool, audit_logger: AuditLogger | None = None):
        """
        Initialize patient record writer.

        Args:
            pool: Database connection pool
            audit_logger: Destination for `store` audit entries (optional)
        """
        self.pool = pool
        self.audit_logger = audit_logger

    def upsert(self, record: PatientRecord) -> UpsertResult:
        """
        Insert the record, or update the stored row sharing its natural key.

        Args:
            record: Scored record carrying document, score, flags and batch id

        Returns:
            UpsertResult with outcome inserted or updated

        Raises:
            WriteConflictError: Contention persisted through the single retry
            StorageError: Any other persistence failure (systemic when the
                database is unreachable)
        """
        start = time.monotonic()
        try:
            outcome = self._write(record)
        except StorageError as e:
            duration_ms = (time.monotonic() - start) * 1000
            metrics.increment_counter(
                metrics.upserts_total, source_system=record.source_system, outcome="error"
            )
            self._audit(record, AuditStatus.ERROR, duration_ms, error_details=e.to_dict())
            raise

        duration_ms = (time.monotonic() - start) * 1000
        metrics.increment_counter(
            metrics.upserts_total, source_system=record.source_system, outcome=outcome.value
        )
        metrics.observe_histogram(
            metrics.upsert_duration_seconds, duration_ms / 1000, source_system=record.source_system
        )
        self._audit(
            record,
            AuditStatus.SUCCESS,
            duration_ms,
            metadata={"outcome": outcome.value, "quality_score": record.quality_score},
        )
        return UpsertResult(
            source_record_id=record.source_record_id,
            source_system=record.source_system,
            outcome=outcome,
            duration_ms=duration_ms,
        )

    def _write(self, record: PatientRecord) -> UpsertOutcome:
        try:
            try:
                rows = self.pool.execute_query(
                    UPSERT_SQL,
                    (
                        record.source_record_id,
                        record.source_system,
                        Jsonb(record.document),
                        record.quality_score,
                        Jsonb(record.quality_flags),
                        record.batch_id,
                        record.processed_at,
                    ),
                )
                return UpsertOutcome.INSERTED if rows[0]["inserted"] else UpsertOutcome.UPDATED
            except CONTENTION_ERRORS as first:
                logger.warning(
                    f"Write contention on {record.source_record_id}, retrying as update: {first}",
                    extra={"batch_id": record.batch_id, "source_system": record.source_system},
                )
                return self._retry_as_update(record)
        except (psycopg.OperationalError, psycopg.InterfaceError, RuntimeError) as e:
            raise StorageError(f"Database unavailable: {e}", systemic=True) from e
        except psycopg.Error as e:
            raise StorageError(f"Failed to store {record.source_record_id}: {e}") from e

    def _retry_as_update(self, record: PatientRecord) -> UpsertOutcome:
        try:
            rowcount = self.pool.execute_command(
                UPDATE_SQL,
                (
                    Jsonb(record.document),
                    record.quality_score,
                    Jsonb(record.quality_flags),
                    record.batch_id,
                    record.processed_at,
                    record.source_record_id,
                    record.source_system,
                ),
            )
        except CONTENTION_ERRORS as second:
            raise WriteConflictError(
                record.source_record_id,
                record.source_system,
                f"Write conflict persisted after retry: {second}",
            ) from second

        if rowcount != 1:
            raise WriteConflictError(
                record.source_record_id,
                record.source_system,
                "Row vanished between conflicting insert and retry update",
            )
        return UpsertOutcome.UPDATED

    def _audit(
        self,
        record: PatientRecord,
        status: AuditStatus,
        duration_ms: float,
        error_details: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.audit_logger is None:
            return
        self.audit_logger.log_event(
            OperationType.STORE,
            "patient",
            status,
            batch_id=record.batch_id,
            resource_id=record.source_record_id,
            duration_ms=duration_ms,
            error_details=error_details,
            metadata=metadata,
        )

    def get_record(self, source_record_id: str, source_system: str) -> PatientRecord | None:
        """
        Load a stored record by natural key.

        Returns:
            The record, or None if it has never been stored
        """
        rows = self.pool.execute_query(
            """
            SELECT source_record_id, source_system, document, quality_score,
                   quality_flags, batch_id, processed_at, created_at, updated_at
            FROM patient_record
            WHERE source_record_id = %s AND source_system = %s
            """,
            (source_record_id, source_system),
        )
        return PatientRecord(**rows[0]) if rows else None

    def count_records(self, source_system: str | None = None) -> int:
        """Count stored records, optionally for one source."""
        if source_system:
            rows = self.pool.execute_query(
                "SELECT COUNT(*) AS record_count FROM patient_record WHERE source_system = %s",
                (source_system,),
            )
        else:
            rows = self.pool.execute_query("SELECT COUNT(*) AS record_count FROM patient_record")
        return rows[0]["record_count"]
