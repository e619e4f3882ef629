"""
Daily quality rollups per source system.

A rollup is derived data: it is recomputed from patient_record and audit_log
and written with INSERT ... ON CONFLICT DO UPDATE, so re-running it for the
same (period, source_system) replaces the row instead of accumulating.
Periods are UTC calendar dates of each record's latest processed_at.
"""

from datetime import date

import psycopg

from patient_sync.core.exceptions import StorageError
from patient_sync.core.models import ERROR_FLAGS, QualityMetricsAggregate
from patient_sync.observability.logger import get_logger

from .connection import DatabaseConnectionPool

logger = get_logger(__name__)

HIGH_QUALITY_THRESHOLD = 0.7
MEDIUM_QUALITY_THRESHOLD = 0.5

AGGREGATE_COLUMNS = """
    period, source_system, total_records, average_quality_score,
    high_quality_count, medium_quality_count, low_quality_count,
    validation_errors, validation_warnings, computed_at
"""

ROLLUP_SQL = f"""
    WITH period_records AS (
        SELECT quality_score, quality_flags
        FROM patient_record
        WHERE source_system = %(source_system)s
          AND (processed_at AT TIME ZONE 'UTC')::date = %(period)s::date
    ),
    scoring_failures AS (
        SELECT COUNT(*) AS failure_count
        FROM audit_log a
        JOIN sync_batch b ON b.batch_id = a.batch_id
        WHERE b.source_system = %(source_system)s
          AND a.operation_type = 'error'
          AND a.resource_type = 'patient'
          AND a.error_details ->> 'error_type' = 'ScoringError'
          AND (a.created_at AT TIME ZONE 'UTC')::date = %(period)s::date
    )
    INSERT INTO quality_metrics (
        period, source_system, total_records, average_quality_score,
        high_quality_count, medium_quality_count, low_quality_count,
        validation_errors, validation_warnings, computed_at
    )
    SELECT
        %(period)s::date,
        %(source_system)s::varchar,
        COUNT(*),
        ROUND(AVG(quality_score)::numeric, 4)::double precision,
        COUNT(*) FILTER (WHERE quality_score >= %(high)s),
        COUNT(*) FILTER (WHERE quality_score >= %(medium)s AND quality_score < %(high)s),
        COUNT(*) FILTER (WHERE quality_score < %(medium)s),
        COUNT(*) FILTER (WHERE quality_flags ?| %(error_flags)s::text[])
            + (SELECT failure_count FROM scoring_failures),
        COUNT(*) FILTER (
            WHERE EXISTS (
                SELECT 1 FROM jsonb_array_elements_text(quality_flags) AS flag
                WHERE flag <> ALL(%(error_flags)s::text[])
            )
        ),
        NOW()
    FROM period_records
    ON CONFLICT (period, source_system) DO UPDATE SET
        total_records = EXCLUDED.total_records,
        average_quality_score = EXCLUDED.average_quality_score,
        high_quality_count = EXCLUDED.high_quality_count,
        medium_quality_count = EXCLUDED.medium_quality_count,
        low_quality_count = EXCLUDED.low_quality_count,
        validation_errors = EXCLUDED.validation_errors,
        validation_warnings = EXCLUDED.validation_warnings,
        computed_at = EXCLUDED.computed_at
    RETURNING {AGGREGATE_COLUMNS}
"""


class MetricsAggregator:
    """
    Computes and reads quality_metrics rows.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        """
        Initialize metrics aggregator.

        Args:
            pool: Database connection pool
        """
        self.pool = pool

    def rollup(self, period: date, source_system: str) -> QualityMetricsAggregate:
        """
        Recompute the aggregate for one day and source.

        Counts:
        - high/medium/low: score >= 0.7, [0.5, 0.7), < 0.5
        - validation_errors: records carrying an error-severity flag plus
          documents that failed scoring that day
        - validation_warnings: records carrying any warning-severity flag

        Args:
            period: UTC calendar date
            source_system: Source system name

        Returns:
            The stored aggregate

        Raises:
            StorageError: If the rollup statement fails
        """
        params = {
            "period": period,
            "source_system": source_system,
            "high": HIGH_QUALITY_THRESHOLD,
            "medium": MEDIUM_QUALITY_THRESHOLD,
            "error_flags": sorted(flag.value for flag in ERROR_FLAGS),
        }
        try:
            rows = self.pool.execute_query(ROLLUP_SQL, params)
        except psycopg.Error as e:
            raise StorageError(
                f"Quality rollup failed for {source_system} on {period}: {e}",
                systemic=isinstance(e, (psycopg.OperationalError, psycopg.InterfaceError)),
            ) from e
        aggregate = QualityMetricsAggregate(**rows[0])

        logger.info(
            f"Quality rollup for {source_system} on {period}: "
            f"{aggregate.total_records} records, avg {aggregate.average_quality_score}",
            extra={"source_system": source_system, "period": period.isoformat()},
        )
        return aggregate

    def periods_for_batch(self, batch_id: str) -> list[date]:
        """UTC dates on which records last written by this batch were processed."""
        rows = self.pool.execute_query(
            """
            SELECT DISTINCT (processed_at AT TIME ZONE 'UTC')::date AS period
            FROM patient_record
            WHERE batch_id = %s
            ORDER BY period
            """,
            (batch_id,),
        )
        return [row["period"] for row in rows]

    def stale_periods(self, source_system: str) -> list[date]:
        """
        Stored periods whose record count no longer matches patient_record.

        Re-ingesting a record moves its processed_at to the current day, which
        leaves the aggregate of the day it was previously processed on
        counting it. Those days show up here.
        """
        rows = self.pool.execute_query(
            """
            SELECT qm.period
            FROM quality_metrics qm
            LEFT JOIN (
                SELECT (processed_at AT TIME ZONE 'UTC')::date AS period, COUNT(*) AS record_count
                FROM patient_record
                WHERE source_system = %(source_system)s
                GROUP BY 1
            ) live ON live.period = qm.period
            WHERE qm.source_system = %(source_system)s
              AND qm.total_records <> COALESCE(live.record_count, 0)
            ORDER BY qm.period
            """,
            {"source_system": source_system},
        )
        return [row["period"] for row in rows]

    def get_aggregate(self, period: date, source_system: str) -> QualityMetricsAggregate | None:
        rows = self.pool.execute_query(
            f"""
            SELECT {AGGREGATE_COLUMNS}
            FROM quality_metrics
            WHERE period = %s AND source_system = %s
            """,
            (period, source_system),
        )
        return QualityMetricsAggregate(**rows[0]) if rows else None

    def quality_trend(self, source_system: str, days: int = 30) -> list[QualityMetricsAggregate]:
        """
        Aggregates for the last `days` days, oldest first.

        Args:
            source_system: Source system name
            days: Window size ending today (UTC)
        """
        rows = self.pool.execute_query(
            f"""
            SELECT {AGGREGATE_COLUMNS}
            FROM quality_metrics
            WHERE source_system = %s
              AND period > (NOW() AT TIME ZONE 'UTC')::date - %s::int
            ORDER BY period ASC
            """,
            (source_system, days),
        )
        return [QualityMetricsAggregate(**row) for row in rows]
