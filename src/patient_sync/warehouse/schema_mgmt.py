"""
Schema management operations for the sync store.

Creates the four tables the pipeline writes to, with the unique constraints
the pipeline relies on:
- sync_batch: batch_id primary key, at most one running batch per source
- patient_record: unique natural key (source_record_id, source_system)
- audit_log: append-only
- quality_metrics: unique (period, source_system)
"""

from .connection import DatabaseConnectionPool

TABLES = ("quality_metrics", "audit_log", "patient_record", "sync_batch")

DDL_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS sync_batch (
        batch_id            VARCHAR(255) PRIMARY KEY,
        source_system       VARCHAR(255) NOT NULL,
        base_endpoint       TEXT NOT NULL,
        page_size           INTEGER NOT NULL DEFAULT 50,
        started_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        ended_at            TIMESTAMPTZ,
        total_records       INTEGER NOT NULL DEFAULT 0 CHECK (total_records >= 0),
        successful_records  INTEGER NOT NULL DEFAULT 0 CHECK (successful_records >= 0),
        failed_records      INTEGER NOT NULL DEFAULT 0 CHECK (failed_records >= 0),
        status              VARCHAR(20) NOT NULL DEFAULT 'running'
                            CHECK (status IN ('running', 'completed', 'failed', 'cancelled')),
        last_processed_page INTEGER NOT NULL DEFAULT 0 CHECK (last_processed_page >= 0),
        next_cursor         TEXT,
        error_message       TEXT,
        cancel_requested    BOOLEAN NOT NULL DEFAULT FALSE,
        resumed_from        VARCHAR(255) REFERENCES sync_batch (batch_id),
        updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    # Single active batch per source: a second running insert for the same
    # source violates this index.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_batch_running_source
        ON sync_batch (source_system) WHERE status = 'running'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sync_batch_status ON sync_batch (status, started_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS patient_record (
        id                  BIGSERIAL PRIMARY KEY,
        source_record_id    VARCHAR(255) NOT NULL,
        source_system       VARCHAR(255) NOT NULL,
        document            JSONB NOT NULL,
        quality_score       DOUBLE PRECISION NOT NULL
                            CHECK (quality_score >= 0 AND quality_score <= 1),
        quality_flags       JSONB NOT NULL DEFAULT '[]'::jsonb,
        batch_id            VARCHAR(255) NOT NULL REFERENCES sync_batch (batch_id),
        processed_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT uq_patient_record_natural_key UNIQUE (source_record_id, source_system)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_patient_record_source_processed
        ON patient_record (source_system, processed_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        log_id              BIGSERIAL PRIMARY KEY,
        operation_type      VARCHAR(20) NOT NULL
                            CHECK (operation_type IN ('fetch', 'validate', 'transform', 'store',
                                                      'error', 'retry', 'batch_start', 'batch_end')),
        resource_type       VARCHAR(50) NOT NULL,
        resource_id         VARCHAR(255),
        status              VARCHAR(10) NOT NULL
                            CHECK (status IN ('success', 'error', 'warning', 'info')),
        duration_ms         DOUBLE PRECISION,
        error_details       JSONB,
        metadata            JSONB,
        batch_id            VARCHAR(255),
        created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_log_created_at ON audit_log (created_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_log_operation ON audit_log (operation_type, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_log_batch ON audit_log (batch_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS quality_metrics (
        id                      BIGSERIAL PRIMARY KEY,
        period                  DATE NOT NULL,
        source_system           VARCHAR(255) NOT NULL,
        total_records           INTEGER NOT NULL DEFAULT 0,
        average_quality_score   DOUBLE PRECISION,
        high_quality_count      INTEGER NOT NULL DEFAULT 0,
        medium_quality_count    INTEGER NOT NULL DEFAULT 0,
        low_quality_count       INTEGER NOT NULL DEFAULT 0,
        validation_errors       INTEGER NOT NULL DEFAULT 0,
        validation_warnings     INTEGER NOT NULL DEFAULT 0,
        computed_at             TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT uq_quality_metrics_period_source UNIQUE (period, source_system)
    )
    """,
]


class SchemaManager:
    """
    Manages DDL for the sync store.

    Handles:
    - Creating tables and indexes (idempotent)
    - Truncating tables between test runs
    - Listing which pipeline tables exist
    """

    def __init__(self, pool: DatabaseConnectionPool):
        """
        Initialize schema manager.

        Args:
            pool: Database connection pool
        """
        self.pool = pool

    def create_tables(self) -> None:
        """Create all tables and indexes in one transaction."""
        with self.pool.get_connection() as conn:
            with conn.cursor() as cur:
                for statement in DDL_STATEMENTS:
                    cur.execute(statement)

    def truncate_tables(self) -> None:
        """Remove all rows from every pipeline table."""
        with self.pool.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"TRUNCATE TABLE {', '.join(TABLES)} RESTART IDENTITY CASCADE")

    def existing_tables(self) -> list[str]:
        """
        List the pipeline tables present in the current schema.

        Returns:
            Table names, sorted
        """
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = current_schema()
              AND table_name = ANY(%s)
            ORDER BY table_name
        """
        rows = self.pool.execute_query(query, (list(TABLES),))
        return [row["table_name"] for row in rows]
