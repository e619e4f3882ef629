"""
PostgreSQL persistence: connection pool, DDL, batches, records, audit and rollups.
"""

from .audit import AuditLogger
from .batch_store import BatchStore
from .connection import DatabaseConnectionPool
from .quality_metrics import MetricsAggregator
from .schema_mgmt import SchemaManager
from .upsert import PatientRecordWriter

__all__ = [
    "AuditLogger",
    "BatchStore",
    "DatabaseConnectionPool",
    "MetricsAggregator",
    "PatientRecordWriter",
    "SchemaManager",
]
