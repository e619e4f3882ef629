"""
Core data models for the patient sync pipeline.

All models use Pydantic for runtime validation and type safety.
"""

from .audit_log import AuditLogEntry, AuditStatus, OperationType
from .patient_record import PatientRecord
from .processing_result import DocumentOutcome, PageResult, UpsertOutcome, UpsertResult
from .quality_metrics import QualityMetricsAggregate
from .quality_result import ERROR_FLAGS, QualityFlag, QualityResult, QualityTier
from .source_config import SourceConfig
from .sync_batch import BatchStatus, SyncBatch

__all__ = [
    "SyncBatch",
    "BatchStatus",
    "PatientRecord",
    "AuditLogEntry",
    "AuditStatus",
    "OperationType",
    "QualityMetricsAggregate",
    "QualityResult",
    "QualityTier",
    "QualityFlag",
    "ERROR_FLAGS",
    "SourceConfig",
    "UpsertOutcome",
    "UpsertResult",
    "DocumentOutcome",
    "PageResult",
]
