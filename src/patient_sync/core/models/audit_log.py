"""
AuditLogEntry model: an immutable fact about one pipeline operation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class OperationType(str, Enum):
    FETCH = "fetch"
    VALIDATE = "validate"
    TRANSFORM = "transform"
    STORE = "store"
    ERROR = "error"
    RETRY = "retry"
    BATCH_START = "batch_start"
    BATCH_END = "batch_end"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class AuditLogEntry(BaseModel):
    """
    Append-only audit entry, one per notable operation.

    Attributes:
        log_id: Auto-increment primary key (None until persisted)
        operation_type: fetch, validate, transform, store, error, retry,
            batch_start or batch_end
        resource_type: Kind of resource the operation touched ("batch", "page", "patient")
        resource_id: Id of that resource, if any
        status: success, error, warning or info
        duration_ms: Execution duration in milliseconds
        error_details: Structured error information
        metadata: Structured context (page number, outcome, flags...)
        batch_id: Owning batch
        created_at: When the entry was recorded
    """

    log_id: int | None = None
    operation_type: OperationType
    resource_type: str = Field(..., min_length=1)
    resource_id: str | None = None
    status: AuditStatus
    duration_ms: float | None = Field(None, ge=0.0)
    error_details: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    batch_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
