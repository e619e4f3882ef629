"""
SyncBatch model representing one paginated extraction run.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class BatchStatus(str, Enum):
    """Lifecycle states of a batch. RUNNING is the only non-terminal state."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not BatchStatus.RUNNING

    def can_transition_to(self, target: "BatchStatus") -> bool:
        """Only running -> {completed, failed, cancelled} is allowed."""
        return self is BatchStatus.RUNNING and target.is_terminal


class SyncBatch(BaseModel):
    """
    One complete or partial run of paginated extraction from a single source.

    Attributes:
        batch_id: Opaque unique id (PK)
        source_system: Name of the source system being synced
        base_endpoint: Clinical API base URL
        page_size: Requested entries per page
        started_at: When the batch was created
        ended_at: Set exactly once, at finalization
        total_records: Documents seen so far
        successful_records: Documents scored and stored
        failed_records: Documents that failed scoring or storage
        status: running, completed, failed or cancelled
        last_processed_page: Number of pages fully processed
        next_cursor: URL of the next page to fetch (None once exhausted)
        error_message: Reason for a failed batch
        cancel_requested: External cancellation signal, checked between pages
        resumed_from: Terminal batch whose cursor seeded this batch
    """

    batch_id: str = Field(..., min_length=1, max_length=255)
    source_system: str = Field(..., min_length=1, max_length=255)
    base_endpoint: str
    page_size: int = Field(50, ge=1)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: datetime | None = None
    total_records: int = Field(0, ge=0)
    successful_records: int = Field(0, ge=0)
    failed_records: int = Field(0, ge=0)
    status: BatchStatus = BatchStatus.RUNNING
    last_processed_page: int = Field(0, ge=0)
    next_cursor: str | None = None
    error_message: str | None = None
    cancel_requested: bool = False
    resumed_from: str | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    class Config:
        json_schema_extra = {
            "example": {
                "batch_id": "9f1c2a7e4b6d4e0f8a3b5c7d9e1f2a3b",
                "source_system": "hapi_fhir_r4",
                "base_endpoint": "https://hapi.fhir.org/baseR4",
                "page_size": 50,
                "status": "running",
                "total_records": 150,
                "successful_records": 148,
                "failed_records": 2,
                "last_processed_page": 3,
                "next_cursor": "https://hapi.fhir.org/baseR4?_getpages=abc&_getpagesoffset=150&_count=50",
            }
        }
