"""
Ephemeral results passed between the writer and the orchestrator.
"""

from enum import Enum

from pydantic import BaseModel, Field


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"


class UpsertResult(BaseModel):
    """Outcome of one natural-key upsert."""

    source_record_id: str
    source_system: str
    outcome: UpsertOutcome
    duration_ms: float = Field(0.0, ge=0.0)


class DocumentOutcome(BaseModel):
    """
    Result of scoring and storing one document from a page.

    Attributes:
        source_record_id: Natural key part, None when the document could not be keyed
        success: Whether the document was scored and stored
        score: Quality score, if scoring succeeded
        upsert_outcome: inserted or updated, if the write succeeded
        error_type: Exception class name on failure
        error_message: Exception message on failure
        systemic: Failure means the store is unavailable and the batch must stop
    """

    source_record_id: str | None = None
    success: bool
    score: float | None = None
    upsert_outcome: UpsertOutcome | None = None
    error_type: str | None = None
    error_message: str | None = None
    systemic: bool = False


class PageResult(BaseModel):
    """Counters for one processed page, folded into the batch by a single writer."""

    page_number: int
    total: int = 0
    successful: int = 0
    failed: int = 0
    next_cursor: str | None = None
    systemic_error: str | None = None
