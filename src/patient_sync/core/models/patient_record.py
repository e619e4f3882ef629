"""
PatientRecord model representing one persisted, scored patient document.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class PatientRecord(BaseModel):
    """
    Scored patient document keyed by (source_record_id, source_system).

    The document itself is kept opaque: its shape varies by source, so only
    the outer record fields are typed.

    Attributes:
        source_record_id: Record id in the source system (natural key part 1)
        source_system: Source system name (natural key part 2)
        document: Raw patient document as received
        quality_score: Weighted quality score in [0, 1]
        quality_flags: Flags raised by the scorer (test_data, missing_birthdate, ...)
        batch_id: Batch that last wrote this record
        processed_at: When the record was last scored
        created_at: First insert time
        updated_at: Last write time
    """

    source_record_id: str = Field(..., min_length=1)
    source_system: str = Field(..., min_length=1)
    document: dict[str, Any]
    quality_score: float = Field(..., ge=0.0, le=1.0)
    quality_flags: list[str] = Field(default_factory=list)
    batch_id: str
    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime | None = None
    updated_at: datetime | None = None
