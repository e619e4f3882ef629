"""
QualityMetricsAggregate model: periodic quality rollup per source system.
"""

from datetime import date, datetime

from pydantic import BaseModel, Field


class QualityMetricsAggregate(BaseModel):
    """
    Derived rollup, recomputable from patient_record and audit_log.

    Tier counts: high = excellent + good (>= 0.7), medium = fair
    ([0.5, 0.7)), low = poor (< 0.5).
    """

    period: date
    source_system: str
    total_records: int = Field(0, ge=0)
    average_quality_score: float | None = Field(None, ge=0.0, le=1.0)
    high_quality_count: int = Field(0, ge=0)
    medium_quality_count: int = Field(0, ge=0)
    low_quality_count: int = Field(0, ge=0)
    validation_errors: int = Field(0, ge=0)
    validation_warnings: int = Field(0, ge=0)
    computed_at: datetime | None = None
