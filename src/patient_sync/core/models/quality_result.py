"""
QualityResult model: outcome of scoring one document (ephemeral).
"""

from enum import Enum

from pydantic import BaseModel, Field


class QualityTier(str, Enum):
    """Reporting buckets derived from the continuous score."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class QualityFlag(str, Enum):
    TEST_DATA = "test_data"
    MISSING_ID = "missing_id"
    MISSING_NAME = "missing_name"
    MISSING_GENDER = "missing_gender"
    MISSING_BIRTHDATE = "missing_birthdate"
    MISSING_ADDRESS = "missing_address"
    MISSING_CONTACT = "missing_contact"
    MISSING_IDENTIFIER = "missing_identifier"


# Flags that count as validation errors in the metrics rollup; all others are warnings.
ERROR_FLAGS = frozenset({QualityFlag.MISSING_ID, QualityFlag.MISSING_NAME})


class QualityResult(BaseModel):
    """
    Score, flags and per-category breakdown for one document.

    Note: not persisted as-is; score and flags are stored on PatientRecord.
    """

    score: float = Field(..., ge=0.0, le=1.0)
    flags: set[QualityFlag] = Field(default_factory=set)
    category_scores: dict[str, float] = Field(default_factory=dict)
    tier: QualityTier

    @property
    def is_test_data(self) -> bool:
        return QualityFlag.TEST_DATA in self.flags

    @property
    def has_errors(self) -> bool:
        return bool(self.flags & ERROR_FLAGS)

    @property
    def has_warnings(self) -> bool:
        return bool(self.flags - ERROR_FLAGS)

    def flag_names(self) -> list[str]:
        """Sorted flag values, stable for storage."""
        return sorted(flag.value for flag in self.flags)
