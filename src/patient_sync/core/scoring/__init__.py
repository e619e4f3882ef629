"""
Patient document quality scoring.
"""

from .quality_scorer import DEFAULT_WEIGHTS, QualityScorer, quality_tier, score_document
from .test_data_detector import TestDataDetector

__all__ = [
    "QualityScorer",
    "TestDataDetector",
    "DEFAULT_WEIGHTS",
    "quality_tier",
    "score_document",
]
