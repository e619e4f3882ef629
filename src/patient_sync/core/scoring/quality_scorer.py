"""
Quality scoring engine for patient documents.

Turns a loosely structured patient document into a score in [0, 1] as a
weighted sum of five independent category scores, plus a set of flags.
Scoring never rejects a record: flagged and incomplete records still get
stored, just with a lower score.
"""

from typing import Any

from patient_sync.core.exceptions import ScoringError
from patient_sync.core.models import QualityFlag, QualityResult, QualityTier

from .test_data_detector import TestDataDetector, render_names

DEFAULT_WEIGHTS: dict[str, float] = {
    "core_identity": 0.30,
    "demographics": 0.35,
    "contact": 0.20,
    "identifiers": 0.10,
    "data_flags": 0.05,
}

ADDRESS_FIELDS = ("line", "city", "district", "state", "postalCode", "country")
CONTACT_SYSTEMS = ("phone", "email")


def quality_tier(score: float) -> QualityTier:
    """Map a score to its reporting tier."""
    if score >= 0.9:
        return QualityTier.EXCELLENT
    if score >= 0.7:
        return QualityTier.GOOD
    if score >= 0.5:
        return QualityTier.FAIR
    return QualityTier.POOR


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def _as_list(document: dict[str, Any], field_name: str, allow_str: bool = False) -> list[Any]:
    """
    Read a repeating field, tolerating a single mapping in place of a list.

    Raises:
        ScoringError: If the field has a shape no scorer rule can read
    """
    value = document.get(field_name)
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    if allow_str and isinstance(value, str):
        return [value]
    raise ScoringError(
        f"Field '{field_name}' has unsupported type {type(value).__name__}",
        field_name=field_name,
    )


class QualityScorer:
    """
    Deterministic, side-effect-free quality scorer.

    Usage:
        scorer = QualityScorer()
        result = scorer.score(patient_document)
        result.score, result.flags, result.tier
    """

    def __init__(
        self,
        weights: dict[str, float] | None = None,
        detector: TestDataDetector | None = None,
    ):
        """
        Initialize scorer.

        Args:
            weights: Category weights; must cover every category and sum to 1.0
            detector: Test-data classifier (default patterns when None)

        Raises:
            ValueError: If weights are incomplete or do not sum to 1.0
        """
        weights = dict(weights or DEFAULT_WEIGHTS)
        if set(weights) != set(DEFAULT_WEIGHTS):
            raise ValueError(
                f"Weights must cover exactly {sorted(DEFAULT_WEIGHTS)}, got {sorted(weights)}"
            )
        if abs(sum(weights.values()) - 1.0) > 1e-6:
            raise ValueError(f"Weights must sum to 1.0, got {sum(weights.values())}")
        if any(w < 0 for w in weights.values()):
            raise ValueError("Weights must be non-negative")

        self.weights = weights
        self.detector = detector or TestDataDetector()

    def score(self, document: dict[str, Any]) -> QualityResult:
        """
        Score one patient document.

        Args:
            document: Patient document (FHIR Patient-shaped mapping)

        Returns:
            QualityResult with score, flags, per-category scores and tier

        Raises:
            ScoringError: If the document is not a mapping or a field is malformed
        """
        if not isinstance(document, dict):
            raise ScoringError(f"Document must be a mapping, got {type(document).__name__}")

        flags: set[QualityFlag] = set()
        names = _as_list(document, "name", allow_str=True)

        categories = {
            "core_identity": self._score_core_identity(document, names, flags),
            "demographics": self._score_demographics(document, flags),
            "contact": self._score_contact(document, flags),
            "identifiers": self._score_identifiers(document, flags),
            "data_flags": self._score_data_flags(names, flags),
        }

        total = sum(categories[name] * weight for name, weight in self.weights.items())
        score = round(min(1.0, max(0.0, total)), 4)

        return QualityResult(
            score=score,
            flags=flags,
            category_scores=categories,
            tier=quality_tier(score),
        )

    def _score_core_identity(
        self, document: dict[str, Any], names: list[Any], flags: set[QualityFlag]
    ) -> float:
        score = 0.0
        if _present(document.get("id")):
            score += 0.5
        else:
            flags.add(QualityFlag.MISSING_ID)

        if render_names(names):
            score += 0.5
        else:
            flags.add(QualityFlag.MISSING_NAME)
        return score

    def _score_demographics(self, document: dict[str, Any], flags: set[QualityFlag]) -> float:
        present = 0
        if _present(document.get("gender")):
            present += 1
        else:
            flags.add(QualityFlag.MISSING_GENDER)

        if _present(document.get("birthDate")):
            present += 1
        else:
            flags.add(QualityFlag.MISSING_BIRTHDATE)

        addresses = _as_list(document, "address")
        if any(
            isinstance(a, dict) and any(_present(a.get(f)) for f in ADDRESS_FIELDS)
            for a in addresses
        ):
            present += 1
        else:
            flags.add(QualityFlag.MISSING_ADDRESS)

        return present / 3

    def _score_contact(self, document: dict[str, Any], flags: set[QualityFlag]) -> float:
        telecom = _as_list(document, "telecom")
        has_contact = any(
            isinstance(t, dict)
            and t.get("system") in CONTACT_SYSTEMS
            and _present(t.get("value"))
            for t in telecom
        )
        if not has_contact:
            flags.add(QualityFlag.MISSING_CONTACT)
            return 0.0
        return 1.0

    def _score_identifiers(self, document: dict[str, Any], flags: set[QualityFlag]) -> float:
        identifiers = _as_list(document, "identifier")
        if any(isinstance(i, dict) and _present(i.get("value")) for i in identifiers):
            return 1.0
        flags.add(QualityFlag.MISSING_IDENTIFIER)
        return 0.0

    def _score_data_flags(self, names: list[Any], flags: set[QualityFlag]) -> float:
        if self.detector.is_test_record(names):
            flags.add(QualityFlag.TEST_DATA)
            return 0.0
        return 1.0


_default_scorer: QualityScorer | None = None


def score_document(document: dict[str, Any]) -> QualityResult:
    """Score a document with the default weights and test-data patterns."""
    global _default_scorer
    if _default_scorer is None:
        _default_scorer = QualityScorer()
    return _default_scorer.score(document)
