"""
Unit tests for the test-data detector.
"""

import pytest

from patient_sync.core.exceptions import ScoringError
from patient_sync.core.scoring import TestDataDetector
from patient_sync.core.scoring.test_data_detector import render_names


class TestTestDataDetector:
    """Tests for name-based test data detection"""

    @pytest.mark.parametrize(
        "name",
        [
            "Test Patient",
            "TEST",
            "testuser",
            "Sample Record",
            "demo account",
            "12345",
            "123 456",
            "Patient 42",
            "patient123",
            "John PATIENT 7",
        ],
    )
    def test_test_names_detected(self, name):
        assert TestDataDetector().is_test_name(name)

    @pytest.mark.parametrize(
        "name",
        ["Peter Chalmers", "", "   ", "Patience Smith", "Demetrius", "Anna 2nd"],
    )
    def test_real_names_pass(self, name):
        assert not TestDataDetector().is_test_name(name)

    def test_record_checks_every_rendering(self):
        """Test that given and family renderings are both checked"""
        names = [{"family": "Smith", "given": ["Demo"]}]
        assert TestDataDetector().is_test_record(names)

    def test_record_with_real_names(self):
        names = [{"family": "Chalmers", "given": ["Peter", "James"]}, {"text": "Jim Chalmers"}]
        assert not TestDataDetector().is_test_record(names)

    def test_custom_prefixes(self):
        detector = TestDataDetector(prefixes=("zz",))
        assert detector.is_test_name("ZZ Top")
        assert not detector.is_test_name("Test Person")

    def test_invalid_pattern_rejected(self):
        with pytest.raises(ValueError):
            TestDataDetector(pattern="patient(")


class TestRenderNames:
    """Tests for name rendering"""

    def test_mapping_renderings(self):
        rendered = render_names([{"text": "Dr Peter Chalmers", "family": "Chalmers", "given": ["Peter", "James"]}])
        assert rendered == ["Dr Peter Chalmers", "Chalmers", "Peter James", "Peter James Chalmers"]

    def test_plain_strings_and_junk(self):
        assert render_names(["Jane Doe", 42, None, {"given": "Solo"}]) == ["Jane Doe", "Solo"]

    def test_empty_entries_dropped(self):
        assert render_names([{"family": "", "given": []}, "  "]) == []

    def test_given_as_single_string(self):
        assert render_names([{"family": "Doe", "given": "Jane"}]) == ["Doe", "Jane", "Jane Doe"]

    def test_unusable_given_raises(self):
        with pytest.raises(ScoringError):
            render_names([{"family": "Smith", "given": 5}])
