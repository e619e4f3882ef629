"""
Unit tests for Bundle extraction.
"""

import pytest

from patient_sync.batch.readers import extract, next_link, source_record_id, validate_container
from patient_sync.core.exceptions import ParseError, ScoringError


class TestValidateContainer:
    """Tests for page container validation"""

    def test_bundle_accepted(self, make_bundle):
        page = make_bundle([])
        assert validate_container(page) is page

    @pytest.mark.parametrize(
        "raw_page",
        [
            None,
            [],
            "Bundle",
            {"resourceType": "OperationOutcome", "issue": []},
            {"entry": []},
            {"resourceType": "Bundle", "entry": {"resource": {}}},
            {"resourceType": "Bundle", "link": "next"},
        ],
    )
    def test_non_bundles_rejected(self, raw_page):
        with pytest.raises(ParseError):
            validate_container(raw_page, url="https://x.example/Patient")


class TestExtract:
    """Tests for document and cursor extraction"""

    def test_documents_and_next_cursor(self, make_bundle, make_patient):
        page = make_bundle([make_patient("a"), make_patient("b")], next_url="https://x.example/page2")

        documents, cursor = extract(page)

        assert [d["id"] for d in documents] == ["a", "b"]
        assert cursor == "https://x.example/page2"

    def test_last_page_has_no_cursor(self, make_bundle, make_patient):
        documents, cursor = extract(make_bundle([make_patient("a")]))
        assert len(documents) == 1
        assert cursor is None

    def test_empty_page(self, make_bundle):
        """Test that a page without entries yields no documents"""
        page = make_bundle([])
        del page["entry"]

        assert extract(page) == ([], None)

    def test_skips_other_resources_and_bad_entries(self, make_bundle, make_patient):
        page = make_bundle([make_patient("a")])
        page["entry"].extend([
            {"resource": {"resourceType": "OperationOutcome", "issue": []}},
            {"fullUrl": "no-resource"},
            {"resource": "not-a-mapping"},
            "junk",
        ])

        documents, _ = extract(page)

        assert [d["id"] for d in documents] == ["a"]

    def test_resource_type_configurable(self, make_bundle):
        page = make_bundle([{"resourceType": "Practitioner", "id": "pr-1"}])
        documents, _ = extract(page, resource_type="Practitioner")
        assert documents[0]["id"] == "pr-1"

    def test_next_link_ignores_other_relations(self):
        page = {
            "resourceType": "Bundle",
            "link": [
                {"relation": "self", "url": "https://x.example/1"},
                {"relation": "previous", "url": "https://x.example/0"},
            ],
        }
        assert next_link(page) is None


class TestSourceRecordId:
    """Tests for natural key derivation"""

    def test_uses_id(self, make_patient):
        assert source_record_id(make_patient("pat-9")) == "pat-9"

    def test_falls_back_to_first_identifier_value(self):
        document = {"identifier": [{"system": "mrn"}, {"value": " MRN-77 "}]}
        assert source_record_id(document) == "MRN-77"

    def test_blank_id_falls_back(self):
        assert source_record_id({"id": "  ", "identifier": [{"value": "MRN-1"}]}) == "MRN-1"

    def test_unkeyable_document_raises(self):
        with pytest.raises(ScoringError):
            source_record_id({"name": [{"family": "Nobody"}]})
