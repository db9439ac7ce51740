"""
Tests for merging resolved profiles onto uploaded rows.
"""
import pytest

from api.services.identifier_extractor import DetectedFields
from api.services.row_merge import find_person_id, merge_outcomes, merge_row, merge_rows

pytestmark = pytest.mark.unit

FIELDS = DetectedFields(emails="Email", phones="Phone", addresses="Address")


class TestFindPersonId:

    def test_precedence_phone_email_address(self):
        row = {"Email": "a@x.com", "Phone": "555", "Address": "1 Main St"}
        identifiers = {"a@x.com": "p-email", "555": "p-phone", "1 main st": "p-address"}
        assert find_person_id(row, FIELDS, identifiers) == "p-phone"

    def test_falls_through_to_address(self):
        row = {"Email": "a@x.com", "Phone": "", "Address": " 1 Main St "}
        assert find_person_id(row, FIELDS, {"1 main st": "p-address"}) == "p-address"

    def test_explicit_column_wins(self):
        fields = DetectedFields(emails="Email", person_ids="pid")
        row = {"Email": "a@x.com", "pid": " p0 "}
        assert find_person_id(row, fields, {"a@x.com": "p1"}) == "p0"

    def test_blank_explicit_column_ignored(self):
        fields = DetectedFields(emails="Email", person_ids="pid")
        assert find_person_id({"Email": "a@x.com", "pid": ""}, fields, {"a@x.com": "p1"}) == "p1"

    def test_nothing_maps(self):
        assert find_person_id({"Email": "z@x.com"}, FIELDS, {}) is None


class TestMergeRow:

    def test_adds_profile_fields_without_overwriting(self):
        row = {"Email": "a@x.com", "title": "CEO", "city": ""}
        profile = {"title": "Engineer", "city": "Austin", "demographic": {"age_range": "35-44"}}

        merged = merge_row(row, "p1", profile)

        assert merged == {
            "Email": "a@x.com",
            "title": "CEO",
            "city": "Austin",
            "demographic_age_range": "35-44",
            "person_id": "p1",
        }
        assert row == {"Email": "a@x.com", "title": "CEO", "city": ""}

    def test_existing_person_id_kept(self):
        merged = merge_row({"person_id": "p-old"}, "p1", {})
        assert merged["person_id"] == "p-old"

    def test_no_profile_returns_copy(self):
        row = {"Email": "a@x.com"}
        merged = merge_row(row, "p1", None)
        assert merged == row
        assert merged is not row


class TestMergeRows:

    def test_order_and_length_preserved(self):
        rows = [{"Email": "b@x.com"}, {"Email": "a@x.com"}, {"Email": "nobody@x.com"}]
        identifiers = {"a@x.com": "p1", "b@x.com": "p2"}
        profiles = {"p1": {"name_first": "Ann"}, "p2": {"name_first": "Bob"}}

        merged = merge_rows(rows, FIELDS, identifiers, profiles)

        assert len(merged) == 3
        assert [r.get("name_first") for r in merged] == ["Bob", "Ann", None]

    def test_outcomes_flag_enrichment(self):
        rows = [{"Email": "a@x.com"}, {"Email": "b@x.com"}]
        outcomes = merge_outcomes(rows, FIELDS, {"a@x.com": "p1", "b@x.com": "p2"}, {"p1": {"x": "1"}})

        assert [o.index for o in outcomes] == [0, 1]
        assert [o.person_id for o in outcomes] == ["p1", "p2"]
        assert [o.enriched for o in outcomes] == [True, False]
