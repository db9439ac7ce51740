"""
Tests for loose JSON decoding and profile flattening.
"""
import copy

import pytest

from api.services.json_repair import decode_json, flatten_nested, flatten_profile

pytestmark = pytest.mark.unit


class TestDecodeJson:
    """Tests for decode_json."""

    def test_strict_json(self):
        assert decode_json('{"a": 1, "b": [1, 2]}') == {"a": 1, "b": [1, 2]}

    def test_single_quotes_and_bare_keys(self):
        assert decode_json("{name: 'John', age: 30}") == {"name": "John", "age": 30}

    def test_trailing_commas(self):
        assert decode_json('{"a": [1, 2,], "b": 3,}') == {"a": [1, 2], "b": 3}

    def test_python_literals(self):
        assert decode_json("{'ok': True, 'missing': None}") == {"ok": True, "missing": None}

    def test_control_characters(self):
        assert decode_json('{"note": "line\x01break"}') == {"note": "line break"}

    def test_combined_repairs(self):
        assert decode_json("{name: 'Ann', tags: ['a', 'b',],}") == {"name": "Ann", "tags": ["a", "b"]}

    def test_garbage_returns_none(self):
        assert decode_json("not json at all") is None

    @pytest.mark.parametrize("value", [None, "", "   ", 42, {"a": 1}])
    def test_non_string_or_empty_returns_none(self, value):
        assert decode_json(value) is None

    def test_never_raises_on_unbalanced_input(self):
        assert decode_json("{{{{[[[") is None


class TestFlatten:
    """Tests for flatten_nested and flatten_profile."""

    def test_nested_keys_joined_with_underscore(self):
        assert flatten_nested({"job": {"title": "CTO", "company": {"name": "Acme"}}}) == {
            "job_title": "CTO",
            "job_company_name": "Acme",
        }

    def test_value_leaf_with_cluster_id(self):
        flat = flatten_nested({"income": {"value": "100k+", "cluster_id": 42}})
        assert flat == {"income": "100k+", "income_cluster_id": "42"}

    def test_scalars_become_strings(self):
        flat = flatten_nested({"age": 30, "active": True, "pets": ["cat", "dog"], "nothing": None})
        assert flat == {"age": "30", "active": "true", "pets": "cat, dog", "nothing": ""}

    def test_json_domain_is_decoded(self):
        profile = {
            "t0.person_id": "p1",
            "demographic.json": "{gender: 'F', age_range: '35-44',}",
        }
        flat = flatten_profile(profile)
        assert flat["t0.person_id"] == "p1"
        assert flat["gender"] == "F"
        assert flat["age_range"] == "35-44"

    def test_undecodable_json_domain_kept_raw(self):
        flat = flatten_profile({"interest.json": "{{broken"})
        assert flat["interest.json"] == "{{broken"

    def test_dict_domain_flattened(self):
        flat = flatten_profile({"employment": {"title": "Engineer"}})
        assert flat == {"employment_title": "Engineer"}

    def test_flattening_twice_gives_same_record(self):
        profile = {
            "t0.person_id": "p1",
            "demographic.json": "{'age_range': '35-44', 'income': {'value': '100k+', 'cluster_id': 7},}",
            "finance": {"net_worth": {"value": "1M+", "cluster_id": 12}},
            "interests": ["golf", "sailing"],
        }
        snapshot = copy.deepcopy(profile)

        first = flatten_profile(profile)
        second = flatten_profile(profile)

        assert first == second
        assert profile == snapshot
        assert first["income"] == "100k+"
        assert first["income_cluster_id"] == "7"
        assert first["finance_net_worth_cluster_id"] == "12"
        assert first["interests"] == "golf, sailing"
