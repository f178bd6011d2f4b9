"""Tests for subscription filter evaluation."""

import pytest

from core.errors import ConfigurationError
from gallery_pipeline.routing import (
    AllowListFilter,
    MatchAllFilter,
    allow_list,
    filter_from_policy,
    matches,
)


class TestMatches:
    def test_none_matches_everything(self):
        assert matches(None, {})
        assert matches(None, {"eventName": "ObjectCreated:Put"})

    def test_match_all(self):
        assert matches(MatchAllFilter(), {})

    def test_value_in_allow_list(self):
        f = allow_list("metadata_type", ["Caption", "Date", "name"])

        assert matches(f, {"metadata_type": "Caption"})
        assert matches(f, {"metadata_type": "name"})

    def test_value_outside_allow_list(self):
        f = allow_list("metadata_type", ["Caption", "Date", "name"])
        assert not matches(f, {"metadata_type": "Location"})

    def test_comparison_is_case_sensitive(self):
        f = allow_list("metadata_type", ["name"])
        assert not matches(f, {"metadata_type": "Name"})

    def test_missing_attribute_is_non_match(self):
        """A missing attribute never raises."""
        f = allow_list("message_type", ["StatusUpdate"])
        assert not matches(f, {"eventName": "ObjectCreated:Put"})

    def test_numbers_compare_numerically(self):
        f = allow_list("priority", [3])

        assert matches(f, {"priority": 3})
        assert matches(f, {"priority": 3.0})

    def test_string_never_equals_number(self):
        assert not matches(allow_list("priority", [3]), {"priority": "3"})
        assert not matches(allow_list("priority", ["3"]), {"priority": 3})


class TestAllowListFilter:
    def test_values_stored_as_tuple(self):
        f = AllowListFilter(field="eventName", values=["ObjectCreated:Put"])

        assert f.values == ("ObjectCreated:Put",)
        assert f.kind == "allow_list"

    def test_is_hashable_data(self):
        """Filters are plain values: equal filters compare and hash equal."""
        assert allow_list("a", ["x"]) == allow_list("a", ("x",))
        assert hash(allow_list("a", ["x"])) == hash(allow_list("a", ("x",)))

    def test_empty_field_rejected(self):
        with pytest.raises(ConfigurationError):
            allow_list("", ["x"])

    @pytest.mark.parametrize("value", [True, None, ["nested"]])
    def test_non_scalar_values_rejected(self, value):
        with pytest.raises(ConfigurationError):
            allow_list("field", [value])


class TestFilterFromPolicy:
    def test_empty_policy_matches_all(self):
        assert isinstance(filter_from_policy(None), MatchAllFilter)
        assert isinstance(filter_from_policy({}), MatchAllFilter)

    def test_single_attribute_policy(self):
        f = filter_from_policy({"message_type": ["StatusUpdate"]})
        assert f == allow_list("message_type", ["StatusUpdate"])

    def test_scalar_value_wrapped(self):
        f = filter_from_policy({"message_type": "StatusUpdate"})
        assert f.values == ("StatusUpdate",)

    def test_multiple_attributes_rejected(self):
        with pytest.raises(ConfigurationError, match="exactly one attribute"):
            filter_from_policy({"a": ["x"], "b": ["y"]})
