"""
Tests for the object helpers, sealed sources and validation failures.
"""

import sys
import math

import pytest

import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tabledata import SourceData, ValidationFailure, DataModelValidationError
from tabledata.config import get_option
from tabledata.source import assign_key, discard_key, is_sealed
from tabledata.utils import (
    apply_special_keys,
    deep_clone,
    diff_object,
    expand_object,
    get_property,
    is_deletion_key,
    is_valid_id,
    merge_object,
    random_id,
    set_property,
    type_name,
    values_equal,
)


# ============================================================
# Test: Equality and Cloning
# ============================================================

class TestValuesEqual:

    def test_bool_is_not_int(self):
        assert values_equal(True, 1) is False
        assert values_equal(0, False) is False

    def test_numbers(self):
        assert values_equal(1, 1.0)
        assert values_equal(math.nan, math.nan)

    def test_nested(self):
        assert values_equal([1, {"a": True}], [1, {"a": True}])
        assert not values_equal({"a": 1}, {"a": 1, "b": 2})
        assert not values_equal([1, 2], [2, 1])


class TestDeepClone:

    def test_nested_copy(self):
        original = {"a": [1, {"b": 2}], "c": {3, 4}}
        clone = deep_clone(original)
        assert clone == original
        assert clone["a"] is not original["a"]
        assert clone["a"][1] is not original["a"][1]

    def test_source_data_becomes_dict(self):
        clone = deep_clone(SourceData({"a": {"b": 1}}))
        assert type(clone) is dict
        assert clone == {"a": {"b": 1}}

    def test_cyclical_structure(self):
        a = {}
        a["self"] = a
        with pytest.raises(RecursionError):
            deep_clone(a)


# ============================================================
# Test: Special Keys, Diff, Merge, Expand
# ============================================================

class TestSpecialKeys:

    def test_is_deletion_key(self):
        assert is_deletion_key("-=a")
        assert is_deletion_key("==a")
        assert not is_deletion_key("-=")
        assert not is_deletion_key("a=b")

    def test_apply_special_keys(self):
        result = apply_special_keys({"a": 1, "-=b": None, "==c": {"d": 1}})
        assert result == {"a": 1, "c": {"d": 1}}

    def test_deletion_value_must_be_none(self):
        with pytest.raises(ValueError, match="-= deletion syntax"):
            apply_special_keys({"-=b": 5})


class TestDiffObject:

    def test_only_changed_leaves(self):
        original = {"a": 1, "b": {"c": 2, "d": 3}}
        other = {"a": 1, "b": {"c": 5, "d": 3}}
        assert diff_object(original, other) == {"b": {"c": 5}}

    def test_deletion_keys(self):
        diff = diff_object({"a": 1}, {"-=a": None, "-=z": None}, deletion_keys=True)
        assert diff == {"-=a": None}

    def test_no_changes(self):
        assert diff_object({"a": [1, 2]}, {"a": [1, 2]}) == {}


class TestMergeObject:

    def test_insert_keys(self):
        assert merge_object({"k1": "v1"}, {"k2": "v2"}) == {"k1": "v1", "k2": "v2"}

    def test_no_insert_keys(self):
        assert merge_object({"a": 1}, {"b": 2}, insert_keys=False) == {"a": 1}

    def test_perform_deletions(self):
        merged = merge_object({"a": 1, "b": {"c": 2}}, {"b": {"-=c": None}}, perform_deletions=True)
        assert merged == {"a": 1, "b": {}}

    def test_dot_notation(self):
        assert merge_object({"a": {"b": 1}}, {"a.c": 2}) == {"a": {"b": 1, "c": 2}}

    def test_not_inplace(self):
        original = {"a": {"b": 1}}
        merged = merge_object(original, {"a": {"b": 2}}, inplace=False)
        assert merged == {"a": {"b": 2}}
        assert original == {"a": {"b": 1}}

    def test_enforce_types(self):
        with pytest.raises(TypeError):
            merge_object({"a": 1}, {"a": "x"}, enforce_types=True)


class TestProperties:

    def test_expand_object(self):
        assert expand_object({"a.b": 1, "c": 2}) == {"a": {"b": 1}, "c": 2}

    def test_set_and_get(self):
        obj = {}
        assert set_property(obj, "a.b", 1) is True
        assert set_property(obj, "a.b", 1) is False
        assert get_property(obj, "a.b") == 1
        assert get_property(obj, "a.z", "default") == "default"

    def test_skipped_properties(self):
        obj = {}
        assert set_property(obj, "__class__.x", 1) is False
        assert obj == {}


class TestIdentifiers:

    def test_random_id(self):
        value = random_id(16)
        assert is_valid_id(value)
        assert random_id(16) != value

    def test_invalid_ids(self):
        assert not is_valid_id("short")
        assert not is_valid_id("x" * 15 + "!")
        assert not is_valid_id(None)

    def test_type_name(self):
        assert type_name(None) == "null"
        assert type_name([]) == "Array"
        assert type_name("x") == "str"


# ============================================================
# Test: SourceData
# ============================================================

class TestSourceData:

    def test_sealed_key_set(self):
        source = SourceData({"a": 1}, allowed=("a", "b"))
        source.seal()
        assert is_sealed(source)

        source["a"] = 2
        assert source == {"a": 2}

        with pytest.raises(TypeError):
            source["b"] = 3
        with pytest.raises(TypeError):
            source["c"] = 4
        with pytest.raises(TypeError):
            source.update({"c": 4})
        with pytest.raises(TypeError):
            del source["a"]
        with pytest.raises(TypeError):
            source.pop("a")
        with pytest.raises(TypeError):
            source.clear()
        assert set(source) == {"a"}

    def test_unsealed_allows_changes(self):
        source = SourceData({"a": 1})
        source["z"] = 1
        del source["a"]
        assert source == {"z": 1}

    def test_assign_key_restores_schema_keys(self):
        source = SourceData({"a": 1}, allowed=("a", "b")).seal()
        assign_key(source, "b", 2)
        assert source == {"a": 1, "b": 2}
        with pytest.raises(TypeError):
            assign_key(source, "c", 3)

        plain = {}
        assign_key(plain, "c", 3)
        assert plain == {"c": 3}

    def test_discard_key(self):
        source = SourceData({"a": 1, "b": 2}).seal()
        discard_key(source, "a")
        assert source == {"b": 2}

    def test_copy_is_plain_dict(self):
        copy = SourceData({"a": 1}).seal().copy()
        assert type(copy) is dict
        copy["b"] = 2

    def test_alias(self):
        source = SourceData({"new": {"x": 1}})
        source.add_alias("old", "new.x")
        source.seal()
        assert source["old"] == 1
        assert "old" not in source
        with pytest.raises(TypeError):
            source.add_alias("other", "new")
        with pytest.raises(KeyError):
            source["missing"]


# ============================================================
# Test: ValidationFailure
# ============================================================

class TestValidationFailure:

    def _tree(self):
        root = ValidationFailure(message="Calendar validation errors:", unresolved=True)
        date = ValidationFailure()
        date.fields["month"] = ValidationFailure(invalid_value=13, message="must be at most 12", unresolved=True)
        root.fields["date"] = date
        return root

    def test_format(self):
        failure = ValidationFailure(message="M validation errors:")
        failure.fields["month"] = ValidationFailure(message="bad")
        assert str(failure) == "M validation errors:\n  month: bad"

    def test_has_unresolved(self):
        root = self._tree()
        root.unresolved = False
        assert root.has_unresolved()
        root.fields["date"].fields["month"].unresolved = False
        assert not root.has_unresolved()

    def test_to_object(self):
        obj = self._tree().to_object()
        assert obj["message"] == "Calendar validation errors:"
        assert obj["fields"]["date"]["fields"]["month"] == {
            "invalidValue": 13, "message": "must be at most 12", "unresolved": True,
        }

    def test_error_lookup(self):
        error = self._tree().as_error()
        assert isinstance(error, ValueError)
        assert "month: must be at most 12" in str(error)
        assert error.get_failure("date.month").invalid_value == 13
        assert error.get_failure("date.day") is None
        assert list(error.get_all_failures()) == ["date.month"]

    def test_element_lookup(self):
        root = ValidationFailure()
        root.elements.append({"id": 2, "failure": ValidationFailure(message="bad")})
        error = DataModelValidationError(root)
        assert error.get_failure("2").message == "bad"


# ============================================================
# Test: Options
# ============================================================

class TestOptions:

    def test_defaults(self):
        assert get_option(None, "strict") is True
        assert get_option({}, "recursive") is True
        assert get_option({"strict": False}, "strict") is False
        assert get_option({}, "unknown", 5) == 5


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
