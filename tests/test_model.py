"""
Tests for DataModel construction, validation, updates and serialization.
"""

import sys
import json
import logging

import pytest

import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tabledata import (
    ArrayField, ComputedValue, DataModel, DataModelValidationError, DocumentIdField,
    NumberField, ObjectField, SchemaField, StringField,
)
from tabledata.utils import deep_clone


# ============================================================
# Models
# ============================================================

class Calendar(DataModel):
    @classmethod
    def define_schema(cls):
        return {
            "name": StringField(required=True, blank=False, initial="Gregorian"),
            "year": NumberField(integer=True, initial=0),
            "month": NumberField(integer=True, initial=1,
                                 validate=lambda value, options: value is None or value <= 12),
        }


class Journal(DataModel):
    @classmethod
    def define_schema(cls):
        return {
            "title": StringField(required=True, blank=False, initial="Untitled"),
            "subtitle": StringField(),
            "tags": ArrayField(StringField(blank=False)),
            "flags": ObjectField(),
        }


class Sheet(DataModel):
    @classmethod
    def define_schema(cls):
        return {
            "abilities": SchemaField({
                "str": NumberField(integer=True, initial=10),
                "dex": NumberField(integer=True, initial=10),
            }),
            "notes": StringField(initial=""),
        }


class DateRange(DataModel):
    @classmethod
    def define_schema(cls):
        return {
            "start": NumberField(initial=0),
            "end": NumberField(initial=0),
        }

    @classmethod
    def validate_joint(cls, data):
        if data["end"] < data["start"]:
            raise ValueError("end must not precede start")


class Record(DataModel):
    @classmethod
    def define_schema(cls):
        return {
            "_id": DocumentIdField(),
            "code": StringField(readonly=True, initial="abc"),
            "count": NumberField(initial=0),
        }


class UpperField(StringField):
    def initialize(self, value, model, options=None):
        return ComputedValue(lambda: model._source["name"].upper())


class Shout(DataModel):
    @classmethod
    def define_schema(cls):
        return {
            "name": StringField(initial="hi"),
            "loud": UpperField(initial=""),
        }


class Legacy(DataModel):
    @classmethod
    def define_schema(cls):
        return {
            "title": StringField(initial=""),
            "pages": NumberField(integer=True, initial=0),
        }

    @classmethod
    def migrate_data(cls, source):
        cls._add_data_field_migration(source, "name", "title")
        cls._add_data_field_migration(source, "meta.pages", "pages")
        return super().migrate_data(source)


class Broken(DataModel):
    @classmethod
    def define_schema(cls):
        return {"value": NumberField(initial=0)}

    @classmethod
    def migrate_data(cls, source):
        raise RuntimeError("corrupt")


class Renamed(DataModel):
    SHIMS = {"title": "name"}

    @classmethod
    def define_schema(cls):
        return {"name": StringField(initial="x")}


# ============================================================
# Test: Construction
# ============================================================

class TestConstruction:

    def test_defaults(self):
        calendar = Calendar()
        assert calendar.name == "Gregorian"
        assert calendar.year == 0
        assert calendar.month == 1
        assert calendar.parent is None
        assert calendar.invalid is False

    def test_from_other_model(self):
        calendar = Calendar({"year": 1492})
        assert Calendar(calendar).to_object() == calendar.to_object()

    def test_non_object_data(self):
        with pytest.raises(TypeError, match="incorrectly constructed with a Array instead of an object"):
            Calendar([1, 2])
        with pytest.raises(TypeError, match="with a str"):
            Calendar("abc")

    def test_invalid_parent(self):
        with pytest.raises(TypeError, match="must be a DataModel instance"):
            Calendar({}, parent=object())

    def test_missing_schema(self):
        class NoSchema(DataModel):
            pass

        with pytest.raises(NotImplementedError, match="must define its Document schema"):
            NoSchema()

    def test_field_name_conflict(self):
        with pytest.raises(TypeError, match="conflicts with an attribute"):
            class Bad(DataModel):
                @classmethod
                def define_schema(cls):
                    return {"validate": NumberField()}

    def test_schema_is_cached_per_class(self):
        assert Calendar.schema is Calendar.schema
        assert Calendar().schema is Calendar.schema
        assert Calendar.schema.keys() == ["name", "year", "month"]

    def test_localization_prefixes_default(self):
        assert Calendar.LOCALIZATION_PREFIXES == []


class TestStrictAndLenient:

    def test_strict_raises(self):
        with pytest.raises(DataModelValidationError) as excinfo:
            Calendar({"month": 13}, strict=True)
        assert "Calendar validation errors:" in str(excinfo.value)
        assert "month: is not a valid value" in str(excinfo.value)
        assert excinfo.value.get_failure("month").invalid_value == 13

    def test_lenient_repairs_to_initial(self, caplog):
        with caplog.at_level(logging.WARNING, logger="tabledata"):
            calendar = Calendar({"month": 13}, strict=False)
        assert calendar.invalid is False
        assert calendar.month == 1
        assert calendar._source["month"] == 1
        assert calendar.validation_failures.fields.fields["month"].fallback == 1
        assert "Calendar validation errors:" in caplog.text

    def test_from_source_is_lenient(self):
        assert Calendar.from_source({"month": 13}).month == 1

    def test_unrepairable_stays_invalid(self):
        class Strictish(DataModel):
            @classmethod
            def define_schema(cls):
                return {"code": StringField(required=True, blank=False)}

        model = Strictish({}, strict=False)
        assert model.invalid is True
        assert model.validate(strict=False) is False


# ============================================================
# Test: Source Integrity
# ============================================================

class TestSealedSource:

    def test_key_set_is_frozen(self):
        calendar = Calendar()
        with pytest.raises(TypeError):
            calendar._source["day"] = 1
        with pytest.raises(TypeError):
            del calendar._source["year"]
        assert set(calendar._source) == {"name", "year", "month"}

    def test_absent_schema_key_cannot_be_added(self):
        journal = Journal()
        assert "subtitle" not in journal._source
        with pytest.raises(TypeError):
            journal._source["subtitle"] = "sneaky"
        assert set(journal._source) == {"title", "tags", "flags"}

    def test_existing_keys_writable(self):
        calendar = Calendar()
        calendar._source["year"] = 5
        assert calendar._source["year"] == 5

    def test_source_and_parent_are_read_only(self):
        calendar = Calendar()
        with pytest.raises(AttributeError):
            calendar._source = {}
        with pytest.raises(AttributeError):
            calendar.parent = Calendar()


class TestCleaning:

    def test_round_trip(self):
        source = {"name": "Harptos", "year": 1492, "month": 3}
        cleaned = Calendar.clean_data(deep_clone(source))
        assert Calendar.from_source(source).to_object(True) == cleaned

    def test_idempotent(self):
        raw = {"name": "  Harptos ", "year": "1492", "month": 2.6, "era": "DR"}
        first = Calendar.clean_data(deep_clone(raw))
        second = Calendar.clean_data(deep_clone(first))
        assert first == {"name": "Harptos", "year": 1492, "month": 3}
        assert second == first


# ============================================================
# Test: Instance Attributes
# ============================================================

class TestInitialization:

    def test_readonly_fields(self):
        record = Record({"_id": "a" * 16})
        assert record._id == "a" * 16
        with pytest.raises(AttributeError):
            record._id = "b" * 16
        with pytest.raises(AttributeError):
            record.code = "x"
        assert record.code == "abc"

    def test_reset(self):
        record = Record()
        record.count = 5
        record.reset()
        assert record.count == 0

    def test_missing_id_is_none(self):
        assert Record()._id is None

    def test_undefined_values_are_none(self):
        assert Journal().subtitle is None

    def test_computed_values(self):
        shout = Shout({"name": "hey"})
        assert shout.loud == "HEY"
        shout.loud = "quiet"
        assert shout.loud == "HEY"
        shout.update_source({"name": "yo"})
        assert shout.loud == "YO"
        assert shout.to_object(False)["loud"] == "YO"


# ============================================================
# Test: Validation
# ============================================================

class TestJointValidation:

    def test_strict_joint_failure(self):
        with pytest.raises(DataModelValidationError) as excinfo:
            DateRange({"start": 5, "end": 1})
        assert "DateRange Joint Validation Error:\nend must not precede start" in str(excinfo.value)
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_lenient_joint_failure(self):
        date_range = DateRange({"start": 5, "end": 1}, strict=False)
        assert date_range.invalid is True
        assert date_range.validation_failures.joint.unresolved is True
        assert date_range.validation_failures.fields is None

    def test_update_checks_joint_state(self):
        date_range = DateRange({"start": 1, "end": 5})
        with pytest.raises(DataModelValidationError):
            date_range.update_source({"end": 0})
        assert date_range.end == 5
        assert date_range._source["end"] == 5

    def test_validate_returns_bool(self):
        assert DateRange({"start": 1, "end": 5}).validate() is True

    def test_validate_changes_with_clean(self):
        calendar = Calendar()
        changes = {"month": "4"}
        assert calendar.validate(changes=changes, clean=True) is True
        assert changes == {"month": 4}


# ============================================================
# Test: Updates
# ============================================================

class TestUpdateSource:

    def test_diff_is_minimal(self):
        calendar = Calendar({"year": 1492})
        diff = calendar.update_source({"year": calendar.year, "month": 5})
        assert diff == {"month": 5}
        assert calendar.month == 5
        assert calendar._source["month"] == 5

    def test_noop_update(self):
        journal = Journal({"title": "A", "flags": {"core": {"x": 1}}})
        flags = journal.flags
        assert journal.update_source({}) == {}
        assert journal.update_source({"title": "A"}) == {}
        assert journal.flags is flags

    def test_dry_run(self):
        calendar = Calendar({"year": 1492})
        before = calendar.to_object()
        diff = calendar.update_source({"year": 1500, "month": 2}, dry_run=True)
        assert diff == {"year": 1500, "month": 2}
        assert calendar.to_object() == before
        assert calendar.year == 1492
        assert calendar.month == 1

    def test_rejected_update_is_all_or_nothing(self):
        calendar = Calendar({"year": 1492, "month": 1})
        with pytest.raises(DataModelValidationError):
            calendar.update_source({"year": 1493, "month": 13})
        assert calendar._source["month"] == 1
        assert calendar._source["year"] == 1492
        assert calendar.month == 1

    def test_update_is_strict_for_lenient_models(self):
        calendar = Calendar.from_source({})
        with pytest.raises(DataModelValidationError):
            calendar.update_source({"month": 13})

    def test_dot_notation_changes_are_expanded_in_place(self):
        sheet = Sheet()
        changes = {"abilities.str": 14}
        diff = sheet.update_source(changes)
        assert diff == {"abilities": {"str": 14}}
        assert changes == {"abilities": {"str": 14}}
        assert sheet.abilities == {"str": 14, "dex": 10}

    def test_changes_are_cleaned(self):
        calendar = Calendar()
        assert calendar.update_source({"year": "1200", "era": "DR"}) == {"year": 1200}

    def test_nested_object_deletion(self):
        journal = Journal({"flags": {"a": 1, "b": 2}})
        diff = journal.update_source({"flags": {"-=a": None}})
        assert diff == {"flags": {"-=a": None}}
        assert journal.flags == {"b": 2}
        assert journal._source["flags"] == {"b": 2}

    def test_top_level_deletion_and_restore(self):
        journal = Journal({"subtitle": "x"})
        assert journal.update_source({"-=subtitle": None}) == {"-=subtitle": None}
        assert "subtitle" not in journal._source
        assert journal.subtitle is None

        assert journal.update_source({"subtitle": "y"}) == {"subtitle": "y"}
        assert journal.subtitle == "y"

    def test_force_replace(self):
        journal = Journal({"flags": {"a": 1}})
        diff = journal.update_source({"==flags": {"z": 1}})
        assert diff == {"==flags": {"z": 1}}
        assert journal.flags == {"z": 1}

    def test_non_recursive_object_update(self):
        journal = Journal({"flags": {"a": 1}})
        journal.update_source({"flags": {"z": 1}}, recursive=False)
        assert journal.flags == {"z": 1}

    def test_array_replacement_keeps_source_identity(self):
        journal = Journal({"tags": ["a", "b"]})
        tags = journal._source["tags"]
        assert journal.update_source({"tags": ["a", "c"]}) == {"tags": ["a", "c"]}
        assert journal._source["tags"] is tags
        assert journal.tags == ["a", "c"]
        assert journal.update_source({"tags": ["a", "c"]}) == {}


# ============================================================
# Test: Serialization
# ============================================================

class TestSerialization:

    def test_to_object_is_a_copy(self):
        journal = Journal({"flags": {"a": 1}})
        data = journal.to_object()
        data["flags"]["a"] = 2
        assert journal._source["flags"] == {"a": 1}

    def test_json_round_trip(self):
        calendar = Calendar({"name": "Harptos", "year": 1492})
        assert json.loads(calendar.to_json()) == calendar.to_object()
        restored = Calendar.from_json(calendar.to_json())
        assert restored.to_object() == calendar.to_object()

    def test_clone(self):
        calendar = Calendar({"year": 1492, "month": 3})
        copy = calendar.clone({"month": 4})
        assert copy is not calendar
        assert copy.month == 4
        assert copy.year == 1492
        assert calendar.month == 3

    def test_clone_with_parent_override(self):
        calendar = Calendar({"year": 1492})
        owner = Journal()
        copy = calendar.clone(parent=owner)
        assert copy.parent is owner
        assert copy.year == 1492
        assert calendar.parent is None

    def test_clone_cannot_add_keys(self):
        journal = Journal({"flags": {"a": 1}})
        copy = journal.clone({"era": "DR", "flags": {"-=a": None}})
        assert "era" not in copy.to_object()
        assert copy.flags == {}

    def test_repr(self):
        assert repr(Calendar()) == "Calendar(name='Gregorian', year=0, month=1)"


# ============================================================
# Test: Migration and Shims
# ============================================================

class TestMigration:

    def test_field_migration(self):
        legacy = Legacy({"name": "Tome", "meta": {"pages": 12}})
        assert legacy.title == "Tome"
        assert legacy.pages == 12
        assert "name" not in legacy._source

    def test_migration_is_idempotent(self):
        source = {"title": "Tome", "pages": 3}
        Legacy.migrate_data(source)
        assert source == {"title": "Tome", "pages": 3}

    def test_failed_migration_is_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="tabledata"):
            broken = Broken({"value": 3})
        assert broken.value == 3
        assert "Failed data migration for Broken: corrupt" in caplog.text

    def test_shim_alias(self, caplog):
        renamed = Renamed({"name": "Tome"})
        with caplog.at_level(logging.WARNING, logger="tabledata"):
            assert renamed._source["title"] == "Tome"
        assert "has been migrated" in caplog.text
        assert "title" not in renamed._source
        assert renamed.to_object() == {"name": "Tome"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
