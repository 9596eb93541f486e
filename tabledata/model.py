"""
DataModel implementation for tabledata.

A DataModel wraps a class-level SchemaField and owns a sealed ``_source``:
the canonical, cleaned, serializable representation of its data. Instance
attributes are derived from the source through each field's ``initialize``.

Lifecycle of a new instance:
- migrate the raw data (best effort, failures are logged)
- clean it through the schema and seal it as ``_source``
- validate fields and joint invariants (lenient unless ``strict=True``)
- initialize instance attributes in schema order

Mutation goes through ``update_source``, which diffs a safe copy of the
source against the changes, validates the diff and the resulting model, and
only then commits the diff to ``_source``.

Example:
    from tabledata import DataModel, NumberField, StringField

    class Calendar(DataModel):
        @classmethod
        def define_schema(cls):
            return {
                "name": StringField(required=True, initial="Gregorian"),
                "year": NumberField(integer=True, initial=0),
                "month": NumberField(integer=True, min=1, max=12, initial=1),
            }

    calendar = Calendar({"year": 1492})
    calendar.update_source({"month": 3})   # {"month": 3}
    calendar.to_object()                   # {"name": "Gregorian", "year": 1492, "month": 3}
"""

import inspect
import json as _json
import logging
from typing import Any, Callable, ClassVar, Dict, Iterator, List, NamedTuple, Optional, Tuple

from .fields import ComputedValue, DataField, SchemaField
from .source import SourceData, is_sealed
from .utils import (
    _MISSING,
    deep_clone,
    expand_object,
    get_property,
    has_property,
    is_deletion_key,
    merge_object,
    set_property,
    type_name,
)
from .validation_failure import ValidationFailure

logger = logging.getLogger(__name__)


# Global schema registry, keyed by concrete model class
_SCHEMA_REGISTRY: Dict[type, SchemaField] = {}

# Instance attributes which schema fields may never shadow
_RESERVED_NAMES = frozenset({"parent", "schema", "invalid", "validation_failures"})


class ValidationFailures(NamedTuple):
    """The most recent field and joint validation failures of a model."""
    fields: Optional[ValidationFailure]
    joint: Optional[ValidationFailure]


def _defines_schema(cls: type) -> bool:
    owner = next((base for base in cls.__mro__ if "define_schema" in vars(base)), None)
    return owner is not None and not vars(owner).get("__tabledata_abstract__", False)


def _check_field_names(cls: type, schema: SchemaField) -> None:
    for name in schema.keys():
        attr = inspect.getattr_static(cls, name, None)
        if name in _RESERVED_NAMES or isinstance(attr, (property, classmethod, staticmethod)) or callable(attr):
            raise TypeError(
                f'The "{name}" field of {cls.__name__} conflicts with an attribute of the DataModel class.'
            )


def _build_schema(cls: type) -> SchemaField:
    fields = cls.define_schema()
    schema = SchemaField(dict(fields))
    if cls.schema_name:
        schema.name = cls.schema_name
    _check_field_names(cls, schema)
    _SCHEMA_REGISTRY[cls] = schema
    return schema


class _DataModelMeta(type):
    """Metaclass for DataModel that builds the schema at class creation."""

    def __new__(mcs, name: str, bases: tuple, namespace: dict) -> type:
        cls = super().__new__(mcs, name, bases, namespace)
        if _defines_schema(cls):
            _build_schema(cls)
        return cls

    @property
    def schema(cls) -> SchemaField:
        """The SchemaField of this model class."""
        schema = _SCHEMA_REGISTRY.get(cls)
        if schema is None:
            schema = _build_schema(cls)
        return schema


class DataModel(metaclass=_DataModelMeta):
    """Abstract base for schema-validated data models.

    Subclasses implement ``define_schema`` and may override ``validate_joint``,
    ``migrate_data`` and ``_configure``.

    Args:
        data: Raw source data, or another DataModel to copy.
        parent: The DataModel which owns this one.
        strict: Raise on unresolved validation failures. When False, invalid
            fields fall back to their initial value and invalid embedded
            records are dropped.
        **options: Further construction context, such as ``fallback`` and
            ``drop_invalid_embedded``.
    """

    __tabledata_abstract__: ClassVar[bool] = True

    LOCALIZATION_PREFIXES: ClassVar[List[str]] = []
    """Localization key prefixes used to label the fields of this model."""

    SHIMS: ClassVar[Dict[str, str]] = {}
    """Legacy top-level source keys mapped to the dot-path which replaced them."""

    schema_name: ClassVar[Optional[str]] = None

    def __init__(self, data: Any = None, *, parent: Optional["DataModel"] = None,
                 strict: bool = True, **options: Any) -> None:
        if parent is not None and not isinstance(parent, DataModel):
            raise TypeError("The provided parent must be a DataModel instance")
        object.__setattr__(self, "parent", parent)
        object.__setattr__(self, "_computed", {})
        object.__setattr__(self, "_failures", {"fields": None, "joint": None})

        source = self._initialize_source(data, strict=strict, **options)
        object.__setattr__(self, "_source", source.seal())

        self._configure(options)

        fallback = options.get("fallback", not strict)
        drop_invalid_embedded = options.get("drop_invalid_embedded", not strict)
        self.validate(strict=strict, fallback=fallback, drop_invalid_embedded=drop_invalid_embedded,
                      fields=True, joint=True)
        self._initialize({"strict": strict, **options})

    def _configure(self, options: Dict[str, Any]) -> None:
        """Configure the instance before validation. No-op by default."""

    # ----- Schema -----

    @classmethod
    def define_schema(cls) -> Dict[str, DataField]:
        """Define the mapping of field name to DataField for this model."""
        raise NotImplementedError(f"The {cls.__name__} subclass of DataModel must define its Document schema")

    @property
    def schema(self) -> SchemaField:
        """The schema of this instance; embedded instances report their owning field."""
        schema = self.__dict__.get("_schema")
        return schema if schema is not None else type(self).schema

    def _attach_schema(self, schema: SchemaField) -> None:
        object.__setattr__(self, "_schema", schema)

    @property
    def invalid(self) -> bool:
        """True if either the field or joint failure is unresolved."""
        return any(f is not None and f.has_unresolved() for f in self._failures.values())

    @property
    def validation_failures(self) -> ValidationFailures:
        return ValidationFailures(**self._failures)

    # ----- Cleaning -----

    def _initialize_source(self, data: Any, **options: Any) -> SourceData:
        """Migrate, clean and shim raw data into a source mapping."""
        cls = type(self)
        if isinstance(data, DataModel):
            data = data.to_object()
        elif data is None:
            data = {}
        elif self.parent is not None and isinstance(data, dict):
            data = deep_clone(data)

        data = cls.migrate_data_safe(data)
        if not isinstance(data, dict):
            raise TypeError(f"{cls.__name__} was incorrectly constructed with a {type_name(data)} instead of an object.")

        data = cls.clean_data(data)
        source = SourceData(data, allowed=cls.schema.keys())
        return cls.shim_data(source)

    @classmethod
    def clean_data(cls, data: Optional[dict] = None, **options: Any) -> dict:
        """Clean source data in place through the model schema."""
        return cls.schema.clean({} if data is None else data, options)

    # ----- Initialization -----

    @classmethod
    def _initialization_order(cls) -> Iterator[Tuple[str, DataField]]:
        yield from cls.schema.items()

    def _initialize(self, options: Optional[Dict[str, Any]] = None) -> None:
        """Derive instance attributes from ``_source``."""
        options = options or {}
        state = self.__dict__
        for name, field in type(self)._initialization_order():
            value = field.initialize(self._source.get(name, _MISSING), self, options)

            if name == "_id":
                if state.get("_id") is None:
                    object.__setattr__(self, name, value)
                continue

            if field.readonly:
                if state.get(name) is not None:
                    continue
                object.__setattr__(self, name, None if value is _MISSING else value)
            elif isinstance(value, ComputedValue):
                state.pop(name, None)
                self._computed[name] = value
            else:
                self._computed.pop(name, None)
                object.__setattr__(self, name, None if value is _MISSING else value)

    def reset(self) -> None:
        """Reset derived attributes back to the state of ``_source``."""
        self._initialize()

    def __getattr__(self, name: str) -> Any:
        computed = self.__dict__.get("_computed")
        if computed and name in computed:
            return computed[name]()
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        if name in ("_source", "parent"):
            raise AttributeError(f'Cannot assign read-only property "{name}"')
        if name in self._computed:
            return
        field = type(self).schema.get(name)
        if field is not None and (field.readonly or name == "_id") and name in self.__dict__:
            raise AttributeError(f'Cannot assign read-only property "{name}"')
        object.__setattr__(self, name, value)

    def __delattr__(self, name: str) -> None:
        if name in ("_source", "parent"):
            raise AttributeError(f'Cannot delete read-only property "{name}"')
        object.__delattr__(self, name)

    def clone(self, data: Optional[dict] = None, **context: Any) -> "DataModel":
        """Create a copy of this model with ``data`` merged over its source.

        The copy shares this model's parent unless the context names another.
        ``data`` cannot introduce new top-level keys but honors ``-=`` and ``==``
        markers.
        """
        data = merge_object(self.to_object(), data or {}, insert_keys=False, perform_deletions=True, inplace=True)
        context.setdefault("parent", self.parent)
        return type(self)(data, **context)

    # ----- Validation -----

    def validate(self, *, changes: Optional[dict] = None, clean: bool = False, fallback: bool = False,
                 drop_invalid_embedded: bool = False, strict: bool = True, fields: bool = True,
                 joint: Optional[bool] = None) -> bool:
        """Validate the model source, or a set of partial changes.

        Args:
            changes: Partial changes to validate instead of the full source.
            clean: Clean the data in place before validating.
            fallback: Repair invalid fields with their initial value.
            drop_invalid_embedded: Ignore invalid embedded collection records.
            strict: Raise if an unresolved failure remains.
            fields: Perform field-level validation.
            joint: Perform joint validation. Defaults to True when no changes
                are given.

        Returns:
            True if the model has no unresolved failures.

        Raises:
            DataModelValidationError: If ``strict`` and validation failed.
        """
        cls = type(self)
        source = changes if changes is not None else self._source
        if joint is None:
            joint = changes is None
        partial = not joint

        if partial:
            if not clean:
                source = deep_clone(source)
            self.schema._add_types(self._source, source)

        if clean:
            cls.clean_data(source, partial=partial)

        doc_id = self._source.get("_id")
        label = f"{cls.__name__} [{doc_id}]" if doc_id else cls.__name__

        if fields:
            self._failures["fields"] = None
            failure = self.schema.validate(source, {
                "partial": partial, "fallback": fallback, "drop_invalid_embedded": drop_invalid_embedded,
            })
            if failure is not None:
                failure.message = f"{label} validation errors:"
                self._failures["fields"] = failure
                if strict and failure.has_unresolved():
                    raise failure.as_error()
                logger.warning("%s", failure)

        if joint:
            self._failures["joint"] = None
            try:
                cls.schema._validate_model(source)
                cls.validate_joint(source)
            except Exception as err:
                failure = ValidationFailure(message=f"{label} Joint Validation Error:\n{err}", unresolved=True)
                self._failures["joint"] = failure
                if strict:
                    raise failure.as_error() from err
                logger.warning("%s", failure)

        return not self.invalid

    @classmethod
    def validate_joint(cls, data: dict) -> None:
        """Check invariants which span several fields.

        Raise any exception to reject the data. No-op by default.
        """

    # ----- Updates -----

    def update_source(self, changes: Optional[dict] = None, *, dry_run: bool = False, fallback: bool = False,
                      recursive: bool = True, **options: Any) -> Dict[str, Any]:
        """Apply changes to the source, returning the diff which was applied.

        ``changes`` is expanded and cleaned in place. A change set which
        alters nothing returns an empty diff without validating or
        re-initializing the model.

        Args:
            changes: The proposed changes, optionally in dot-notation.
            dry_run: Validate and compute the diff without committing it.
            fallback: Accepted for parity with construction options.
            recursive: Merge nested objects rather than replacing them.

        Raises:
            DataModelValidationError: If the changes or the resulting model
                are invalid. Nothing is committed in that case.
        """
        if changes is None:
            changes = {}
        options = {"dry_run": dry_run, "fallback": fallback, "recursive": recursive, **options}
        root_key = "_source"
        root_diff: Dict[str, Any] = {root_key: {}}

        if any("." in k for k in changes):
            expanded = expand_object(changes)
            changes.clear()
            changes.update(expanded)

        self.schema._add_types(self._source, changes)
        type(self).clean_data(changes, partial=True)

        copy = self._prepare_safe_source(changes)
        self.schema._update_diff({root_key: copy}, root_key, changes, root_diff, options)
        diff = root_diff.get(root_key, {})
        if not diff:
            return diff

        type_changed = "type" in diff
        self.validate(changes=diff, fields=True, joint=False, strict=True)
        if not type_changed:
            diff.pop("type", None)

        self.validate(changes=copy, fields=False, joint=True, strict=True)

        if not dry_run:
            self.schema._update_commit({root_key: self._source}, root_key, copy, diff, options)
            self._initialize()
        return diff

    def _prepare_safe_source(self, changes: dict) -> Dict[str, Any]:
        copy: Dict[str, Any] = {}
        for k in changes:
            key = k[2:] if is_deletion_key(k) else k
            if key in self._source:
                copy[key] = deep_clone(self._source[key])
        for k, v in self._source.items():
            if k not in copy:
                copy[k] = v
        return copy

    # ----- Serialization -----

    def to_object(self, source: bool = True) -> Dict[str, Any]:
        """Export the model as a plain dict.

        Args:
            source: Return a copy of the canonical source. When False, each
                field serializes the current instance value instead.
        """
        if source:
            return deep_clone(self._source)
        return type(self).schema.to_object(self)

    def to_json(self, **kwargs: Any) -> str:
        """Serialize the canonical source as a JSON string."""
        return _json.dumps(self.to_object(True), **kwargs)

    @classmethod
    def from_source(cls, source: Any, *, strict: bool = False, **context: Any) -> "DataModel":
        """Construct from trusted, persisted data, validating leniently by default."""
        return cls(source, strict=strict, **context)

    @classmethod
    def from_json(cls, json_data: str) -> "DataModel":
        """Construct from a JSON string produced by ``to_json``."""
        return cls.from_source(_json.loads(json_data))

    # ----- Migration and compatibility -----

    @classmethod
    def migrate_data(cls, source: dict) -> dict:
        """Migrate legacy source data in place. Override to add migrations."""
        cls.schema.migrate_source(source, source)
        return source

    @classmethod
    def migrate_data_safe(cls, source: Any) -> Any:
        """Run ``migrate_data``, logging rather than raising on failure."""
        try:
            cls.migrate_data(source)
        except Exception as err:
            logger.warning("Failed data migration for %s: %s", cls.__name__, err)
        return source

    @classmethod
    def shim_data(cls, data: Any) -> Any:
        """Register legacy key aliases from ``SHIMS`` on an unsealed source."""
        if not isinstance(data, SourceData) or is_sealed(data):
            return data
        for old_key, new_key in cls.SHIMS.items():
            data.add_alias(old_key, new_key)
        return data

    @classmethod
    def _add_data_field_migration(cls, data: dict, old_key: str, new_key: str,
                                  apply: Optional[Callable[[dict], Any]] = None) -> bool:
        """Move a value from a legacy dot-path to its current one.

        Returns True if the data was migrated.
        """
        if not has_property(data, old_key) or has_property(data, new_key):
            return False
        value = apply(data) if apply is not None else get_property(data, old_key)
        set_property(data, new_key, value)
        parent_path, _, leaf = old_key.rpartition(".")
        container = get_property(data, parent_path) if parent_path else data
        if isinstance(container, dict):
            container.pop(leaf, None)
        return True

    def __repr__(self) -> str:
        parts = [f"{name}={self._source[name]!r}" for name in type(self).schema.keys() if name in self._source]
        return f"{type(self).__name__}({', '.join(parts)})"


__all__ = ["DataModel", "ValidationFailures"]
