"""
Data field definitions for tabledata.

A data field owns one property of a schema: it cleans raw input toward its
canonical shape, validates it into a ValidationFailure tree, initializes the
instance-facing value from source, serializes it back, and takes part in the
diff/commit cycle of ``DataModel.update_source``.

Example:
    from tabledata import DataModel
    from tabledata.fields import NumberField, SchemaField, StringField

    class Calendar(DataModel):
        @classmethod
        def define_schema(cls):
            return {
                "name": StringField(required=True, blank=False, initial="Gregorian"),
                "date": SchemaField({
                    "year": NumberField(integer=True, initial=0),
                    "month": NumberField(integer=True, min=1, max=12, initial=1),
                }),
            }
"""

import logging
import math
from typing import Any, Callable, ClassVar, Dict, Iterator, List, Optional, Tuple, Union

from .config import get_option
from .source import assign_key, discard_key
from .utils import (
    _MISSING,
    apply_special_keys,
    deep_clone,
    diff_object,
    is_deletion_key,
    is_number,
    is_nullish,
    is_valid_id,
    merge_object,
    random_id,
    values_equal,
)
from .validation_failure import DataModelValidationError, ValidationFailure

logger = logging.getLogger(__name__)

_DELETION_VALUE_ERROR = (
    "Removing a key using the -= deletion syntax requires the value of that"
    " deletion key to be null, for example {-=key: null}"
)

# Construction options forwarded to embedded models
_CONTEXT_KEYS = ('strict', 'fallback', 'drop_invalid_embedded')


def _context(options: Optional[dict]) -> Dict[str, Any]:
    if not options:
        return {}
    return {k: options[k] for k in _CONTEXT_KEYS if k in options}


def _read(container: Any, name: str) -> Any:
    """Read a named value from a dict or a model instance."""
    if isinstance(container, dict):
        return container.get(name, _MISSING)
    return getattr(container, name, _MISSING)


def _truthy(value: Any) -> bool:
    """Truthiness in which empty containers still count as present."""
    if is_nullish(value) or value is False:
        return False
    if isinstance(value, (dict, list, set, tuple)):
        return True
    if is_number(value):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    return bool(value)


class ComputedValue:
    """A zero-argument getter returned by ``DataField.initialize``.

    The owning model exposes the field as a read-only computed property that
    calls the getter on every access.
    """
    __slots__ = ('getter',)

    def __init__(self, getter: Callable[[], Any]):
        self.getter = getter

    def __call__(self) -> Any:
        return self.getter()

    def __repr__(self) -> str:
        return f"ComputedValue({self.getter!r})"


# ============================================================
# Abstract Data Field
# ============================================================

class DataField:
    """Base class for every field of a data schema.

    Options:
        required: The field must have a value. Default: False.
        nullable: The field may be None. Default: False.
        initial: The initial value, or a callable ``initial(source)``.
        readonly: The instance property is set once and never reassigned.
        label: Presentation label, not used by the engine.
        hint: Presentation hint, not used by the engine.
        validation_error: Message used when a validator returns False.
        validate: A custom ``validate(value, options)`` callable which may
            return True, False or a ValidationFailure, or raise.
    """

    recursive: ClassVar[bool] = False
    """Whether the field contains other fields."""

    _defaults: ClassVar[Dict[str, Any]] = {
        'required': False,
        'nullable': False,
        'initial': _MISSING,
        'readonly': False,
        'label': "",
        'hint': "",
        'validation_error': "is not a valid value",
    }

    def __init__(self, **options: Any):
        self.name: Optional[str] = None
        self.parent: Optional["DataField"] = None
        self.options = options
        for key, default in self._defaults.items():
            setattr(self, key, options.get(key, default))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    @property
    def field_path(self) -> str:
        """Dot-delimited path of this field within its parent schema."""
        parent_path = self.parent.field_path if self.parent is not None else None
        return ".".join(p for p in (parent_path, self.name) if p)

    def apply(self, fn: Union[str, Callable], value: Any = None, options: Optional[dict] = None) -> Any:
        """Apply a function, or a named method, to this field."""
        if isinstance(fn, str):
            return getattr(self, fn)(value, options or {})
        return fn(self, value, options or {})

    def _add_types(self, source: Any, changes: Any, options: Optional[dict] = None) -> None:
        pass

    def _get_field(self, path: List[str]) -> Optional["DataField"]:
        return None if path else self

    # ----- Cleaning -----

    def clean(self, value: Any, options: Optional[dict] = None) -> Any:
        """Coerce a value toward the canonical shape of this field. Never raises."""
        options = options or {}
        if value is _MISSING:
            return self.get_initial_value(options.get('source'))
        try:
            if self._validate_special(value) is True:
                return value
        except ValueError:
            return self.get_initial_value(options.get('source'))
        value = self._cast(value)
        return self._clean_type(value, options)

    def _clean_type(self, value: Any, options: dict) -> Any:
        return value

    def _cast(self, value: Any) -> Any:
        return value

    def get_initial_value(self, data: Any = None) -> Any:
        """Resolve the initial value of this field for the given source data."""
        if callable(self.initial):
            return self.initial(data)
        if self.initial is not _MISSING:
            return deep_clone(self.initial)
        if not self.required:
            return _MISSING
        if self.nullable:
            return None
        return _MISSING

    def to_object(self, value: Any) -> Any:
        return value

    # ----- Validation -----

    def validate(self, value: Any, options: Optional[dict] = None) -> Optional[ValidationFailure]:
        """Validate a candidate value.

        Returns None when valid, or a ValidationFailure describing the problem.
        """
        options = options or {}
        custom = self.options.get('validate')
        try:
            resolved = self._interpret(self._validate_special(value), value)
            if resolved is not _MISSING:
                return resolved
            resolved = self._interpret(self._validate_type(value, options), value)
            if resolved is not _MISSING:
                return resolved
            if custom is not None:
                resolved = self._interpret(custom(value, options), value)
                if resolved is not _MISSING:
                    return resolved
        except Exception as err:
            return ValidationFailure(invalid_value=value, message=str(err), unresolved=True)
        return None

    def _interpret(self, result: Any, value: Any) -> Any:
        if result is True:
            return None
        if result is False:
            return ValidationFailure(invalid_value=value, message=self.validation_error, unresolved=True)
        if isinstance(result, ValidationFailure):
            return result
        return _MISSING

    def _validate_special(self, value: Any) -> Optional[bool]:
        """Screen None and undefined before type validation.

        Returns True when the value is certainly valid, None when type
        validation should continue.

        Raises:
            ValueError: If the value is a disallowed None or undefined.
        """
        if value is None:
            if self.nullable:
                return True
            raise ValueError("may not be null")
        if value is _MISSING:
            if self.required:
                raise ValueError("may not be undefined")
            return True
        return None

    def _validate_type(self, value: Any, options: dict) -> Any:
        return None

    def _validate_model(self, data: Any, options: Optional[dict] = None) -> None:
        pass

    # ----- Initialization and updates -----

    def initialize(self, value: Any, model: Any, options: Optional[dict] = None) -> Any:
        return value

    def migrate_source(self, source_data: dict, field_data: Any) -> None:
        pass

    def _update_diff(self, source: dict, key: str, value: Any, difference: dict, options: dict) -> None:
        current = source.get(key, _MISSING)
        if values_equal(value, current):
            return
        difference[key] = value
        source[key] = value

    def _update_commit(self, source: dict, key: str, value: Any, diff: Any, options: dict) -> None:
        if value is _MISSING:
            discard_key(source, key)
        else:
            assign_key(source, key, value)


# ============================================================
# Schema Field
# ============================================================

class SchemaField(DataField):
    """A field whose value is a mapping of named inner fields.

    Field order is declaration order, which is also the initialization order
    of a model.
    """

    recursive = True

    _defaults = {**DataField._defaults, 'required': True, 'nullable': False}

    def __init__(self, fields: Dict[str, DataField], **options: Any):
        super().__init__(**options)
        self.fields = self._initialize_fields(fields)

    def _initialize_fields(self, fields: Dict[str, DataField]) -> Dict[str, DataField]:
        if not isinstance(fields, dict):
            raise TypeError("A DataSchema must be a dict with string keys and DataField values.")
        fields = dict(fields)
        for name, field in fields.items():
            if name == "_source":
                raise ValueError('"_source" is not a valid name for a field of a SchemaField.')
            if not isinstance(field, DataField):
                raise TypeError(f'The "{name}" field is not an instance of the DataField class.')
            if field.parent is not None:
                raise ValueError(
                    f'The "{field.field_path}" field already belongs to some other parent and may not be reused.'
                )
            field.name = name
            field.parent = self
        return fields

    # ----- Iteration -----

    def __iter__(self) -> Iterator[DataField]:
        return iter(self.fields.values())

    def __len__(self) -> int:
        return len(self.fields)

    def __contains__(self, name: str) -> bool:
        return name in self.fields

    def keys(self) -> List[str]:
        return list(self.fields)

    def values(self) -> List[DataField]:
        return list(self.fields.values())

    def items(self) -> List[Tuple[str, DataField]]:
        return list(self.fields.items())

    def has(self, name: str) -> bool:
        return name in self.fields

    def get(self, name: str) -> Optional[DataField]:
        return self.fields.get(name)

    def get_field(self, path: Union[str, List[str]]) -> Optional[DataField]:
        """Retrieve a nested field by ``"a.b"`` or ``["a", "b"]``."""
        if isinstance(path, str):
            parts = path.split(".")
        elif isinstance(path, (list, tuple)):
            parts = list(path)
        else:
            raise TypeError("A field path must be a list of strings or a dot-delimited string")
        return self._get_field(parts)

    def _get_field(self, path: List[str]) -> Optional[DataField]:
        if not path:
            return self
        field = self.get(path.pop(0))
        return field._get_field(path) if field is not None else None

    @property
    def _has_type_data(self) -> bool:
        return getattr(self.fields.get("system"), 'carries_type_data', False)

    # ----- Cleaning -----

    def get_initial_value(self, data: Any = None) -> Any:
        initial = super().get_initial_value(data)
        if self.required and initial is _MISSING:
            return self._clean_type({}, {})
        return initial

    def _cast(self, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    def _clean_type(self, data: dict, options: dict) -> dict:
        options = dict(options)
        if options.get('source') is None:
            options['source'] = data
        partial = options.get('partial', False)

        for name, field in self.fields.items():
            replace_key = f"=={name}"
            if replace_key in data:
                data[replace_key] = field.clean(apply_special_keys(data[replace_key]), {**options, 'partial': False})
            elif not partial or name in data:
                cleaned = field.clean(data.get(name, _MISSING), options)
                if cleaned is _MISSING:
                    discard_key(data, name)
                else:
                    data[name] = cleaned

        # Drop keys which do not belong to the schema
        for key in list(data):
            if key in self.fields:
                continue
            if is_deletion_key(key) and key[2:] in self.fields:
                continue
            discard_key(data, key)
        return data

    # ----- Validation -----

    def _validate_type(self, data: Any, options: dict) -> Optional[ValidationFailure]:
        if not isinstance(data, dict):
            raise ValueError("must be an object")
        options = dict(options)
        if options.get('source') is None:
            options['source'] = data
        partial = options.get('partial', False)
        fallback = options.get('fallback', False)

        schema_failure = ValidationFailure()
        for name, field in self.fields.items():
            for prefix in ("", "-=", "=="):
                key = prefix + name
                if (prefix or partial) and key not in data:
                    continue

                value = data.get(key, _MISSING)
                if prefix == "-=":
                    if value is not None:
                        raise ValueError(_DELETION_VALUE_ERROR)
                    value = _MISSING
                failure = field.validate(value, options)
                if failure is None:
                    continue
                schema_failure.fields[key] = failure

                # Repaired internally by the field
                if not failure.unresolved:
                    continue

                if fallback and not prefix:
                    initial = field.get_initial_value(options['source'])
                    if field.validate(initial, {'fallback': False, 'source': options['source']}) is not None:
                        failure.unresolved = schema_failure.unresolved = True
                    else:
                        if initial is _MISSING:
                            discard_key(data, name)
                        else:
                            assign_key(data, name, initial)
                        failure.fallback = initial
                        failure.unresolved = False
                else:
                    failure.unresolved = schema_failure.unresolved = True
        return schema_failure if schema_failure.fields else None

    def _validate_model(self, changes: Any, options: Optional[dict] = None) -> None:
        options = dict(options or {})
        if options.get('source') is None:
            options['source'] = changes
        if not _truthy(changes):
            return
        for name, field in self.fields.items():
            change = _read(changes, name)
            if _truthy(change) and type(field).recursive:
                field._validate_model(change, options)

    # ----- Initialization and serialization -----

    def initialize(self, value: Any, model: Any, options: Optional[dict] = None) -> Any:
        if is_nullish(value):
            return None if value is _MISSING else value
        data: Dict[str, Any] = {}
        for name, field in self.fields.items():
            v = field.initialize(value.get(name, _MISSING), model, options)
            if isinstance(v, ComputedValue):
                v = v()
            data[name] = None if v is _MISSING else v
        return data

    def to_object(self, value: Any) -> Any:
        if is_nullish(value):
            return value
        data: Dict[str, Any] = {}
        for name, field in self.fields.items():
            v = _read(value, name)
            if v is _MISSING:
                continue
            data[name] = field.to_object(v)
        return data

    def apply(self, fn: Union[str, Callable], data: Any = None, options: Optional[dict] = None) -> Any:
        options = options or {}
        if data is None:
            data = {}
        this_fn = getattr(self, fn, None) if isinstance(fn, str) else fn
        if this_fn is not None:
            if isinstance(fn, str):
                this_fn(data, options)
            else:
                this_fn(self, data, options)
        if not isinstance(data, dict):
            return data

        results: Dict[str, Any] = {}
        for key, field in self.fields.items():
            if options.get('partial') and key not in data:
                continue
            r = field.apply(fn, data.get(key), options)
            if not options.get('filter') or not is_nullish(r) and r != {} and r != []:
                results[key] = r
        return results

    def _add_types(self, source: Any, changes: Any, options: Optional[dict] = None) -> None:
        if not isinstance(source, dict) or not isinstance(changes, dict):
            return
        options = dict(options or {})
        options.setdefault('source', source)
        options.setdefault('changes', changes)
        if self._has_type_data:
            if "type" in changes:
                if changes["type"] is None:
                    changes["type"] = self.fields["type"].get_initial_value(source)
            elif "type" in source:
                changes["type"] = source["type"]
        for key in list(changes):
            field = self.get(key)
            if field is not None:
                field._add_types(source.get(key, _MISSING), changes[key], options)

    def migrate_source(self, source_data: dict, field_data: Any) -> None:
        if not isinstance(field_data, dict):
            return
        for key in list(field_data):
            deletion = is_deletion_key(key)
            if deletion and key[0] == "-":
                continue
            field = self.get(key[2:] if deletion else key)
            if field is None:
                continue
            field.migrate_source(source_data, field_data[key])

    # ----- Updates -----

    def _update_diff(self, source: dict, key: str, value: Any, difference: dict, options: dict) -> None:
        recursive = get_option(options, 'recursive')
        if is_nullish(value) or (recursive is False and key != "_source"):
            value = apply_special_keys(value)
            if recursive is False:
                value = self.clean(value)
            super()._update_diff(source, key, value, difference, options)
            return

        has_type_data = self._has_type_data
        if has_type_data and ("==type" in value or "-=type" in value):
            raise ValueError("The type of a Document cannot be updated with ==type or -=type")

        if is_nullish(source.get(key, _MISSING)):
            source[key] = {}
        container = source[key]
        schema_diff: Dict[str, Any] = {}
        difference[key] = schema_diff
        for k, v in value.items():
            special = is_deletion_key(k)
            name = k[2:] if special else k
            field = self.get(name)
            if field is None:
                continue

            if special:
                if k[0] == "-":
                    if v is not None:
                        raise ValueError(_DELETION_VALUE_ERROR)
                    if name in container:
                        schema_diff[k] = None
                        discard_key(container, name)
                else:
                    replacement = apply_special_keys(v)
                    container[name] = replacement
                    schema_diff[k] = replacement
                continue

            field._update_diff(container, k, v, schema_diff, options)

        if has_type_data and "type" in schema_diff:
            forced = "==system" in value or ("system" in value and recursive is False)
            if not forced:
                raise ValueError(
                    "The type of a Document can be changed only if the system field is force-replaced (==) "
                    "or updated with recursive=False"
                )

        if not schema_diff:
            del difference[key]

    def _update_commit(self, source: dict, key: str, value: Any, diff: Any, options: dict) -> None:
        s = source.get(key, _MISSING)
        if is_nullish(s) or is_nullish(value) or not isinstance(diff, dict):
            super()._update_commit(source, key, value, diff, options)
            return

        if self._has_type_data and "type" in diff:
            discard_key(s, "system")

        for k, d in diff.items():
            name = k[2:] if is_deletion_key(k) else k
            field = self.get(name)
            if field is None:
                continue
            field._update_commit(s, name, value.get(name, _MISSING), d, options)


# ============================================================
# Basic Field Types
# ============================================================

class BooleanField(DataField):
    """A field holding a boolean."""

    _defaults = {**DataField._defaults, 'required': True, 'nullable': False, 'initial': False}

    def _cast(self, value: Any) -> Any:
        if isinstance(value, str):
            return value == "true"
        if isinstance(value, (dict, list, set, tuple)):
            return False
        return bool(value)

    def _validate_type(self, value: Any, options: dict) -> Any:
        if not isinstance(value, bool):
            raise ValueError("must be a boolean")


def _decimals(value: float) -> int:
    text = repr(float(value))
    if "e" in text or "E" in text:
        return 10
    return len(text.split(".")[1].rstrip("0")) if "." in text else 0


def _round_half_up(value: float) -> float:
    return math.floor(value + 0.5)


def _to_nearest(value: float, step: float, method: str = "round", base: float = 0) -> float:
    """Snap ``value`` to the nearest increment of ``step`` measured from ``base``."""
    scaled = (value - base) / step
    if method == "floor":
        n = math.floor(scaled + 1e-9)
    else:
        n = _round_half_up(scaled)
    result = base + n * step
    return round(result, max(_decimals(step), _decimals(base)))


class NumberField(DataField):
    """A numeric field.

    Options:
        min: Minimum allowed value; cleaning clamps to it.
        max: Maximum allowed value; cleaning clamps to it.
        step: Allowed increment, measured from ``min`` when set.
        integer: Round to and require an integer.
        positive: Require a value greater than zero.
        choices: Allowed values, as a list, dict or callable.
    """

    _defaults = {
        **DataField._defaults,
        'nullable': True,
        'min': None,
        'max': None,
        'step': None,
        'integer': False,
        'positive': False,
        'choices': None,
    }

    def __init__(self, **options: Any):
        super().__init__(**options)
        if self.choices:
            self.nullable = options.get('nullable', False)
        if self._finite(self.min) and self._finite(self.max) and self.min > self.max:
            raise ValueError("NumberField minimum constraint cannot exceed its maximum constraint")

    @staticmethod
    def _finite(value: Any) -> bool:
        return is_number(value) and math.isfinite(value)

    def _cast(self, value: Any) -> Any:
        if self.nullable and value == "":
            return None
        if isinstance(value, bool):
            return int(value)
        if is_number(value):
            return value
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return 0
            try:
                return int(text)
            except ValueError:
                pass
            try:
                return float(text)
            except ValueError:
                return math.nan
        if isinstance(value, list) and not value:
            return 0
        try:
            return float(value)
        except (TypeError, ValueError):
            return math.nan

    def _clean_type(self, value: Any, options: dict) -> Any:
        if not is_number(value) or not math.isfinite(value):
            return value
        if self.integer:
            value = int(_round_half_up(value))
        if self._finite(self.step):
            base = 0
            if self._finite(self.min):
                base = self.min
                value = max(value, base)
            value = _to_nearest(value, self.step, "round", base)
            if self._finite(self.max):
                value = min(value, _to_nearest(self.max, self.step, "floor", base))
        else:
            if self._finite(self.min):
                value = max(value, self.min)
            if self._finite(self.max):
                value = min(value, self.max)
        if self.integer and isinstance(value, float) and value.is_integer():
            value = int(value)
        return value

    def _validate_type(self, value: Any, options: dict) -> Any:
        if not is_number(value):
            raise ValueError("must be a number")
        if self.positive and value <= 0:
            raise ValueError("must be a positive number")
        if self._finite(self.min) and value < self.min:
            raise ValueError(f"must be at least {self.min}")
        if self._finite(self.max) and value > self.max:
            raise ValueError(f"must be at most {self.max}")
        if self._finite(self.step) and math.isfinite(value):
            base = self.min if self._finite(self.min) else 0
            if _to_nearest(value, self.step, "round", base) != value:
                if self._finite(self.min) and self.min != 0:
                    raise ValueError(f"must be an increment of {self.step} after subtracting {self.min}")
                raise ValueError(f"must be an increment of {self.step}")
        if self.choices and not _is_valid_choice(self.choices, value):
            raise ValueError(f"{value} is not a valid choice")
        if self.integer:
            if not (isinstance(value, int) or (math.isfinite(value) and float(value).is_integer())):
                raise ValueError("must be an integer")
        elif not math.isfinite(value):
            raise ValueError("must be a finite number")


def _is_valid_choice(choices: Any, value: Any) -> bool:
    if callable(choices):
        choices = choices()
    if isinstance(choices, dict):
        return str(value) in choices or value in choices
    return value in choices


class StringField(DataField):
    """A string field.

    Options:
        blank: Allow the empty string. Default: True.
        trim: Strip surrounding whitespace when cleaning. Default: True.
        choices: Allowed values, as a list, dict or callable.
    """

    _defaults = {**DataField._defaults, 'blank': True, 'trim': True, 'choices': None}

    def __init__(self, **options: Any):
        super().__init__(**options)
        if self.choices:
            self.nullable = options.get('nullable', False)
            self.blank = options.get('blank', False)

    def clean(self, value: Any, options: Optional[dict] = None) -> Any:
        if isinstance(value, str) and self.trim:
            value = value.strip()
        return super().clean(value, options)

    def get_initial_value(self, data: Any = None) -> Any:
        initial = super().get_initial_value(data)
        if self.blank and self.required and (is_nullish(initial) or initial == ""):
            return ""
        return initial

    def _cast(self, value: Any) -> Any:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _validate_special(self, value: Any) -> Optional[bool]:
        if value == "":
            if self.blank:
                return True
            raise ValueError("may not be a blank string")
        return super()._validate_special(value)

    def _validate_type(self, value: Any, options: dict) -> Any:
        if not isinstance(value, str):
            raise ValueError("must be a string")
        if self.choices:
            if _is_valid_choice(self.choices, value):
                return True
            raise ValueError(f"{value} is not a valid choice")


class ObjectField(DataField):
    """A free-form dict field."""

    _defaults = {**DataField._defaults, 'required': True, 'nullable': False}

    def get_initial_value(self, data: Any = None) -> Any:
        initial = super().get_initial_value(data)
        if self.required and initial is _MISSING:
            return {}
        return initial

    def _cast(self, value: Any) -> Any:
        if callable(getattr(value, 'to_object', None)):
            value = value.to_object()
        return value if isinstance(value, dict) else {}

    def initialize(self, value: Any, model: Any, options: Optional[dict] = None) -> Any:
        if is_nullish(value):
            return None if value is _MISSING else value
        return deep_clone(value)

    def _update_diff(self, source: dict, key: str, value: Any, difference: dict, options: dict) -> None:
        if isinstance(value, dict) and get_option(options, 'recursive') is not False:
            if not isinstance(source.get(key), dict):
                source[key] = {}
            diff = diff_object(source[key], value, deletion_keys=True)
            if not diff:
                return
            difference[key] = diff
            merge_object(source[key], value, insert_keys=True, insert_values=True, perform_deletions=True)
        else:
            super()._update_diff(source, key, apply_special_keys(value), difference, options)

    def _update_commit(self, source: dict, key: str, value: Any, diff: Any, options: dict) -> None:
        s = source.get(key, _MISSING)
        if not isinstance(s, dict) or not isinstance(value, dict):
            super()._update_commit(source, key, value, diff, options)
            return
        for k in list(s):
            if k not in value:
                del s[k]
        s.update(value)

    def to_object(self, value: Any) -> Any:
        return deep_clone(value)

    def _validate_type(self, value: Any, options: dict) -> Any:
        if not isinstance(value, dict):
            raise ValueError("must be an object")


class AnyField(DataField):
    """A field which accepts any value."""

    def _validate_type(self, value: Any, options: dict) -> Any:
        return True


class DocumentIdField(StringField):
    """A 16-character alphanumeric identifier, read-only once set."""

    _defaults = {
        **StringField._defaults,
        'required': True,
        'blank': False,
        'nullable': True,
        'readonly': True,
        'validation_error': "is not a valid Document ID string",
    }

    def _cast(self, value: Any) -> Any:
        model_id = getattr(value, '_id', _MISSING)
        if model_id is not _MISSING and not isinstance(value, (dict, str)):
            return model_id
        return super()._cast(value)

    def _validate_type(self, value: Any, options: dict) -> Any:
        if not is_valid_id(value):
            raise ValueError("must be a valid 16-character alphanumeric ID")


# ============================================================
# Mapping and Array Fields
# ============================================================

class TypedObjectField(ObjectField):
    """A dict whose values all share one element field.

    Options:
        validate_key: A callable which returns False (or raises) for keys
            that must be dropped while cleaning.
    """

    recursive = True

    _defaults = {**ObjectField._defaults, 'validate_key': None}

    def __init__(self, element: DataField, **options: Any):
        super().__init__(**options)
        if not isinstance(element, DataField):
            raise TypeError("The element must be a DataField")
        if element.parent is not None:
            raise ValueError("The element DataField already has a parent")
        element.name = element.name or "element"
        element.parent = self
        self.element = element

    def _key_is_valid(self, key: str) -> bool:
        if self.validate_key is None:
            return True
        try:
            return self.validate_key(key) is not False
        except Exception:
            return False

    def _clean_type(self, data: dict, options: dict) -> dict:
        options = dict(options)
        if options.get('source') is None:
            options['source'] = data
        for key in list(data):
            deletion = is_deletion_key(key)
            k = key[2:] if deletion else key
            if not self._key_is_valid(k):
                del data[key]
                continue
            if deletion and key[0] == "-":
                continue
            cleaned = self.element.clean(data[key], options)
            if cleaned is _MISSING:
                del data[key]
            else:
                data[key] = cleaned
        return data

    def _validate_type(self, data: Any, options: dict) -> Optional[ValidationFailure]:
        if not isinstance(data, dict):
            raise ValueError("must be an object")
        options = dict(options)
        if options.get('source') is None:
            options['source'] = data

        mapping_failure = ValidationFailure()
        for key in list(data):
            if key.startswith("-="):
                continue
            value = data[key]
            failure = self.element.validate(value, options)
            if failure is None:
                continue
            mapping_failure.fields[key] = failure
            if not failure.unresolved:
                continue
            if options.get('fallback') and not key.startswith("=="):
                initial = self.element.get_initial_value(options['source'])
                if self.element.validate(initial, {'source': options['source']}) is None:
                    data[key] = initial
                    failure.fallback = initial
                    failure.unresolved = False
                else:
                    failure.unresolved = mapping_failure.unresolved = True
            else:
                failure.unresolved = mapping_failure.unresolved = True
        return mapping_failure if mapping_failure.fields else None

    def _validate_model(self, changes: Any, options: Optional[dict] = None) -> None:
        options = dict(options or {})
        if options.get('source') is None:
            options['source'] = changes
        if not _truthy(changes):
            return
        for key, change in changes.items():
            if _truthy(change) and type(self.element).recursive:
                self.element._validate_model(change, options)

    def initialize(self, value: Any, model: Any, options: Optional[dict] = None) -> Any:
        if is_nullish(value):
            return None if value is _MISSING else value
        return {k: self.element.initialize(v, model, options) for k, v in value.items()}

    def _update_diff(self, source: dict, key: str, value: Any, difference: dict, options: dict) -> None:
        if is_nullish(value) or get_option(options, 'recursive') is False:
            super()._update_diff(source, key, value, difference, options)
            return

        if is_nullish(source.get(key, _MISSING)):
            source[key] = {}
        container = source[key]
        mapping_diff: Dict[str, Any] = {}
        difference[key] = mapping_diff
        for k, v in value.items():
            if is_deletion_key(k):
                name = k[2:]
                if k[0] == "-":
                    if v is not None:
                        raise ValueError(_DELETION_VALUE_ERROR)
                    if name in container:
                        mapping_diff[k] = None
                        del container[name]
                else:
                    replacement = apply_special_keys(v)
                    container[name] = replacement
                    mapping_diff[k] = replacement
                continue
            self.element._update_diff(container, k, v, mapping_diff, options)

        if not mapping_diff:
            del difference[key]

    def _update_commit(self, source: dict, key: str, value: Any, diff: Any, options: dict) -> None:
        s = source.get(key, _MISSING)
        if not isinstance(s, dict) or not isinstance(value, dict) or not isinstance(diff, dict):
            DataField._update_commit(self, source, key, value, diff, options)
            return
        for k in list(s):
            if k not in value:
                del s[k]
        for k, d in diff.items():
            if is_deletion_key(k):
                if k[0] == "-":
                    continue
                k = k[2:]
            self.element._update_commit(s, k, value.get(k, _MISSING), d, options)

    def to_object(self, value: Any) -> Any:
        if is_nullish(value):
            return value
        return {k: self.element.to_object(v) for k, v in value.items()}

    def apply(self, fn: Union[str, Callable], data: Any = None, options: Optional[dict] = None) -> Any:
        options = options or {}
        data = {} if data is None else data
        DataField.apply(self, fn, data, options)
        results = {}
        for key, v in data.items():
            r = self.element.apply(fn, v, options)
            if not options.get('filter') or not is_nullish(r) and r != {} and r != []:
                results[key] = r
        return results

    def _add_types(self, source: Any, changes: Any, options: Optional[dict] = None) -> None:
        if not isinstance(source, dict) or not isinstance(changes, dict):
            return
        for key in changes:
            self.element._add_types(source.get(key, _MISSING), changes[key], options)

    def _get_field(self, path: List[str]) -> Optional[DataField]:
        if not path:
            return self
        if path.pop(0) != self.element.name:
            return None
        return self.element._get_field(path)

    def migrate_source(self, source_data: dict, field_data: Any) -> None:
        if not isinstance(field_data, dict):
            return
        for key in list(field_data):
            if key.startswith("-="):
                continue
            self.element.migrate_source(source_data, field_data[key])


class ArrayField(DataField):
    """A list of values sharing one element field.

    Arrays are diffed and replaced as a whole; partial updates of individual
    elements are not supported.

    Options:
        min: Minimum number of elements. Default: 0.
        max: Maximum number of elements. Default: unbounded.
    """

    recursive = True

    _defaults = {
        **DataField._defaults,
        'required': True,
        'nullable': False,
        'empty': True,
        'exact': None,
        'min': 0,
        'max': math.inf,
    }

    def __init__(self, element: Any, **options: Any):
        super().__init__(**options)
        self.element = self._validate_element_type(element)
        if isinstance(self.element, DataField):
            self.element.name = self.element.name or "element"
            self.element.parent = self
        if self.min > self.max:
            raise ValueError("ArrayField minimum length cannot exceed maximum length")

    @classmethod
    def _validate_element_type(cls, element: Any) -> Any:
        if not isinstance(element, DataField):
            raise TypeError(f"{cls.__name__} must have a DataField as its contained element")
        if element.parent is not None:
            raise ValueError("The element DataField already has a parent")
        return element

    def get_initial_value(self, data: Any = None) -> Any:
        initial = super().get_initial_value(data)
        if self.required and initial is _MISSING:
            return []
        return initial

    def _validate_model(self, changes: Any, options: Optional[dict] = None) -> None:
        if not type(self.element).recursive:
            return
        for element in changes:
            self.element._validate_model(element, options)

    def _cast(self, value: Any) -> Any:
        if isinstance(value, dict):
            indexed = {}
            for k, v in value.items():
                try:
                    i = int(k)
                except (TypeError, ValueError):
                    continue
                if i >= 0:
                    indexed[i] = v
            if not indexed:
                return []
            arr = [_MISSING] * (max(indexed) + 1)
            for i, v in indexed.items():
                arr[i] = v
            return arr
        if isinstance(value, (set, frozenset, tuple)):
            return list(value)
        return value if isinstance(value, list) else [value]

    def _clean_type(self, value: list, options: dict) -> list:
        # Arrays are replaced as a whole, so elements are always cleaned fully
        options = {**options, 'partial': False}
        cleaned = [self.element.clean(v, options) for v in value]
        return [None if v is _MISSING else v for v in cleaned]

    def _validate_type(self, value: Any, options: dict) -> Any:
        if not isinstance(value, list):
            raise ValueError("must be an Array")
        if len(value) < self.min:
            raise ValueError(f"cannot have fewer than {self.min} elements")
        if len(value) > self.max:
            raise ValueError(f"cannot have more than {self.max} elements")
        return self._validate_elements(value, options)

    def _validate_elements(self, value: list, options: dict) -> Optional[ValidationFailure]:
        array_failure = ValidationFailure()
        for i, v in enumerate(value):
            failure = self._validate_element(v, {**options, 'partial': False})
            if failure is not None:
                array_failure.elements.append({'id': i, 'failure': failure})
                array_failure.unresolved = array_failure.unresolved or failure.unresolved
        return array_failure if array_failure.elements else None

    def _validate_element(self, value: Any, options: dict) -> Optional[ValidationFailure]:
        return self.element.validate(value, options)

    def initialize(self, value: Any, model: Any, options: Optional[dict] = None) -> Any:
        if is_nullish(value):
            return None if value is _MISSING else value
        return [self.element.initialize(v, model, options) for v in value]

    def _update_diff(self, source: dict, key: str, value: Any, difference: dict, options: dict) -> None:
        current = source.get(key, _MISSING)
        value = apply_special_keys(value)
        if values_equal(value, current):
            return
        source[key] = value
        difference[key] = deep_clone(value)

    def _update_commit(self, source: dict, key: str, value: Any, diff: Any, options: dict) -> None:
        s = source.get(key, _MISSING)
        if not isinstance(s, list) or not isinstance(value, list):
            super()._update_commit(source, key, value, diff, options)
            return
        s[:] = value

    def to_object(self, value: Any) -> Any:
        if is_nullish(value):
            return value
        return [self.element.to_object(v) for v in value]

    def apply(self, fn: Union[str, Callable], value: Any = None, options: Optional[dict] = None) -> Any:
        options = options or {}
        value = [] if value is None else value
        DataField.apply(self, fn, value, options)
        if not isinstance(value, list):
            return value
        if not value and options.get('initialize_arrays'):
            value = [_MISSING]
        results = []
        for v in value:
            r = self.element.apply(fn, v, options)
            if not options.get('filter') or not is_nullish(r) and r != {} and r != []:
                results.append(r)
        return results

    def _get_field(self, path: List[str]) -> Optional[DataField]:
        if not path:
            return self
        if path.pop(0) != self.element.name:
            return None
        return self.element._get_field(path)

    def migrate_source(self, source_data: dict, field_data: Any) -> None:
        if not isinstance(field_data, list):
            return
        for entry in field_data:
            self.element.migrate_source(source_data, entry)


class SetField(ArrayField):
    """An array of unique, hashable values, initialized as a ``set``.

    With fallback enabled, invalid elements are dropped instead of failing
    the whole field.
    """

    def _validate_elements(self, value: list, options: dict) -> Optional[ValidationFailure]:
        set_failure = ValidationFailure()
        for i in range(len(value) - 1, -1, -1):
            failure = self._validate_element(value[i], options)
            if failure is None:
                continue
            set_failure.elements.insert(0, {'id': i, 'failure': failure})

            # Repaired internally by the element
            if not failure.unresolved and failure.fallback is not _MISSING:
                continue

            if options.get('fallback'):
                del value[i]
                failure.dropped = True
                failure.unresolved = False
            else:
                set_failure.unresolved = True

        if set_failure.elements:
            if options.get('fallback') and not set_failure.unresolved:
                set_failure.fallback = value
            return set_failure
        return None

    def initialize(self, value: Any, model: Any, options: Optional[dict] = None) -> Any:
        if is_nullish(value):
            return None if value is _MISSING else value
        return set(super().initialize(value, model, options))

    def to_object(self, value: Any) -> Any:
        if is_nullish(value):
            return value
        return [self.element.to_object(v) for v in value]


# ============================================================
# Embedded Model Fields
# ============================================================

def _require_model_class(model: Any, message: str) -> None:
    from .model import DataModel
    if not (isinstance(model, type) and issubclass(model, DataModel)):
        raise TypeError(message)


class EmbeddedDataField(SchemaField):
    """A field holding a nested DataModel instance.

    The field's schema is an independent copy of the model's own schema, and
    each embedded instance reports this field as its ``schema``.
    """

    def __init__(self, model: type, **options: Any):
        _require_model_class(model, "An EmbeddedDataField must specify a DataModel class as its type")
        super().__init__(model.define_schema(), **options)
        self.model = model

    def clean(self, value: Any, options: Optional[dict] = None) -> Any:
        return super().clean(value, {**(options or {}), 'source': value})

    def _cast(self, value: Any) -> Any:
        if callable(getattr(value, 'to_object', None)):
            value = value.to_object()
        return value if isinstance(value, dict) else {}

    def validate(self, value: Any, options: Optional[dict] = None) -> Optional[ValidationFailure]:
        return super().validate(value, {**(options or {}), 'source': value})

    def initialize(self, value: Any, model: Any, options: Optional[dict] = None) -> Any:
        if is_nullish(value):
            return None if value is _MISSING else value
        instance = self.model(value, parent=model, **_context(options))
        instance._attach_schema(self)
        return instance

    def to_object(self, value: Any) -> Any:
        if is_nullish(value):
            return value
        return value.to_object(False)

    def migrate_source(self, source_data: dict, field_data: Any) -> None:
        if not isinstance(field_data, dict):
            return
        self.model.migrate_data_safe(field_data)

    def _validate_model(self, changes: Any, options: Optional[dict] = None) -> None:
        self.model.validate_joint(changes)


class ModelCollection(dict):
    """The initialized value of an EmbeddedCollectionField.

    Maps record ``_id`` to model instance. Records which fail to construct are
    left out and their ids recorded in ``invalid_ids``.
    """

    def __init__(self, model_class: type, name: str, parent: Any):
        super().__init__()
        self.model_class = model_class
        self.name = name
        self.parent = parent
        self.invalid_ids: set = set()

    def initialize(self, records: List[dict], options: Optional[dict] = None) -> "ModelCollection":
        """Rebuild the collection from source records."""
        options = options or {}
        context = _context(options)
        self.clear()
        self.invalid_ids.clear()
        for record in records or ():
            record_id = record.get('_id') if isinstance(record, dict) else None
            try:
                model = self.model_class(record, parent=self.parent, **context)
            except (DataModelValidationError, TypeError, ValueError) as err:
                self._handle_invalid(record_id, err, get_option(options, 'strict'))
                continue
            self[model._id] = model
        return self

    def _handle_invalid(self, record_id: Any, err: Exception, strict: bool) -> None:
        self.invalid_ids.add(record_id)
        message = "Failed to initialize %s [%s] in %s:\n%s"
        args = (self.model_class.__name__, record_id, self.name, err)
        if strict:
            logger.error(message, *args)
        else:
            logger.warning(message, *args)

    def to_object(self, source: bool = True) -> List[dict]:
        return [record.to_object(source) for record in self.values()]

    def __repr__(self) -> str:
        return f"ModelCollection({self.model_class.__name__}, size={len(self)})"


class EmbeddedCollectionField(ArrayField):
    """A list of embedded records, each a DataModel with an ``_id``.

    Updates are merged per record by ``_id``; records with unknown ids are
    created. The initialized value is a ModelCollection which is reused
    across re-initialization.
    """

    _defaults = {**ArrayField._defaults, 'readonly': True}

    def __init__(self, element: type, **options: Any):
        super().__init__(element, **options)
        self.readonly = True

    @classmethod
    def _validate_element_type(cls, element: Any) -> Any:
        _require_model_class(element, "An EmbeddedCollectionField must specify a DataModel subclass as its type")
        return element

    @property
    def model(self) -> type:
        return self.element

    @property
    def schema(self) -> SchemaField:
        return self.model.schema

    def _cast(self, value: Any) -> Any:
        if isinstance(value, ModelCollection):
            return value.to_object()
        return super()._cast(value)

    def _clean_type(self, value: list, options: dict) -> list:
        if get_option(options, 'recursive') is False:
            options = {**options, 'partial': False}
        return [self._clean_element(v, options) for v in value]

    def _clean_element(self, value: Any, options: dict) -> Any:
        if not isinstance(value, dict):
            value = self.schema._cast(value) if not is_nullish(value) else {}
        if not options.get('partial') and not value.get('_id'):
            value['_id'] = random_id(16)
        return self.schema.clean(value, {**options, 'source': value})

    def _validate_elements(self, value: list, options: dict) -> Optional[ValidationFailure]:
        collection_failure = ValidationFailure()
        for v in value:
            failure = self.schema.validate(v, {**options, 'source': v})
            if failure is not None and not options.get('drop_invalid_embedded'):
                entry = {'id': _read(v, '_id'), 'failure': failure}
                name = _read(v, 'name')
                if name is not _MISSING:
                    entry['name'] = name
                collection_failure.elements.append(entry)
                collection_failure.unresolved = collection_failure.unresolved or failure.unresolved
        return collection_failure if collection_failure.elements else None

    def _validate_model(self, changes: Any, options: Optional[dict] = None) -> None:
        pass

    def initialize(self, value: Any, model: Any, options: Optional[dict] = None) -> Any:
        collection = model.__dict__.get(self.name)
        if not isinstance(collection, ModelCollection):
            collection = ModelCollection(self.model, self.name, model)
        return collection.initialize(value if isinstance(value, list) else [], options)

    def _update_diff(self, source: dict, key: str, value: Any, difference: dict, options: dict) -> None:
        if not isinstance(value, list):
            return

        if get_option(options, 'recursive') is False:
            value = apply_special_keys(value)
            source[key] = value
            difference[key] = deep_clone(value)
            return

        records = source.setdefault(key, [])
        by_id = {obj.get('_id'): obj for obj in records}
        diff_list: List[dict] = []
        difference[key] = diff_list
        for v in value:
            existing = by_id.get(v.get('_id')) if isinstance(v, dict) else None
            if existing is not None:
                element_diff: Dict[str, Any] = {}
                type_changed = "type" in v
                self.schema._add_types(existing, v)
                self.schema._update_diff({"_source": existing}, "_source", v, element_diff, options)
                d = element_diff.get("_source", {})
                if d:
                    d['_id'] = v['_id']
                    diff_list.append(d)
                if not type_changed:
                    v.pop("type", None)
            else:
                created = self._clean_element(apply_special_keys(v), {'partial': False})
                records.append(created)
                diff_list.append(created)

        if not diff_list:
            del difference[key]

    def _update_commit(self, source: dict, key: str, value: Any, diff: Any, options: dict) -> None:
        src = source.get(key, _MISSING)
        if not isinstance(src, list) or not isinstance(value, list) or not isinstance(diff, list):
            DataField._update_commit(self, source, key, value, diff, options)
            return

        existing = {obj.get('_id'): obj for obj in src}
        changed = {obj.get('_id'): obj for obj in diff}
        rebuilt = []
        for obj in value:
            prior = existing.get(obj.get('_id'))
            if prior is not None:
                d = changed.get(obj.get('_id'))
                if d:
                    self.schema._update_commit({"_source": prior}, "_source", obj, d, options)
                rebuilt.append(prior)
            else:
                rebuilt.append(obj)
        src[:] = rebuilt

    def to_object(self, value: Any) -> Any:
        if is_nullish(value):
            return value
        if isinstance(value, ModelCollection):
            return value.to_object(False)
        return deep_clone(value)

    def apply(self, fn: Union[str, Callable], value: Any = None, options: Optional[dict] = None) -> Any:
        options = {**(options or {}), 'collection': self}
        value = [] if value is None else value
        DataField.apply(self, fn, value, options)
        results = []
        for v in value:
            r = self.schema.apply(fn, v, options)
            if not options.get('filter') or r:
                results.append(r)
        return results

    def _get_field(self, path: List[str]) -> Optional[DataField]:
        if not path:
            return self
        return self.schema._get_field(path)

    def migrate_source(self, source_data: dict, field_data: Any) -> None:
        if not isinstance(field_data, list):
            return
        for entry in field_data:
            if isinstance(entry, dict):
                self.model.migrate_data_safe(entry)


__all__ = [
    "ComputedValue",
    "DataField", "SchemaField",
    "BooleanField", "NumberField", "StringField", "ObjectField", "AnyField", "DocumentIdField",
    "TypedObjectField", "ArrayField", "SetField",
    "EmbeddedDataField", "EmbeddedCollectionField", "ModelCollection",
]
