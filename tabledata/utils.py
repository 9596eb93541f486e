"""
Object helpers for tabledata.

Plain-dict utilities used by the schema engine: cloning, diffing, merging,
dot-notation expansion and the ``-=key`` / ``==key`` special-key conventions
used by update payloads.

Example:
    from tabledata.utils import expand_object, merge_object, diff_object

    changes = expand_object({"abilities.str": 14})
    # {"abilities": {"str": 14}}

    merged = merge_object({"a": 1, "b": {"c": 2}}, {"b": {"-=c": None}},
                          perform_deletions=True)
    # {"a": 1, "b": {}}
"""

import math
import secrets
import string
from typing import Any, Dict, Optional, Tuple

_MISSING = object()  # Sentinel for undefined values (absent keys)

_ID_CHARS = string.ascii_letters + string.digits

# Keys which may never be written through a dot-notation path
_SKIPPED_PROPERTIES = frozenset({"__proto__", "constructor", "prototype", "__class__", "__dict__"})

_DELETION_VALUE_ERROR = (
    "Removing a key using the -= deletion syntax requires the value of that"
    " deletion key to be null, for example {-=key: null}"
)


def is_nullish(value: Any) -> bool:
    """True for None (null) or the undefined sentinel."""
    return value is None or value is _MISSING


def is_deletion_key(key: Any) -> bool:
    """Test whether a key uses the ``-=`` deletion or ``==`` replacement prefix."""
    if not isinstance(key, str) or len(key) < 3:
        return False
    return key[1] == "=" and key[0] in ("=", "-")


def is_empty(value: Any) -> bool:
    if is_nullish(value):
        return True
    if isinstance(value, (dict, list, tuple, set, frozenset)):
        return not value
    return False


def is_number(value: Any) -> bool:
    """True for int or float values, excluding bool."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality which does not conflate booleans with numbers.

    ``True == 1`` holds in Python, but a boolean field changing to the
    integer ``1`` is still a change.
    """
    if a is b:
        return True
    if isinstance(a, bool) or isinstance(b, bool):
        return False
    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(values_equal(v, b[k]) for k, v in a.items())
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(values_equal(x, y) for x, y in zip(a, b))
    if is_number(a) and is_number(b):
        if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
            return True
        return a == b
    if type(a) is not type(b) and not (isinstance(a, str) and isinstance(b, str)):
        return False
    try:
        return bool(a == b)
    except Exception:
        return False


def deep_clone(original: Any, strict: bool = False, _d: int = 0) -> Any:
    """Clone nested dicts and lists, returning other objects by reference.

    Sets are copied element-wise. Mapping subclasses (including sealed model
    sources) come back as plain dicts.

    Raises:
        RecursionError: If the structure nests deeper than 100 levels.
        TypeError: In strict mode, if an unsupported object is encountered.
    """
    if _d > 100:
        raise RecursionError(
            "Maximum depth exceeded. Be sure your object does not contain cyclical data structures."
        )
    _d += 1
    if original is None or original is _MISSING or isinstance(original, (str, int, float, bool)):
        return original
    if isinstance(original, dict):
        return {k: deep_clone(v, strict, _d) for k, v in original.items()}
    if isinstance(original, list):
        return [deep_clone(v, strict, _d) for v in original]
    if isinstance(original, tuple):
        return tuple(deep_clone(v, strict, _d) for v in original)
    if isinstance(original, set):
        return {deep_clone(v, strict, _d) for v in original}
    if strict:
        raise TypeError("deep_clone cannot clone advanced objects")
    return original


def apply_special_keys(obj: Any) -> Any:
    """Resolve ``-=key`` and ``==key`` markers into a plain clone of ``obj``."""
    if isinstance(obj, list):
        return [apply_special_keys(v) for v in obj]
    if not isinstance(obj, dict):
        return obj
    clone: Dict[str, Any] = {}
    for key, v in obj.items():
        if is_deletion_key(key):
            if key[0] == "-":
                if v is not None:
                    raise ValueError(_DELETION_VALUE_ERROR)
                clone.pop(key[2:], None)
                continue
            clone[key[2:]] = apply_special_keys(v)
            continue
        clone[key] = apply_special_keys(v)
    return clone


def _diff_special(original: dict, key: str, value: Any, inner: bool) -> Tuple[bool, Any]:
    target_key = key[2:]
    has_key = target_key in original
    if inner and not has_key:
        return False, None
    if key[0] == "-":
        if value is not None:
            raise ValueError(_DELETION_VALUE_ERROR)
        return has_key, None
    return True, apply_special_keys(value)


def _diff_value(original: dict, key: str, v1: Any, inner: bool, deletion_keys: bool,
                _d: int) -> Tuple[bool, Any]:
    has_key = key in original
    if inner and not has_key:
        return False, None
    v0 = original.get(key, _MISSING)

    if is_nullish(v1):
        return v0 is not v1, v1

    # Change of type
    if isinstance(v0, dict) != isinstance(v1, dict):
        return True, apply_special_keys(v1)

    if isinstance(v0, dict):
        if not v1:
            return False, None
        d = _diff_object(v0, v1, inner, deletion_keys, _d + 1)
        return bool(d), d

    if values_equal(v0, v1):
        return False, None
    return True, apply_special_keys(v1)


def _diff_object(original: dict, other: dict, inner: bool, deletion_keys: bool, _d: int) -> Dict[str, Any]:
    if _d > 100:
        raise RecursionError("Maximum diff_object depth exceeded. Be careful of cyclical data structures.")
    diff: Dict[str, Any] = {}
    for key, value in other.items():
        if deletion_keys and is_deletion_key(key):
            changed, difference = _diff_special(original, key, value, inner)
        else:
            changed, difference = _diff_value(original, key, value, inner, deletion_keys, _d)
        if changed:
            diff[key] = difference
    return diff


def diff_object(original: dict, other: dict, inner: bool = False, deletion_keys: bool = False) -> Dict[str, Any]:
    """Deep-diff ``other`` against ``original``, returning only what differs.

    Args:
        original: The reference object.
        other: The candidate object.
        inner: Only consider keys which already exist in ``original``.
        deletion_keys: Keep ``-=``/``==`` keys in the diff when they would
            delete or replace something.
    """
    return _diff_object(original, other, inner, deletion_keys, 0)


def set_property(obj: dict, key: str, value: Any) -> bool:
    """Set a possibly dot-delimited key on ``obj``. Returns whether anything changed."""
    if not key or key in _SKIPPED_PROPERTIES:
        return False
    target = obj
    if "." in key:
        parts = key.split(".")
        if any(p in _SKIPPED_PROPERTIES for p in parts):
            return False
        key = parts.pop()
        for p in parts:
            if p not in target:
                target[p] = {}
            target = target[p]
    if key not in target or not values_equal(target[key], value):
        target[key] = value
        return True
    return False


def get_property(obj: Any, key: str, default: Any = None) -> Any:
    """Read a dot-delimited key from nested dicts."""
    target = obj
    for part in key.split("."):
        if not isinstance(target, dict) or part not in target:
            return default
        target = target[part]
    return target


def has_property(obj: Any, key: str) -> bool:
    return get_property(obj, key, _MISSING) is not _MISSING


def expand_object(obj: Any, _depth: int = 0) -> Any:
    """Expand a dict with dot-notation keys into nested dicts."""
    if _depth > 32:
        raise RecursionError("Maximum object expansion depth exceeded")
    if not obj:
        return obj
    if isinstance(obj, list):
        return [expand_object(v, _depth + 1) for v in obj]
    if not isinstance(obj, dict):
        return obj
    expanded: Dict[str, Any] = {}
    for k, v in obj.items():
        set_property(expanded, k, expand_object(v, _depth + 1))
    return expanded


def _merge_insert(original: dict, k: str, v: Any, _d: int, options: Dict[str, bool]) -> None:
    if options["perform_deletions"] and k.startswith("=="):
        original[k[2:]] = apply_special_keys(v)
        return
    if options["perform_deletions"] and k.startswith("-="):
        if v is not None:
            raise ValueError(_DELETION_VALUE_ERROR)
        original.pop(k[2:], None)
        return

    can_insert = (_d <= 1 and options["insert_keys"]) or (_d > 1 and options["insert_values"])
    if not can_insert:
        return
    if isinstance(v, dict):
        original[k] = merge_object({}, v, insert_keys=True, inplace=True,
                                   perform_deletions=options["perform_deletions"])
        return
    original[k] = v


def _merge_update(original: dict, k: str, v: Any, _d: int, options: Dict[str, bool]) -> None:
    x = original[k]
    if isinstance(v, dict) and isinstance(x, dict) and options["recursive"]:
        merge_object(x, v, _d=_d, **{**options, "inplace": True})
        return
    if options["overwrite"]:
        if options["enforce_types"] and x is not _MISSING and type(x) is not type(v):
            raise TypeError("Mismatched data types encountered during object merge.")
        original[k] = apply_special_keys(v)


def merge_object(
    original: dict,
    other: Optional[dict] = None,
    *,
    insert_keys: bool = True,
    insert_values: bool = True,
    overwrite: bool = True,
    recursive: bool = True,
    inplace: bool = True,
    enforce_types: bool = False,
    perform_deletions: bool = False,
    _d: int = 0,
) -> dict:
    """Merge ``other`` into ``original``, recursively by default.

    Args:
        insert_keys: Allow new top-level keys.
        insert_values: Allow new keys inside nested objects.
        overwrite: Replace existing values.
        recursive: Merge nested dicts instead of replacing them.
        inplace: Modify ``original`` rather than a clone of it.
        enforce_types: Raise when an existing value would change type.
        perform_deletions: Honor ``-=key`` and ``==key`` markers.

    Example:
        merge_object({"k1": "v1"}, {"k2": "v2"})
        # {"k1": "v1", "k2": "v2"}
    """
    other = other or {}
    if not isinstance(original, dict) or not isinstance(other, dict):
        raise TypeError("One of original or other are not Objects!")
    options = {
        "insert_keys": insert_keys, "insert_values": insert_values, "overwrite": overwrite,
        "recursive": recursive, "enforce_types": enforce_types, "perform_deletions": perform_deletions,
    }

    if _d == 0:
        if any("." in k for k in other):
            other = expand_object(other)
        if any("." in k for k in original):
            expanded = expand_object(original)
            if inplace:
                original.clear()
                original.update(expanded)
            else:
                original = expanded
        elif not inplace:
            original = deep_clone(original)

    for k, v in list(other.items()):
        if k in original:
            _merge_update(original, k, v, _d + 1, options)
        else:
            _merge_insert(original, k, v, _d + 1, options)
    return original


def random_id(length: int = 16) -> str:
    """Generate a random alphanumeric identifier."""
    return "".join(secrets.choice(_ID_CHARS) for _ in range(length))


def is_valid_id(value: Any) -> bool:
    """True for a 16-character alphanumeric identifier."""
    return isinstance(value, str) and len(value) == 16 and all(c in _ID_CHARS for c in value)


def type_name(value: Any) -> str:
    """Human-readable type name used in error messages."""
    if value is None:
        return "null"
    if value is _MISSING:
        return "undefined"
    if isinstance(value, list):
        return "Array"
    return type(value).__name__


__all__ = [
    "is_nullish", "is_deletion_key", "is_empty", "is_number", "values_equal",
    "deep_clone", "apply_special_keys", "diff_object", "set_property",
    "get_property", "has_property", "expand_object", "merge_object",
    "random_id", "is_valid_id", "type_name",
]
