"""
Option dictionaries for tabledata.

The schema engine threads plain option dicts through every clean, validate
and update call. These TypedDicts document the recognised keys, and
``get_option`` resolves a key against the defaults below.

Example:
    from tabledata.config import ValidationOptions, get_option

    options: ValidationOptions = {"partial": True, "fallback": False}
    get_option(options, "drop_invalid_embedded")   # False
"""

from typing import Any, Optional

try:
    from typing import TypedDict
except ImportError:
    from typing_extensions import TypedDict


class ModelContext(TypedDict, total=False):
    """Construction context for a DataModel."""

    parent: Any
    """The DataModel which owns this one, or None for a root model."""

    strict: bool
    """Raise on unresolved validation failures instead of logging them. Default: True."""

    fallback: bool
    """Replace invalid fields with their initial value. Default: ``not strict``."""

    drop_invalid_embedded: bool
    """Ignore invalid records of embedded collections. Default: ``not strict``."""


class CleanOptions(TypedDict, total=False):
    """Options for DataField.clean."""

    partial: bool
    """Only clean keys present in the data. Default: False."""

    source: Any
    """The root source object being cleaned."""

    recursive: bool
    """Whether nested objects are being merged. Default: True."""


class ValidationOptions(TypedDict, total=False):
    """Options for DataField.validate."""

    partial: bool
    """Only validate keys present in the data. Default: False."""

    fallback: bool
    """Repair invalid fields with their initial value. Default: False."""

    drop_invalid_embedded: bool
    """Skip failures of embedded collection records. Default: False."""

    source: Any
    """The root source object being validated."""


class UpdateOptions(TypedDict, total=False):
    """Options for DataModel.update_source."""

    dry_run: bool
    """Compute and validate the diff without committing it. Default: False."""

    fallback: bool
    """Accepted for parity with construction; updates always validate strictly. Default: False."""

    recursive: bool
    """Merge nested objects key by key rather than replacing them. Default: True."""


# Default option values
OPTION_DEFAULTS = {
    'strict': True,
    'partial': False,
    'fallback': False,
    'drop_invalid_embedded': False,
    'recursive': True,
    'dry_run': False,
}


def get_option(options: Optional[dict], key: str, default: Any = None) -> Any:
    """Get an option value with fallback to defaults."""
    if options is None:
        return OPTION_DEFAULTS.get(key, default)
    return options.get(key, OPTION_DEFAULTS.get(key, default))


__all__ = [
    "ModelContext", "CleanOptions", "ValidationOptions", "UpdateOptions",
    "OPTION_DEFAULTS", "get_option",
]
