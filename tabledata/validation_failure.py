"""
Structured validation failures for tabledata.

A ``ValidationFailure`` is a tree: each node carries an optional message and
the invalid value, a mapping of field name to child failure, and a list of
element failures for array-like fields. ``unresolved`` marks failures that
could not be repaired by fallback.

Example:
    from tabledata import ValidationFailure

    failure = ValidationFailure(message="Calendar validation errors:")
    failure.fields["month"] = ValidationFailure(
        invalid_value=13, message="must be at most 12", unresolved=True)
    failure.unresolved = True

    raise failure.as_error()
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .utils import _MISSING


class ValidationFailure:
    """A node in a tree of validation failures.

    Attributes:
        invalid_value: The value which failed validation.
        fallback: The replacement value applied by fallback, if any.
        dropped: Whether the invalid value was removed from its container.
        message: A human-readable description of the failure.
        unresolved: Whether the failure remains after fallback was applied.
        fields: Child failures keyed by field name.
        elements: Child failures of array-like fields, as dicts with ``id``,
            ``failure`` and optionally ``name``.
    """
    __slots__ = ('invalid_value', 'fallback', 'dropped', 'message', 'unresolved', 'fields', 'elements')

    def __init__(
        self,
        *,
        invalid_value: Any = _MISSING,
        fallback: Any = _MISSING,
        dropped: bool = False,
        message: Optional[str] = None,
        unresolved: bool = False,
    ):
        self.invalid_value = invalid_value
        self.fallback = fallback
        self.dropped = dropped
        self.message = message
        self.unresolved = unresolved
        self.fields: Dict[str, "ValidationFailure"] = {}
        self.elements: List[Dict[str, Any]] = []

    def is_empty(self) -> bool:
        """True if this failure has no child field or element failures."""
        return not self.fields and not self.elements

    def to_object(self) -> Dict[str, Any]:
        """Export the failure tree as a plain dict."""
        obj: Dict[str, Any] = {}
        if self.invalid_value is not _MISSING:
            obj['invalidValue'] = self.invalid_value
        if self.fallback is not _MISSING:
            obj['fallback'] = self.fallback
        if self.dropped:
            obj['dropped'] = True
        if self.message:
            obj['message'] = self.message
        if self.unresolved:
            obj['unresolved'] = True
        if self.fields:
            obj['fields'] = {k: v.to_object() for k, v in self.fields.items()}
        if self.elements:
            elements = []
            for entry in self.elements:
                e = {k: v for k, v in entry.items() if k != 'failure'}
                e['failure'] = entry['failure'].to_object()
                elements.append(e)
            obj['elements'] = elements
        return obj

    def as_error(self) -> "DataModelValidationError":
        """Wrap this failure in a raisable error."""
        return DataModelValidationError(self)

    def has_unresolved(self) -> bool:
        """True if this node or any descendant is unresolved."""
        if self.unresolved:
            return True
        if any(f.has_unresolved() for f in self.fields.values()):
            return True
        return any(e['failure'].has_unresolved() for e in self.elements)

    def _format(self, indent: int = 0) -> str:
        message = self.message or ""
        indent += 1
        pad = "  " * indent
        if self.fields:
            message += "\n"
            lines = [f"{pad}{name}: {sub._format(indent)}" for name, sub in self.fields.items()]
            message += "\n".join(lines)
        if self.elements:
            message += "\n"
            lines = []
            for entry in self.elements:
                name = entry.get('name')
                label = f"{name} [{entry['id']}]" if name else str(entry['id'])
                lines.append(f"{pad}{label}: {entry['failure']._format(indent)}")
            message += "\n".join(lines)
        return message

    def __str__(self) -> str:
        return self._format()

    def __repr__(self) -> str:
        parts = []
        if self.message:
            parts.append(f"message={self.message!r}")
        if self.invalid_value is not _MISSING:
            parts.append(f"invalid_value={self.invalid_value!r}")
        if self.unresolved:
            parts.append("unresolved=True")
        if self.fields:
            parts.append(f"fields={list(self.fields)!r}")
        if self.elements:
            parts.append(f"elements={len(self.elements)}")
        return f"ValidationFailure({', '.join(parts)})"


class DataModelValidationError(ValueError):
    """Raised when a DataModel fails strict validation.

    The message aggregates the whole failure tree; the tree itself remains
    available through ``failure`` for programmatic inspection.

    Example:
        # month = NumberField(integer=True, initial=1,
        #                     validate=lambda value, options: value <= 12)
        try:
            Calendar({"month": 13}, strict=True)
        except DataModelValidationError as e:
            e.get_failure("month").message   # "is not a valid value"
    """

    def __init__(self, failure: Union[ValidationFailure, str]):
        self.failure: Optional[ValidationFailure] = failure if isinstance(failure, ValidationFailure) else None
        super().__init__(str(failure))

    def get_failure(self, path: Union[str, List[str], None] = None) -> Optional[ValidationFailure]:
        """Retrieve the failure at a dot-delimited field path, or the root failure."""
        if self.failure is None:
            return None
        if not path:
            return self.failure
        parts = path.split(".") if isinstance(path, str) else list(path)
        failure: Optional[ValidationFailure] = self.failure
        for part in parts:
            if failure is None:
                return None
            if part in failure.fields:
                failure = failure.fields[part]
                continue
            failure = next((e['failure'] for e in failure.elements if str(e['id']) == part), None)
        return failure

    def get_all_failures(self) -> Dict[str, ValidationFailure]:
        """Flatten the tree into a mapping of dotted path to leaf failure."""
        if self.failure is None:
            return {}
        return dict(_iter_leaves(self.failure, ""))


def _iter_leaves(failure: ValidationFailure, prefix: str) -> Iterator[Tuple[str, ValidationFailure]]:
    if failure.is_empty():
        if prefix:
            yield prefix, failure
        return
    for name, sub in failure.fields.items():
        yield from _iter_leaves(sub, f"{prefix}.{name}" if prefix else name)
    for entry in failure.elements:
        key = str(entry['id'])
        yield from _iter_leaves(entry['failure'], f"{prefix}.{key}" if prefix else key)


__all__ = ["ValidationFailure", "DataModelValidationError"]
