"""
Sealed source mapping for tabledata models.

A model's ``_source`` is a ``SourceData``: a dict whose top-level key set is
fixed once sealed. Existing keys may be reassigned, but no key can be added
or removed except by the model's own update commit, which may only restore
keys of the model schema. Nested values stay ordinary dicts and lists.

Legacy key aliases registered before sealing resolve through ``source[old]``
with a logged deprecation warning, without appearing in ``keys()``.

Example:
    source = SourceData({"year": 0, "month": 1}, allowed=("year", "month"))
    source.seal()
    source["month"] = 2          # fine
    source["day"] = 3            # TypeError
    del source["year"]           # TypeError
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from .utils import _MISSING, get_property, set_property

logger = logging.getLogger(__name__)


class SourceData(dict):
    """Dict with a frozen top-level key set once sealed."""

    __slots__ = ('_allowed', '_aliases', '_sealed')

    def __init__(self, data: Optional[dict] = None, allowed: Iterable[str] = ()):
        super().__init__(data or {})
        self._allowed = frozenset(allowed) | frozenset(self.keys())
        self._aliases: Dict[str, Tuple[str, Any]] = {}
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> "SourceData":
        self._sealed = True
        return self

    def add_alias(self, old_key: str, new_key: str, value: Any = _MISSING) -> None:
        """Resolve ``source[old_key]`` to the dot-path ``new_key``.

        If ``value`` is given the alias always yields it instead.
        """
        if self._sealed:
            raise TypeError("Cannot add an alias to a sealed source")
        if old_key in self:
            return
        self._aliases[old_key] = (new_key, value)

    def __missing__(self, key: str) -> Any:
        alias = self._aliases.get(key)
        if alias is None:
            raise KeyError(key)
        new_key, value = alias
        logger.warning("Accessing source key %r which has been migrated to %r", key, new_key)
        if value is not _MISSING:
            return value
        return get_property(self, new_key)

    def _check_key(self, key: str) -> None:
        if self._sealed and key not in self:
            raise TypeError(f"Cannot add property {key!r}, source is sealed")

    def __setitem__(self, key: str, value: Any) -> None:
        if key not in self and key in self._aliases:
            set_property(self, self._aliases[key][0], value)
            return
        self._check_key(key)
        super().__setitem__(key, value)

    def __delitem__(self, key: str) -> None:
        if self._sealed:
            raise TypeError(f"Cannot delete property {key!r}, source is sealed")
        super().__delitem__(key)

    def pop(self, key: str, *args: Any) -> Any:
        if self._sealed:
            raise TypeError(f"Cannot delete property {key!r}, source is sealed")
        return super().pop(key, *args)

    def popitem(self) -> Tuple[str, Any]:
        if self._sealed:
            raise TypeError("Cannot delete properties, source is sealed")
        return super().popitem()

    def clear(self) -> None:
        if self._sealed:
            raise TypeError("Cannot delete properties, source is sealed")
        super().clear()

    def setdefault(self, key: str, default: Any = None) -> Any:
        if key not in self:
            self[key] = default
        return dict.__getitem__(self, key)

    def update(self, *args: Any, **kwargs: Any) -> None:
        for key, value in dict(*args, **kwargs).items():
            self[key] = value

    def __ior__(self, other: Any) -> "SourceData":
        self.update(other)
        return self

    def _assign(self, key: str, value: Any) -> None:
        """Set a key as part of a committed update, restoring removed schema keys."""
        if key not in self and key not in self._allowed:
            raise TypeError(f"Cannot add property {key!r}, it is not part of the schema")
        super().__setitem__(key, value)

    def _discard(self, key: str) -> None:
        """Remove a key as part of a committed update."""
        if key in self:
            super().__delitem__(key)

    def copy(self) -> dict:
        return dict(self)

    def __reduce__(self) -> Any:
        return (dict, (dict(self),))

    def __repr__(self) -> str:
        return f"SourceData({dict.__repr__(self)})"


def is_sealed(data: Any) -> bool:
    return isinstance(data, SourceData) and data.sealed


def assign_key(container: Any, key: str, value: Any) -> None:
    """Set ``key`` on a source container, honoring sealed sources."""
    if isinstance(container, SourceData):
        container._assign(key, value)
    else:
        container[key] = value


def discard_key(container: Any, key: str) -> None:
    """Remove ``key`` from a source container, honoring sealed sources."""
    if isinstance(container, SourceData):
        container._discard(key)
    elif isinstance(container, dict):
        container.pop(key, None)


__all__ = ["SourceData", "is_sealed", "assign_key", "discard_key"]
