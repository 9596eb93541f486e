"""
Polymorphic type data for tabledata documents.

A document with a ``type`` discriminator stores its type-specific payload in
a ``system`` field. The TypeDataField resolves the payload model from a
TypeDataRegistry by ``(document_name, type)``; the payload is a
TypeDataModel which the document notifies at each lifecycle step.

Example:
    from tabledata import (Document, DocumentIdField, NumberField, StringField,
                           TypeDataField, TypeDataModel, TYPE_DATA_MODELS)

    class CharacterData(TypeDataModel):
        @classmethod
        def define_schema(cls):
            return {"level": NumberField(integer=True, min=1, initial=1)}

    TYPE_DATA_MODELS.register("Actor", "character", CharacterData, provider="core")

    class Actor(Document):
        document_name = "Actor"

        @classmethod
        def define_schema(cls):
            return {
                "_id": DocumentIdField(),
                "type": StringField(required=True, blank=False, initial="character"),
                "system": TypeDataField("Actor"),
            }

    actor = Actor.create({"type": "character", "system": {"level": 3}})
    actor.system.level   # 3
"""

import logging
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from .fields import ObjectField, _context, _read
from .model import DataModel
from .utils import deep_clone, random_id

logger = logging.getLogger(__name__)


# ============================================================
# Registry
# ============================================================

class TypeDataRegistry:
    """Maps ``(document_name, type)`` to a TypeDataModel class and its provider."""

    def __init__(self) -> None:
        self._models: Dict[str, Dict[str, Tuple[type, Any]]] = {}

    def register(self, document_name: str, type_name: str, model: type, provider: Any = None) -> None:
        if not (isinstance(model, type) and issubclass(model, TypeDataModel)):
            raise TypeError("Registered type data models must be TypeDataModel subclasses")
        self._models.setdefault(document_name, {})[type_name] = (model, provider)

    def unregister(self, document_name: str, type_name: str) -> None:
        self._models.get(document_name, {}).pop(type_name, None)

    def get_model(self, document_name: str, type_name: Optional[str]) -> Optional[type]:
        entry = self._models.get(document_name, {}).get(type_name) if type_name else None
        return entry[0] if entry else None

    def get_provider(self, document_name: str, type_name: Optional[str]) -> Any:
        entry = self._models.get(document_name, {}).get(type_name) if type_name else None
        return entry[1] if entry else None

    def types(self, document_name: str) -> List[str]:
        return list(self._models.get(document_name, {}))

    def __contains__(self, key: Tuple[str, str]) -> bool:
        document_name, type_name = key
        return type_name in self._models.get(document_name, {})


# Default registry shared by documents which do not declare their own
TYPE_DATA_MODELS = TypeDataRegistry()


# ============================================================
# Type Data Field
# ============================================================

class TypeDataField(ObjectField):
    """The ``system`` field of a typed document.

    When the document's ``type`` has a registered TypeDataModel, every
    operation is delegated to that model's schema; otherwise the field
    behaves as a free-form ObjectField.
    """

    recursive = True
    carries_type_data = True

    def __init__(self, document_name: str, registry: Optional[TypeDataRegistry] = None, **options: Any):
        super().__init__(**options)
        self.document_name = document_name
        self.registry = registry

    @staticmethod
    def get_model_provider(model: "TypeDataModel") -> Any:
        """Resolve the provider which registered the type of the model's parent document."""
        document = model.parent
        if document is None:
            return None
        registry = getattr(type(document), "registry", None) or TYPE_DATA_MODELS
        document_name = getattr(type(document), "document_name", None)
        return registry.get_provider(document_name, document._source.get("type"))

    def get_model_for_type(self, type_name: Optional[str]) -> Optional[type]:
        if not type_name:
            return None
        registry = self.registry if self.registry is not None else TYPE_DATA_MODELS
        return registry.get_model(self.document_name, type_name)

    def _source_type(self, source: Any) -> Optional[str]:
        if source is None:
            return None
        value = _read(source, "type")
        return value if isinstance(value, str) else None

    def get_initial_value(self, data: Any = None) -> Any:
        initial = super().get_initial_value(data)
        if isinstance(initial, dict):
            return self._clean_type(initial, {"partial": False, "source": data})
        return initial

    def _clean_type(self, value: Any, options: dict) -> Any:
        if not isinstance(value, dict):
            value = {}
        cls = self.get_model_for_type(self._source_type(options.get("source")))
        if cls is not None:
            return cls.clean_data(value, **{**options, "source": value})
        return value

    def initialize(self, value: Any, model: Any, options: Optional[dict] = None) -> Any:
        cls = self.get_model_for_type(model._source.get("type"))
        if cls is not None:
            return cls(value if isinstance(value, dict) else {}, parent=model, **_context(options))
        return deep_clone(value)

    def _update_diff(self, source: dict, key: str, value: Any, difference: dict, options: dict) -> None:
        cls = self.get_model_for_type(self._source_type(source))
        if cls is not None:
            cls.schema._update_diff(source, key, value, difference, options)
        else:
            super()._update_diff(source, key, value, difference, options)

    def _update_commit(self, source: dict, key: str, value: Any, diff: Any, options: dict) -> None:
        cls = self.get_model_for_type(self._source_type(source))
        if cls is not None:
            cls.schema._update_commit(source, key, value, diff, options)
        else:
            super()._update_commit(source, key, value, diff, options)

    def _validate_type(self, data: Any, options: dict) -> Any:
        result = super()._validate_type(data, options)
        if result is not None:
            return result
        cls = self.get_model_for_type(self._source_type(options.get("source")))
        if cls is None:
            return None
        return cls.schema.validate(data, {**options, "source": data})

    def _validate_model(self, changes: Any, options: Optional[dict] = None) -> None:
        cls = self.get_model_for_type(self._source_type((options or {}).get("source")))
        if cls is not None:
            cls.validate_joint(changes)

    def to_object(self, value: Any) -> Any:
        if callable(getattr(value, "to_object", None)):
            return value.to_object(False)
        return deep_clone(value)

    def _add_types(self, source: Any, changes: Any, options: Optional[dict] = None) -> None:
        options = options or {}
        type_name = self._source_type(options.get("changes")) or self._source_type(options.get("source"))
        cls = self.get_model_for_type(type_name)
        if cls is not None:
            cls.schema._add_types(source, changes, options)

    def migrate_source(self, source_data: dict, field_data: Any) -> None:
        if not isinstance(field_data, dict):
            return
        cls = self.get_model_for_type(self._source_type(source_data))
        if cls is not None:
            cls.migrate_data_safe(field_data)


# ============================================================
# Type Data Model
# ============================================================

class TypeDataModel(DataModel):
    """Base class for the type-specific ``system`` payload of a document.

    The lifecycle hooks are extension points invoked by the owning
    Document. A ``_pre_*`` hook which returns False cancels the operation.
    """

    schema_name = "system"

    def __init__(self, data: Any = None, **options: Any) -> None:
        super().__init__(data, **options)
        object.__setattr__(self, "_model_provider", TypeDataField.get_model_provider(self))

    @property
    def model_provider(self) -> Any:
        """The provider which registered this type, if known."""
        return self.__dict__.get("_model_provider")

    def prepare_base_data(self) -> None:
        """Prepare data before embedded documents and derived data."""

    def prepare_derived_data(self) -> None:
        """Compute derived values after the base data is prepared."""

    def _pre_create(self, data: dict, options: dict, user: Any) -> Optional[bool]:
        pass

    def _on_create(self, data: dict, options: dict, user_id: Any) -> None:
        pass

    def _pre_update(self, changes: dict, options: dict, user: Any) -> Optional[bool]:
        pass

    def _on_update(self, changed: dict, options: dict, user_id: Any) -> None:
        pass

    def _pre_delete(self, options: dict, user: Any) -> Optional[bool]:
        pass

    def _on_delete(self, options: dict, user_id: Any) -> None:
        pass


# ============================================================
# Document
# ============================================================

def _user_id(user: Any) -> Any:
    return getattr(user, "id", user)


class Document(DataModel):
    """A top-level model which drives the lifecycle of its type data.

    Subclasses set ``document_name`` and define a schema with ``type`` and
    ``system`` fields. Persistence is out of scope: ``create``, ``update``
    and ``delete`` run the hooks around the in-memory operation.
    """

    document_name: ClassVar[str] = "Document"
    registry: ClassVar[Optional[TypeDataRegistry]] = None

    @classmethod
    def types(cls) -> List[str]:
        """The registered sub-types of this document."""
        return (cls.registry or TYPE_DATA_MODELS).types(cls.document_name)

    def _initialize(self, options: Optional[Dict[str, Any]] = None) -> None:
        super()._initialize(options)
        self.prepare_data()

    def _type_data(self) -> Optional[TypeDataModel]:
        system = self.__dict__.get("system")
        return system if isinstance(system, TypeDataModel) else None

    def prepare_data(self) -> None:
        """Prepare base data, then derived data, of the document and its type data."""
        self.prepare_base_data()
        self.prepare_derived_data()

    def prepare_base_data(self) -> None:
        system = self._type_data()
        if system is not None:
            system.prepare_base_data()

    def prepare_derived_data(self) -> None:
        system = self._type_data()
        if system is not None:
            system.prepare_derived_data()

    # ----- Lifecycle -----

    @classmethod
    def create(cls, data: Optional[dict] = None, *, user: Any = None, **options: Any) -> Optional["Document"]:
        """Construct a new document, honoring ``_pre_create`` cancellation.

        Returns:
            The document, or None if a pre-create hook cancelled it.
        """
        data = dict(data or {})
        if not data.get("_id"):
            data["_id"] = random_id(16)
        document = cls(data, strict=True)
        source = document.to_object()
        if document._pre_create(source, options, user) is False:
            logger.debug("Creation of %s was cancelled by a pre-create hook", cls.__name__)
            return None
        document._on_create(document.to_object(), options, _user_id(user))
        return document

    def update(self, changes: Optional[dict] = None, *, user: Any = None, **options: Any) -> Optional[Dict[str, Any]]:
        """Update the document source, honoring ``_pre_update`` cancellation.

        Returns:
            The applied diff, or None if a pre-update hook cancelled it.
        """
        changes = {} if changes is None else changes
        if self._pre_update(changes, options, user) is False:
            logger.debug("Update of %s [%s] was cancelled by a pre-update hook", type(self).__name__, self._id_label)
            return None
        diff = self.update_source(changes, **options)
        if diff and not options.get("dry_run"):
            self._on_update(diff, options, _user_id(user))
        return diff

    def delete(self, *, user: Any = None, **options: Any) -> bool:
        """Delete the document, honoring ``_pre_delete`` cancellation."""
        if self._pre_delete(options, user) is False:
            logger.debug("Deletion of %s [%s] was cancelled by a pre-delete hook", type(self).__name__, self._id_label)
            return False
        self._on_delete(options, _user_id(user))
        return True

    @property
    def _id_label(self) -> Any:
        return self._source.get("_id")

    def _pre_create(self, data: dict, options: dict, user: Any) -> Optional[bool]:
        system = self._type_data()
        if system is not None:
            return system._pre_create(data, options, user)
        return None

    def _on_create(self, data: dict, options: dict, user_id: Any) -> None:
        system = self._type_data()
        if system is not None:
            system._on_create(data, options, user_id)

    def _pre_update(self, changes: dict, options: dict, user: Any) -> Optional[bool]:
        system = self._type_data()
        if system is not None:
            return system._pre_update(changes, options, user)
        return None

    def _on_update(self, changed: dict, options: dict, user_id: Any) -> None:
        system = self._type_data()
        if system is not None:
            system._on_update(changed, options, user_id)

    def _pre_delete(self, options: dict, user: Any) -> Optional[bool]:
        system = self._type_data()
        if system is not None:
            return system._pre_delete(options, user)
        return None

    def _on_delete(self, options: dict, user_id: Any) -> None:
        system = self._type_data()
        if system is not None:
            system._on_delete(options, user_id)


__all__ = [
    "TypeDataRegistry", "TYPE_DATA_MODELS",
    "TypeDataField", "TypeDataModel", "Document",
]
