"""
tabledata - Schema-validated data models with migration, diffing and updates

Models declare a schema of data fields. Construction migrates, cleans and
validates raw data into a sealed canonical source; ``update_source`` applies
changes as a validated, minimal diff.

Example:
    from tabledata import DataModel, NumberField, SchemaField, StringField

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

    calendar = Calendar({"date": {"year": 1492}})
    calendar.update_source({"date.month": 10})   # {"date": {"month": 10}}
"""

__version__ = "0.1.0"

# --- Failures ---
from .validation_failure import (
    ValidationFailure,
    DataModelValidationError,
)

# --- Fields ---
from .fields import (
    ComputedValue,
    DataField,
    SchemaField,
    BooleanField,
    NumberField,
    StringField,
    ObjectField,
    AnyField,
    DocumentIdField,
    TypedObjectField,
    ArrayField,
    SetField,
    EmbeddedDataField,
    EmbeddedCollectionField,
    ModelCollection,
)

# --- Models ---
from .model import DataModel, ValidationFailures
from .source import SourceData
from .type_data import (
    TypeDataRegistry,
    TYPE_DATA_MODELS,
    TypeDataField,
    TypeDataModel,
    Document,
)

# --- Options ---
from .config import (
    ModelContext,
    CleanOptions,
    ValidationOptions,
    UpdateOptions,
)

__all__ = [
    # Failures
    "ValidationFailure",
    "DataModelValidationError",
    # Fields
    "ComputedValue",
    "DataField",
    "SchemaField",
    "BooleanField",
    "NumberField",
    "StringField",
    "ObjectField",
    "AnyField",
    "DocumentIdField",
    "TypedObjectField",
    "ArrayField",
    "SetField",
    "EmbeddedDataField",
    "EmbeddedCollectionField",
    "ModelCollection",
    # Models
    "DataModel",
    "ValidationFailures",
    "SourceData",
    "TypeDataRegistry",
    "TYPE_DATA_MODELS",
    "TypeDataField",
    "TypeDataModel",
    "Document",
    # Options
    "ModelContext",
    "CleanOptions",
    "ValidationOptions",
    "UpdateOptions",
]
