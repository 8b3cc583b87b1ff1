"""Schema descriptors — the parsed form of field declarations."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, model_validator


class CollectionKind(str, Enum):
    NONE = "none"
    LIST = "list"   # "[]" marker
    MAP = "map"     # "{}" marker


class ScalarKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    MODEL = "model"     # Reference to another registered class


BUILTIN_SCALARS = frozenset(
    kind.value for kind in ScalarKind if kind is not ScalarKind.MODEL
)


class FieldSpec(BaseModel):
    """One declared field of a registered class."""

    model_config = ConfigDict(frozen=True)

    name: str                               # Internal field name
    external_key: str                       # Key in the external representation
    collection: CollectionKind = CollectionKind.NONE
    scalar: ScalarKind
    model_ref: Optional[str] = None         # Class alias or class name

    @model_validator(mode="after")
    def _check_model_ref(self) -> "FieldSpec":
        if (self.scalar is ScalarKind.MODEL) != (self.model_ref is not None):
            raise ValueError(
                f"Field {self.name}: model_ref must be set exactly when scalar is 'model'"
            )
        return self


class ClassSchema(BaseModel):
    """The immutable, ordered set of field declarations for a registered class."""

    model_config = ConfigDict(frozen=True)

    class_name: str
    fields: Dict[str, FieldSpec]

    @property
    def field_names(self) -> List[str]:
        return list(self.fields)

    def field(self, name: str) -> FieldSpec:
        spec = self.fields.get(name)
        if spec is None:
            raise KeyError(f"{self.class_name} has no field {name!r}")
        return spec
