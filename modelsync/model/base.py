"""
Model — the typed record produced by the casting engine.

Subclass Model, register the subclass with a SchemaRegistry, then construct
instances from external data:

    registry = SchemaRegistry()

    @registry.define({"key": "id string", "name": "string", "tags": "[]string"})
    class User(Model):
        pass

    user = User({"id": "u1", "name": "Ada", "tags": ["admin"]}, registry=registry)
    user.key            # "u1"
    user.export()       # {"id": "u1", "name": "Ada", "tags": ["admin"]}

Every stored value is already in internal form. Field access is dispatched
through the class's FieldSpec table; nothing is attached to the class itself.
A field whose name clashes with a Model method stays reachable through
get() and set().
"""

from collections.abc import Mapping
from typing import Any, Dict, Optional

from pydantic_core import to_json

from modelsync.casting.engine import cast_field, deep_equal, export_value, render_value
from modelsync.models.schema import ClassSchema
from modelsync.schema.registry import SchemaRegistry, default_registry


class Model:
    """Base class for registered models."""

    def __init__(
        self,
        data: Optional[Mapping] = None,
        *,
        registry: Optional[SchemaRegistry] = None,
    ):
        registry = registry or default_registry
        object.__setattr__(self, "_registry", registry)
        object.__setattr__(self, "_schema", registry.schema_for(type(self)))
        object.__setattr__(self, "_data", {})
        self.load({} if data is None else data)

    @property
    def schema(self) -> ClassSchema:
        return self._schema

    @property
    def registry(self) -> SchemaRegistry:
        return self._registry

    @property
    def class_name(self) -> str:
        """The registered alias, or the class name when none was given."""
        return self._schema.class_name

    @property
    def json(self) -> str:
        """JSON text of the external representation."""
        return to_json(self.export()).decode()

    def get(self, name: str) -> Any:
        """Get the internal value of a field, or None when absent."""
        self._schema.field(name)
        return self._data.get(name)

    def set(self, name: str, value: Any) -> Any:
        """Cast and store a value for a field. Returns the stored value."""
        spec = self._schema.field(name)
        self._data[name] = cast_field(value, spec, self._registry)
        return self._data[name]

    def load(self, data: Mapping) -> None:
        """
        Replace every field value from external data.

        Fields missing from `data` become None; this is a full replace,
        never a merge.
        """
        if not isinstance(data, Mapping):
            raise TypeError(
                f"{type(self).__name__} requires a mapping, got {type(data).__name__}"
            )
        values: Dict[str, Any] = {}
        for name, spec in self._schema.fields.items():
            values[name] = cast_field(data.get(spec.external_key), spec, self._registry)
        object.__setattr__(self, "_data", values)

    def export(self) -> dict:
        """
        Get the external representation, in schema order.

        Fields whose value is None are omitted.
        """
        result = {}
        for name, spec in self._schema.fields.items():
            value = export_value(self._data.get(name))
            if value is not None:
                result[spec.external_key] = value
        return result

    def equals(self, other: Any) -> bool:
        """Structural equality: same class and deep-equal external representations."""
        if other is None or type(self) is not type(other):
            return False
        return deep_equal(self.export(), other.export())

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Model):
            return NotImplemented
        return self.equals(other)

    __hash__ = None

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        schema = self.__dict__.get("_schema")
        if schema is None or name not in schema.fields:
            raise AttributeError(f"{type(self).__name__} has no field {name!r}")
        return self._data.get(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self._schema.fields:
            self.set(name, value)
            return
        raise AttributeError(f"{type(self).__name__} has no field {name!r}")

    def __str__(self) -> str:
        parts = [f"<{self.class_name}"]
        for name in self._schema.fields:
            parts.append(f" {name}={render_value(self._data.get(name))}")
        return "".join(parts) + ">"

    __repr__ = __str__
