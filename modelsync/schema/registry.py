"""
Schema Registry — per-class field declarations and model name resolution.

Populated once per class, read many times by the casting engine.

Behavioral Contract:
- A class is registered at most once; a second registration raises
  DefinitionError and leaves the first schema usable
- Registered schemas are never mutated or removed
- Model references are resolved by registered alias first, then by class name
- Resolution failures raise UnknownModelError; they are never ignored
"""

import logging
from typing import Callable, Dict, Mapping, Optional, Type

from modelsync.errors import DefinitionError, UnknownModelError
from modelsync.models.schema import ClassSchema, FieldSpec
from modelsync.schema.declaration import parse_declaration

logger = logging.getLogger(__name__)


class SchemaRegistry:
    """
    Holds the ClassSchema of every registered class.

    Registries are independent of each other. Pass one explicitly to models
    and providers to keep sets of schemas isolated; `default_registry` is used
    when none is given.
    """

    def __init__(self):
        self._schemas: Dict[type, ClassSchema] = {}
        self._constructors: Dict[str, type] = {}   # Class name -> class
        self._aliases: Dict[str, type] = {}        # Declared alias -> class

    def register(
        self,
        cls: type,
        fields: Mapping[str, str],
        class_name: Optional[str] = None,
    ) -> ClassSchema:
        """
        Register the field declarations for a class.

        `fields` maps each internal field name to its declaration string.
        `class_name` is an alias other schemas may use to refer to this class.
        """
        if not isinstance(cls, type):
            raise DefinitionError("register() requires a class")

        key = cls.__name__
        if cls in self._schemas or key in self._constructors:
            raise DefinitionError(f"Class already defined {class_name or key}")
        if class_name is not None and class_name in self._aliases:
            raise DefinitionError(f"Class name already in use {class_name}")
        if not isinstance(fields, Mapping):
            raise DefinitionError(
                f"Field declarations for {class_name or key} must be a mapping"
            )

        specs: Dict[str, FieldSpec] = {}
        for name, declaration in fields.items():
            specs[name] = parse_declaration(name, declaration)

        schema = ClassSchema(class_name=class_name or key, fields=specs)

        self._schemas[cls] = schema
        self._constructors[key] = cls
        if class_name is not None:
            self._aliases[class_name] = cls

        logger.debug("Registered %s with fields %s", schema.class_name, list(specs))
        return schema

    def define(
        self, fields: Mapping[str, str], class_name: Optional[str] = None
    ) -> Callable[[Type], Type]:
        """Class decorator form of register()."""

        def decorator(cls: Type) -> Type:
            self.register(cls, fields, class_name)
            return cls

        return decorator

    def is_registered(self, cls: type) -> bool:
        return cls in self._schemas

    def __contains__(self, cls: object) -> bool:
        return cls in self._schemas

    def schema_for(self, cls: type) -> ClassSchema:
        """Get the schema of a registered class."""
        schema = self._schemas.get(cls)
        if schema is None:
            name = getattr(cls, "__name__", repr(cls))
            raise UnknownModelError(f"Missing model definition for {name}")
        return schema

    def resolve(self, name: str) -> type:
        """Resolve a model reference (alias or class name) to its class."""
        cls = self._aliases.get(name) or self._constructors.get(name)
        if cls is None:
            raise UnknownModelError(f"Undefined Model of type {name}")
        return cls

    def registered_names(self) -> Dict[str, type]:
        """Get every name a model can be referenced by."""
        names = dict(self._constructors)
        names.update(self._aliases)
        return names


default_registry = SchemaRegistry()
