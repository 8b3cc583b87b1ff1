"""modelsync data models."""

from modelsync.models.provider import ProviderConfig, RequestOptions
from modelsync.models.schema import (
    BUILTIN_SCALARS,
    ClassSchema,
    CollectionKind,
    FieldSpec,
    ScalarKind,
)

__all__ = [
    "BUILTIN_SCALARS",
    "ClassSchema",
    "CollectionKind",
    "FieldSpec",
    "ProviderConfig",
    "RequestOptions",
    "ScalarKind",
]
