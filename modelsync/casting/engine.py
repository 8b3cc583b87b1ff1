"""
Casting Engine — converts values between external and internal form.

External form is plain JSON-shaped data. Internal form is what a Model
instance stores: str, int/float, bool, datetime, list, dict (str -> value),
nested Model instances, or None for absent values.

Casting is tolerant: malformed input degrades to None instead of raising.
The one failure is a model reference that does not resolve to a registered
schema, which raises UnknownModelError.
"""

import json
import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import TypeAdapter, ValidationError

from modelsync.models.schema import CollectionKind, FieldSpec, ScalarKind
from modelsync.schema.registry import SchemaRegistry

# Base-10 integer prefix, as in "42", " -7px", "3.9"
_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")

# Fractional seconds following HH:MM:SS
_FRACTION = re.compile(r"(?<=\d\d:\d\d:\d\d)\.(\d+)")

_DATETIME = TypeAdapter(datetime)


def cast(
    value: Any,
    collection: CollectionKind,
    scalar: ScalarKind,
    model_ref: Optional[str] = None,
    *,
    registry: SchemaRegistry,
) -> Any:
    """Cast an external value to internal form for a declared field shape."""
    if value is None:
        return None

    if collection is CollectionKind.LIST:
        if not isinstance(value, (list, tuple)):
            return None
        return [
            cast(elem, CollectionKind.NONE, scalar, model_ref, registry=registry)
            for elem in value
        ]

    if collection is CollectionKind.MAP:
        if not isinstance(value, Mapping):
            return None
        return {
            k: cast(v, CollectionKind.NONE, scalar, model_ref, registry=registry)
            for k, v in value.items()
        }

    if scalar is ScalarKind.STRING:
        return cast_string(value)
    if scalar is ScalarKind.NUMBER:
        return cast_number(value)
    if scalar is ScalarKind.BOOLEAN:
        return cast_boolean(value)
    if scalar is ScalarKind.DATE:
        return cast_date(value)
    return cast_model(value, model_ref, registry)


def cast_field(value: Any, spec: FieldSpec, registry: SchemaRegistry) -> Any:
    """Cast a value for one declared field."""
    return cast(value, spec.collection, spec.scalar, spec.model_ref, registry=registry)


def cast_string(value: Any) -> Optional[str]:
    """Scalars render as their JSON text; lists and mappings are absent."""
    if isinstance(value, str):
        return value
    if isinstance(value, (Mapping, list, tuple)):
        return None
    if value:
        return _render_scalar(value)
    return None


def cast_number(value: Any) -> Optional[Union[int, float]]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    match = _INT_PREFIX.match(_render_scalar(value))
    if match is None:
        return None
    return int(match.group(1))


def cast_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    rendered = _render_scalar(value)
    if rendered == "true":
        return True
    if rendered == "false":
        return False
    return None


def cast_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fraction digits
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    try:
        return _DATETIME.validate_python(text)
    except ValidationError:
        return None


def cast_model(value: Any, model_ref: Optional[str], registry: SchemaRegistry) -> Any:
    """Cast to a nested model instance, constructing one from mapping data."""
    target = registry.resolve(model_ref)
    if isinstance(value, target):
        return value
    if not isinstance(value, Mapping):
        return None
    return target(value, registry=registry)


def export_value(value: Any) -> Any:
    """Convert an internal value back to external form. None means omit."""
    if isinstance(value, (str, bool, int, float, datetime)):
        return value
    if isinstance(value, list):
        return [export_value(elem) for elem in value]
    if isinstance(value, dict):
        return {k: export_value(v) for k, v in value.items()}
    export = getattr(value, "export", None)
    if callable(export):
        return export()
    return None


def deep_equal(a: Any, b: Any) -> bool:
    """
    Structural equality over exported representation trees.

    Mapping key order is ignored; a bool never equals a number.
    """
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        if a.keys() != b.keys():
            return False
        return all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, datetime) and isinstance(b, datetime):
        return a == b
    if type(a) is not type(b) and not (
        isinstance(a, (int, float)) and isinstance(b, (int, float))
    ):
        return False
    return a == b


def render_value(value: Any) -> str:
    """Render an internal value for diagnostics."""
    if value is None:
        return "<nil>"
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, (bool, int, float)):
        return _render_scalar(value)
    if isinstance(value, datetime):
        return f"<{value.strftime('%c')}>"
    if isinstance(value, dict):
        items = "".join(f"{k}:{render_value(v)} " for k, v in value.items())
        return "{ " + items + "}"
    if isinstance(value, list):
        return "[ " + ",".join(render_value(elem) for elem in value) + " ]"
    return str(value)


def _render_scalar(value: Any) -> str:
    """Render a scalar the way it appears in JSON text."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
