"""
Field declaration parser.

A declaration is one short string per field:

    decl       := [alias WS] [marker] type_name
    alias      := [A-Za-z0-9_-]+        defaults to the field's own name
    marker     := "{}" | "[]"           map or list, absent for a scalar
    type_name  := [A-Za-z0-9_]+         string | number | boolean | date | <ModelName>

Examples: "string", "[]number", "id string", "members {}User".

Any type name other than the four built-ins is a reference to another
registered model. References are resolved when a value is cast, so two
schemas may refer to each other in either registration order.
"""

import re
from typing import List, NamedTuple, Optional

from modelsync.errors import DefinitionError
from modelsync.models.schema import BUILTIN_SCALARS, CollectionKind, FieldSpec, ScalarKind

_WORD = re.compile(r"[A-Za-z0-9_-]+")
_TYPE_NAME = re.compile(r"[A-Za-z0-9_]+")

_MARKERS = {
    "{}": CollectionKind.MAP,
    "[]": CollectionKind.LIST,
}


class Token(NamedTuple):
    kind: str       # "word" | "marker" | "space"
    text: str
    pos: int


def tokenize(field_name: str, text: str) -> List[Token]:
    """Split a declaration into word, marker and whitespace tokens."""
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        char = text[pos]
        if char.isspace():
            start = pos
            while pos < len(text) and text[pos].isspace():
                pos += 1
            tokens.append(Token("space", text[start:pos], start))
            continue
        if text[pos:pos + 2] in _MARKERS:
            tokens.append(Token("marker", text[pos:pos + 2], pos))
            pos += 2
            continue
        match = _WORD.match(text, pos)
        if match is None:
            raise _syntax_error(field_name, text, pos, f"unexpected character {char!r}")
        tokens.append(Token("word", match.group(0), pos))
        pos = match.end()
    return tokens


def parse_declaration(field_name: str, text: str) -> FieldSpec:
    """Parse one declaration string into a FieldSpec."""
    if not isinstance(text, str):
        raise DefinitionError(
            f"Declaration for field {field_name!r} must be a string, "
            f"got {type(text).__name__}"
        )
    stripped = text.strip()
    tokens = tokenize(field_name, stripped)
    if not tokens:
        raise _syntax_error(field_name, stripped, 0, "empty declaration")

    index = 0
    alias: Optional[str] = None

    # An alias is a word followed by whitespace and something else.
    if (
        len(tokens) >= 3
        and tokens[0].kind == "word"
        and tokens[1].kind == "space"
    ):
        alias = tokens[0].text
        index = 2

    collection = CollectionKind.NONE
    if index < len(tokens) and tokens[index].kind == "marker":
        collection = _MARKERS[tokens[index].text]
        index += 1

    if index >= len(tokens):
        raise _syntax_error(field_name, stripped, len(stripped), "expected a type name")
    type_token = tokens[index]
    if type_token.kind != "word" or not _TYPE_NAME.fullmatch(type_token.text):
        raise _syntax_error(field_name, stripped, type_token.pos, "expected a type name")
    index += 1

    if index < len(tokens):
        raise _syntax_error(
            field_name, stripped, tokens[index].pos,
            f"unexpected {tokens[index].text!r} after type name",
        )

    type_name = type_token.text
    if type_name in BUILTIN_SCALARS:
        scalar = ScalarKind(type_name)
        model_ref = None
    else:
        scalar = ScalarKind.MODEL
        model_ref = type_name

    return FieldSpec(
        name=field_name,
        external_key=alias or field_name,
        collection=collection,
        scalar=scalar,
        model_ref=model_ref,
    )


def _syntax_error(field_name: str, text: str, pos: int, message: str) -> DefinitionError:
    return DefinitionError(
        f"Unable to parse declaration {text!r} for field {field_name!r}: "
        f"{message} at position {pos}"
    )
