"""Schema description and validation for structured steps.

Structured steps declare their output as a pydantic model. This module turns
that model into the plain-text field listing used in prompts, and validates
parsed field maps against it.
"""

import enum
import logging
import types
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Annotated, Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel, ValidationError

from wizardflow.errors import SchemaError

logger = logging.getLogger(__name__)

_ARRAY_ORIGINS = (list, tuple, set, frozenset)


@dataclass
class SchemaField:
    """One top-level field of a step schema, as described to the model."""

    key: str
    type: str
    required: bool = True
    description: str = ""
    enum_values: list[str] = field(default_factory=list)


def schema_type(annotation: Any) -> str:
    """Map a type annotation to the protocol's primitive type name."""
    origin = get_origin(annotation)

    if origin is Annotated:
        return schema_type(get_args(annotation)[0])
    if origin is Union or origin is types.UnionType:
        members = [a for a in get_args(annotation) if a is not type(None)]
        if not members:
            return "null"
        return schema_type(members[0])
    if origin is Literal:
        return "enum: " + ", ".join(str(v) for v in get_args(annotation))
    if origin in _ARRAY_ORIGINS or annotation in _ARRAY_ORIGINS:
        return "array"
    if origin is dict or annotation is dict:
        return "object"

    if annotation is type(None) or annotation is None:
        return "null"
    if isinstance(annotation, type):
        if issubclass(annotation, enum.Enum):
            return "enum: " + ", ".join(str(m.value) for m in annotation)
        # bool is an int subclass
        if issubclass(annotation, bool):
            return "boolean"
        if issubclass(annotation, int | float):
            return "number"
        if issubclass(annotation, str):
            return "string"
    return "object"


def extract_schema_fields(schema: type[BaseModel]) -> list[SchemaField]:
    fields = []
    for key, info in schema.model_fields.items():
        name = info.alias or key
        type_name = schema_type(info.annotation)
        enum_values: list[str] = []
        if type_name.startswith("enum:"):
            enum_values = type_name[len("enum:") :].strip().split(", ")
            type_name = "enum"
        fields.append(
            SchemaField(
                key=name,
                type=type_name,
                required=info.is_required(),
                description=info.description or "",
                enum_values=enum_values,
            )
        )
    return fields


@lru_cache(maxsize=100)
def describe_schema(schema: type[BaseModel]) -> str:
    """
    Plain-text field listing for prompts, e.g.::

        Object with fields:
        title: string
        tags: array (optional)
        tone: enum: formal, casual - Voice to write in
    """
    if not (isinstance(schema, type) and issubclass(schema, BaseModel)):
        return "Unknown schema type"

    lines = []
    for f in extract_schema_fields(schema):
        type_name = f"enum: {', '.join(f.enum_values)}" if f.type == "enum" else f.type
        line = f"{f.key}: {type_name}"
        if not f.required:
            line += " (optional)"
        if f.description:
            line += f" - {f.description}"
        lines.append(line)
    return "Object with fields:\n" + "\n".join(lines)


def tag_example(key: str, type_name: str, enum_values: list[str] | None = None) -> str:
    """One-line example of a field marker for ``key``."""
    if type_name == "enum":
        first = enum_values[0] if enum_values else "[one of the allowed values]"
        return f'<{key} type="string">{first}'
    examples = {
        "string": "[your text should be here]",
        "number": "[number should be here]",
        "boolean": "true",
        "array": '["item1", "item2"]',
        "null": "",
    }
    if type_name in examples:
        return f'<{key} type="{type_name}">{examples[type_name]}'
    return (
        f'<{key} type="object"><subfield type="string">[text value should be here]</{key}>'
    )


def format_validation_errors(error: ValidationError) -> list[str]:
    errors = []
    for item in error.errors():
        field_path = ".".join(str(loc) for loc in item["loc"]) or "(root)"
        errors.append(f"{field_path}: {item['msg']} (type: {item['type']})")
    return errors


def validate(data: Any, schema: type[BaseModel]) -> BaseModel:
    """
    Validate parsed data against a step schema.

    Raises:
        SchemaError: with one line per failing field
    """
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        errors = format_validation_errors(e)
        raise SchemaError("; ".join(errors), errors=e.errors()) from e
