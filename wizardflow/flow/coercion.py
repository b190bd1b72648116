"""
Field value coercion for the tagged-field protocol.

Each field carries a declared ``type`` attribute. The functions here turn the
raw text between markers into Python values, raising FieldCoercionError when
the text cannot be read as the declared type. Arrays are parsed leniently:
models routinely emit trailing commas, single quotes and comments.
"""

import json
import math
import re
from collections.abc import Callable
from typing import Any

from wizardflow.errors import FieldCoercionError

# Field marker detection used by inference; mirrors the parser's marker grammar
_NESTED_MARKER = re.compile(r"<[A-Za-z_][\w-]*\s+[^<>]*(?:(?<![\w-])type|tag-category)\s*=")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
# Plain ASCII decimal literals; rejects 1_000, non-ASCII digits and inf/nan
_NUMBER = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
_BULLET = re.compile(r"^(?:[-*•]|\d+[.)])\s+")

_TYPE_ALIASES = {
    "str": "string",
    "text": "string",
    "int": "number",
    "integer": "number",
    "float": "number",
    "bool": "boolean",
    "list": "array",
    "dict": "object",
}

NestedParser = Callable[[str], dict[str, Any]]


def normalize_type(type_hint: str | None) -> str | None:
    if not type_hint:
        return None
    lowered = type_hint.strip().lower()
    return _TYPE_ALIASES.get(lowered, lowered)


# === SCALARS ===


def _to_number(text: str) -> int | float | None:
    """int if the text is integral, float if numeric, None otherwise."""
    if not _NUMBER.fullmatch(text):
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        value = float(text)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def coerce_number(content: str, field_name: str = "") -> int | float:
    text = content.strip()
    value = _to_number(text) if text else None
    if value is None:
        raise FieldCoercionError(f'Invalid number value: "{text}"', field_name, "number")
    return value


def coerce_boolean(content: str, field_name: str = "") -> bool:
    normalized = content.strip().lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    raise FieldCoercionError(
        f'Invalid boolean value: "{content.strip()}" (expected "true" or "false")',
        field_name,
        "boolean",
    )


# === ARRAYS ===


def _loads_list(text: str) -> list | None:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, list) else None


def _strip_comments(text: str) -> str:
    """Drop ``//`` and ``/* */`` comments that sit outside string literals."""
    out: list[str] = []
    quote: str | None = None
    escaped = False
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = len(text) if end == -1 else end + 2
            continue
        elif text.startswith("//", i) and (i == 0 or text[i - 1] in " \t\r\n,["):
            end = text.find("\n", i)
            i = len(text) if end == -1 else end
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _lenient_cleanup(text: str) -> str:
    cleaned = _strip_comments(text)
    cleaned = _TRAILING_COMMA.sub(r"\1", cleaned)
    # Only swap quotes when there are no double quotes to collide with
    if "'" in cleaned and '"' not in cleaned:
        cleaned = cleaned.replace("'", '"')
    return cleaned.strip()


def _split_top_level(inner: str) -> list[str]:
    """Split on commas that are outside quotes and brackets."""
    items: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None
    escaped = False

    for ch in inner:
        if quote:
            current.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch in "[{(":
            depth += 1
        elif ch in "]})":
            depth = max(depth - 1, 0)
        elif ch == "," and depth == 0:
            items.append("".join(current))
            current = []
            continue
        current.append(ch)

    items.append("".join(current))
    return [item for item in (i.strip() for i in items) if item]


def parse_array_item(token: str) -> Any:
    """Read one tokenized array element: quoted string, scalar, nested literal or bare text."""
    text = token.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        if text[0] == '"':
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                pass
        return text[1:-1]
    if text == "null":
        return None
    if text in ("true", "false"):
        return text == "true"
    number = _to_number(text)
    if number is not None:
        return number
    if text.startswith("[") and text.endswith("]"):
        return parse_array(text)
    if text.startswith("{") and text.endswith("}"):
        try:
            return json.loads(_lenient_cleanup(text))
        except json.JSONDecodeError:
            return text
    return text


def parse_array(content: str, field_name: str = "") -> list:
    """
    Parse an array field, most strict strategy first.

    1. Strict JSON.
    2. JSON after cleanup: comments, trailing commas, single quotes.
    3. Bracketed text split on top-level commas, each item read on its own.
    4. One item per non-empty line (bullets stripped).
    """
    text = content.strip()
    if not text:
        return []

    parsed = _loads_list(text)
    if parsed is not None:
        return parsed

    parsed = _loads_list(_lenient_cleanup(text))
    if parsed is not None:
        return parsed

    start, end = text.find("["), text.rfind("]")
    if start != -1 and end > start:
        inner = _lenient_cleanup(text[start + 1 : end])
        return [parse_array_item(item) for item in _split_top_level(inner)]

    lines = [_BULLET.sub("", line.strip()) for line in text.splitlines()]
    items = [parse_array_item(line) for line in lines if line]
    if not items:
        raise FieldCoercionError(f'Invalid array value: "{text}"', field_name, "array")
    return items


# === INFERENCE AND DISPATCH ===


def infer_value(content: str, nested: NestedParser | None = None) -> Any:
    """Best guess for a field with no (or an unknown) declared type."""
    text = content.strip()
    if text == "":
        return ""
    if text == "null":
        return None
    if text in ("true", "false"):
        return text == "true"
    number = _to_number(text)
    if number is not None:
        return number
    if nested is not None and _NESTED_MARKER.search(text):
        return nested(text)
    if (text.startswith("[") and text.endswith("]")) or (
        text.startswith("{") and text.endswith("}")
    ):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


def coerce_value(
    content: str,
    type_hint: str | None,
    field_name: str = "",
    nested: NestedParser | None = None,
) -> Any:
    """Convert raw field text according to its declared type."""
    match normalize_type(type_hint):
        case "string":
            return content.strip()
        case "number":
            return coerce_number(content, field_name)
        case "boolean":
            return coerce_boolean(content, field_name)
        case "array":
            return parse_array(content, field_name)
        case "object":
            if nested is None:
                raise FieldCoercionError(
                    "Object field requires a nested parser", field_name, "object"
                )
            return nested(content)
        case "null":
            return None
        case _:
            return infer_value(content, nested)
