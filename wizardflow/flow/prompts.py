"""Prompt composition for wizard steps.

Every generative step prompt has the same layers, in order:

1. The wizard's system prompt (optional, static for the whole run)
2. Step header: step id and its instruction, template-substituted
3. Previous error, when the step is being retried
4. Step context, serialized as typed tags
5. Output requirements: schema listing and the tagged format rules
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

from wizardflow.flow.schema import describe_schema, extract_schema_fields, tag_example

if TYPE_CHECKING:
    from pydantic import BaseModel

logger = logging.getLogger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{(\w+(?:\.\w+)*)\}\}")

_MISSING = object()

FORMAT_RULES = """REQUIRED OUTPUT FORMAT:
Return a plain tagged response wrapped in a root <response> tag.
Every field MUST include a type attribute (type="string", type="number",
type="boolean", type="array" or type="object").

IMPORTANT PARSING RULES:
- Fields do NOT need closing tags
- A field's content ends when the next field tag begins, or at </response>
- Content may contain anything, including code with <> and markup, because
  only tags carrying a type attribute start a new field
- Arrays are single-line JSON: ["a", "b"]
- Object fields hold nested typed fields and MUST end with their closing tag

Example:
<response>
  <name type="string">John Smith
  <age type="number">25
  <code type="string">
    function example() {
      const x = <div>Hello</div>;
      return x;
    }
  <tags type="array">["a", "b", "c"]
  <address type="object"><city type="string">Lisbon</address>
</response>"""


def _lookup(context: Any, path: str) -> Any:
    value = context
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        elif not isinstance(value, dict) and hasattr(value, key):
            value = getattr(value, key)
        else:
            return _MISSING
    return value


def apply_template(instruction: str, context: dict[str, Any]) -> str:
    """
    Substitute ``{{key}}`` and ``{{a.b.c}}`` placeholders from ``context``.

    Unresolved placeholders are left as written. Non-string values are
    JSON-encoded.
    """

    def replace(match: re.Match) -> str:
        value = _lookup(context, match.group(1))
        if value is _MISSING:
            return match.group(0)
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str)

    return TEMPLATE_PATTERN.sub(replace, instruction)


def escape_xml(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list | tuple | set):
        return "array"
    return "object"


def to_tagged_context(data: Any, root: str = "context") -> str:
    """Serialize a value as nested typed tags.

    ``{"n": 3}`` becomes ``<context type="object"><n type="number">3</n></context>``.
    """
    type_name = _type_name(data)
    open_tag = f'<{root} type="{type_name}">'
    close_tag = f"</{root}>"

    if type_name == "null":
        body = ""
    elif type_name == "string":
        body = escape_xml(data)
    elif type_name == "boolean":
        body = "true" if data else "false"
    elif type_name == "number":
        body = str(data)
    elif type_name == "array":
        body = json.dumps(list(data), default=str)
    else:
        if hasattr(data, "model_dump"):
            data = data.model_dump()
        if isinstance(data, dict):
            body = "".join(to_tagged_context(v, str(k)) for k, v in data.items())
        else:
            body = escape_xml(str(data))
    return f"{open_tag}{body}{close_tag}"


def error_section(context: dict[str, Any], step_id: str) -> str:
    """The retry feedback block, or '' when the step has no recorded error."""
    error = context.get(f"{step_id}_error")
    if not error:
        return ""
    attempt = context.get(f"{step_id}_retryCount") or 1
    return f"\n\nPREVIOUS ERROR (attempt {attempt}):\n{error}\nPlease fix this."


def context_section(step_context: Any) -> str:
    return f"\n\nSTEP CONTEXT:\n{to_tagged_context(step_context)}"


def _header(system_prompt: str | None) -> str:
    return f"{system_prompt}\n\n" if system_prompt else ""


def build_text_prompt(
    step_id: str,
    instruction: str,
    *,
    system_prompt: str | None = None,
    errors: str = "",
    context: str = "",
) -> str:
    return f"""{_header(system_prompt)}You are executing a wizard step. Generate text for this step.

STEP: {step_id}
INSTRUCTION: {instruction}{errors}{context}

Generate the text response now."""


def build_structured_prompt(
    step_id: str,
    instruction: str,
    schema: type[BaseModel],
    *,
    system_prompt: str | None = None,
    errors: str = "",
    context: str = "",
) -> str:
    return f"""{_header(system_prompt)}You are executing a wizard step. Generate data for this step.

STEP: {step_id}
INSTRUCTION: {instruction}{errors}{context}

SCHEMA REQUIREMENTS:
{describe_schema(schema)}

{FORMAT_RULES}

Generate the tagged response now."""


def build_repair_prompt(invalid_data: Any, validation_error: str, schema: type[BaseModel]) -> str:
    examples = "\n".join(
        f"  {tag_example(f.key, f.type, f.enum_values)}" for f in extract_schema_fields(schema)
    )
    return f"""You are repairing invalid data for a wizard step. The data failed validation and needs to be fixed to match the schema.

INVALID DATA: {json.dumps(invalid_data, indent=2, default=str)}
VALIDATION ERROR: {validation_error}

SCHEMA REQUIREMENTS:
{describe_schema(schema)}

EXPECTED FIELDS:
<response>
{examples}
</response>

{FORMAT_RULES}

Fix the data to match the schema and generate the tagged response now."""
