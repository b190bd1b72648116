"""Tests for prompt composition."""

from pydantic import BaseModel

from wizardflow.flow.prompts import (
    apply_template,
    build_repair_prompt,
    build_structured_prompt,
    build_text_prompt,
    context_section,
    error_section,
    to_tagged_context,
)


class Outline(BaseModel):
    sections: list[str]
    audience: str


def test_apply_template_substitutes_paths():
    context = {"user": {"name": "Ada"}, "count": 3, "tags": ["a", "b"]}
    text = apply_template("Hi {{user.name}}, {{count}} items: {{tags}}", context)
    assert text == 'Hi Ada, 3 items: ["a", "b"]'


def test_apply_template_leaves_unknown_placeholders():
    assert apply_template("About {{topic}} for {{who.age}}", {"who": {}}) == (
        "About {{topic}} for {{who.age}}"
    )


def test_to_tagged_context_types_and_escaping():
    text = to_tagged_context(
        {"name": "A<b>", "n": 1, "ok": True, "tags": ["x"], "none": None, "meta": {"k": "v"}}
    )
    assert text == (
        '<context type="object">'
        '<name type="string">A&lt;b&gt;</name>'
        '<n type="number">1</n>'
        '<ok type="boolean">true</ok>'
        '<tags type="array">["x"]</tags>'
        '<none type="null"></none>'
        '<meta type="object"><k type="string">v</k></meta>'
        "</context>"
    )


def test_to_tagged_context_accepts_models():
    text = to_tagged_context(Outline(sections=["intro"], audience="kids"))
    assert '<audience type="string">kids</audience>' in text


def test_error_section():
    assert error_section({}, "draft") == ""
    section = error_section({"draft_error": "too short", "draft_retryCount": 2}, "draft")
    assert "PREVIOUS ERROR (attempt 2):" in section
    assert "too short" in section


def test_text_prompt_layers_in_order():
    prompt = build_text_prompt(
        "draft",
        "Write an intro",
        system_prompt="You write for children.",
        errors=error_section({"draft_error": "too long"}, "draft"),
        context=context_section({"topic": "tides"}),
    )
    assert prompt.startswith("You write for children.")
    assert prompt.index("STEP: draft") < prompt.index("PREVIOUS ERROR")
    assert prompt.index("PREVIOUS ERROR") < prompt.index("STEP CONTEXT:")
    assert '<topic type="string">tides</topic>' in prompt


def test_structured_prompt_lists_schema_and_format_rules():
    prompt = build_structured_prompt("outline", "Outline it", Outline)
    assert "STEP: outline" in prompt
    assert "sections: array" in prompt
    assert "audience: string" in prompt
    assert "REQUIRED OUTPUT FORMAT" in prompt
    assert "PREVIOUS ERROR" not in prompt


def test_repair_prompt_includes_field_examples():
    prompt = build_repair_prompt({"sections": "intro"}, "sections: not a list", Outline)
    assert "INVALID DATA" in prompt
    assert "sections: not a list" in prompt
    assert '<sections type="array">["item1", "item2"]' in prompt
    assert '<audience type="string">[your text should be here]' in prompt
