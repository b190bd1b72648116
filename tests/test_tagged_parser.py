"""
Tests for the streaming tagged-field parser.

Covers chunk-split independence, the container lifecycle, markup inside
string fields, repeated fields, object fields and error recovery.
"""

import pytest

from wizardflow.errors import TaggedParseError
from wizardflow.flow.parser import (
    TRANSITIONS,
    ParserPhase,
    TaggedFieldParser,
    parse_fields,
    parse_tagged_text,
)

RESPONSE = """Sure! Here is the data.
<response>
  <title type="string">Tide pools
  <depth type="number">3.5
  <count type="number">4
  <public type="boolean">TRUE
  <tags type="array">["marine", "coast",]
  <code type="string">
    const x = <div class="a">Hello</div>;
  <address type="object"><city type="string">Lisbon<zip type="number">1100</address>
  <note type="null">
</response>
trailing chatter"""

EXPECTED = {
    "title": "Tide pools",
    "depth": 3.5,
    "count": 4,
    "public": True,
    "tags": ["marine", "coast"],
    "code": 'const x = <div class="a">Hello</div>;',
    "address": {"city": "Lisbon", "zip": 1100},
    "note": None,
}


def feed(text: str, chunk_size: int) -> TaggedFieldParser:
    parser = TaggedFieldParser()
    for start in range(0, len(text), chunk_size):
        parser.push(text[start : start + chunk_size])
    return parser


# ---------------------------------------------------------------------------
# Chunking independence
# ---------------------------------------------------------------------------


class TestChunking:
    def test_single_push(self):
        parser = TaggedFieldParser()
        update = parser.push(RESPONSE)
        assert update.done is True
        assert update.result == EXPECTED

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 5, 7, 11, 64])
    def test_fixed_chunk_sizes(self, chunk_size):
        parser = feed(RESPONSE, chunk_size)
        assert parser.done
        assert parser.result == EXPECTED
        assert parser.errors == []

    def test_every_two_way_split(self):
        for cut in range(len(RESPONSE) + 1):
            parser = TaggedFieldParser()
            parser.push(RESPONSE[:cut])
            update = parser.push(RESPONSE[cut:])
            assert update.done, f"not done for split at {cut}"
            assert update.result == EXPECTED, f"split at {cut}"

    def test_three_chunk_example(self):
        parser = TaggedFieldParser()
        chunks = ['<response><name type="str', 'ing">Ada<age type="num', 'ber">30</response>']

        first = parser.push(chunks[0])
        second = parser.push(chunks[1])
        third = parser.push(chunks[2])

        assert first.done is False
        assert second.done is False
        assert second.result["name"] == "Ada"
        assert third.done is True
        assert third.result == {"name": "Ada", "age": 30}


# ---------------------------------------------------------------------------
# Container lifecycle
# ---------------------------------------------------------------------------


class TestContainer:
    def test_push_returns_none_before_container(self):
        parser = TaggedFieldParser()
        assert parser.push("Let me think about that... <resp") is None
        assert parser.phase is ParserPhase.AWAITING_CONTAINER

        update = parser.push("onse>")
        assert update is not None
        assert update.done is False
        assert parser.phase is ParserPhase.AWAITING_FIELD

    def test_pushes_after_done_are_ignored(self):
        parser = TaggedFieldParser()
        parser.push('<response><a type="number">1</response>')
        update = parser.push('<b type="string">late')
        assert update.done is True
        assert update.result == {"a": 1}

    def test_finish_flushes_open_field(self):
        parser = TaggedFieldParser()
        parser.push('<response><name type="string">Ada Lovel')
        outcome = parser.finish()
        assert outcome.done is True
        assert outcome.result == {"name": "Ada Lovel"}
        assert parser.phase is ParserPhase.DONE

    def test_finish_without_container_returns_none(self):
        parser = TaggedFieldParser()
        parser.push("no container here")
        assert parser.finish() is None

    def test_done_phase_is_terminal(self):
        assert TRANSITIONS[ParserPhase.DONE] == frozenset()
        assert ParserPhase.DONE in TRANSITIONS[ParserPhase.RESYNCHRONIZING]

    def test_custom_container_tag(self):
        result = parse_tagged_text('<answer><x type="number">2</answer>', container_tag="answer")
        assert result == {"x": 2}


# ---------------------------------------------------------------------------
# Field content
# ---------------------------------------------------------------------------


class TestFields:
    def test_partial_string_preview(self):
        parser = TaggedFieldParser()
        update = parser.push('<response><summary type="string">The tide')
        assert update.done is False
        assert update.result == {"summary": "The tide"}

    def test_markup_inside_string_is_content(self):
        text = (
            '<response><html type="string"><p class="x">Hi</p><br/>'
            '<n type="number">1</response>'
        )
        assert parse_tagged_text(text) == {"html": '<p class="x">Hi</p><br/>', "n": 1}

    def test_comparison_operators_inside_string(self):
        text = '<response><expr type="string">a < b && c > d<next type="number">1</response>'
        for size in (1, 3, len(text)):
            parser = feed(text, size)
            assert parser.result == {"expr": "a < b && c > d", "next": 1}

    def test_attribute_named_like_type_does_not_start_a_field(self):
        text = '<response><body type="string"><input data-type="x">ok</response>'
        assert parse_tagged_text(text) == {"body": '<input data-type="x">ok'}

    def test_optional_closing_tags_are_stripped(self):
        text = '<response><name type="string">Ada</name><age type="number">30</age></response>'
        assert parse_tagged_text(text) == {"name": "Ada", "age": 30}

    def test_repeated_fields_collapse_into_list(self):
        text = (
            '<response><item type="string">a<item type="string">b'
            '<item type="string">c</response>'
        )
        assert parse_tagged_text(text) == {"item": ["a", "b", "c"]}

    def test_repeated_array_fields_keep_each_array(self):
        text = '<response><tags type="array">[1]<tags type="array">[2]</response>'
        assert parse_tagged_text(text) == {"tags": [[1], [2]]}

    def test_legacy_tag_category_marker(self):
        text = (
            '<response><name tag-category="wizard" type="string">Ada'
            '<mood tag-category="wizard">happy<level tag-category="wizard">42</response>'
        )
        assert parse_tagged_text(text) == {"name": "Ada", "mood": "happy", "level": 42}

    def test_nested_object_field(self):
        text = (
            '<response><author type="object"><name type="string">Ada'
            '<born type="number">1815<tags type="array">["math"]</author>'
            '<title type="string">Notes</response>'
        )
        assert parse_tagged_text(text) == {
            "author": {"name": "Ada", "born": 1815, "tags": ["math"]},
            "title": "Notes",
        }

    def test_type_aliases(self):
        text = '<response><n type="integer">7<ok type="bool">false<s type="TEXT">hi</response>'
        assert parse_tagged_text(text) == {"n": 7, "ok": False, "s": "hi"}


# ---------------------------------------------------------------------------
# Error recovery
# ---------------------------------------------------------------------------


class TestErrorRecovery:
    def test_bad_field_is_dropped_and_recorded(self):
        parser = TaggedFieldParser()
        update = parser.push(
            '<response><ok type="boolean">maybe<name type="string">fine</response>'
        )
        assert update.done is True
        assert update.result == {"name": "fine"}
        assert len(parser.errors) == 1
        assert "ok" in parser.errors[0]
        assert parser.resync_count == 0

    def test_python_only_number_forms_are_recorded_as_errors(self):
        parser = TaggedFieldParser()
        update = parser.push('<response><n type="number">1_000<m type="number">12</response>')
        assert update.result == {"m": 12}
        assert len(parser.errors) == 1
        assert "1_000" in parser.errors[0]

    def test_resync_after_consecutive_failures(self):
        parser = TaggedFieldParser()
        parser.push(
            "<response>"
            '<a type="number">x<b type="number">y<c type="number">z'
            '<d type="string">ok</response>'
        )
        assert parser.result == {"d": "ok"}
        assert parser.error_count == 3
        assert parser.resync_count == 1
        assert parser.consecutive_errors == 0
        assert parser.done

    def test_success_resets_consecutive_errors(self):
        parser = TaggedFieldParser()
        parser.push(
            '<response><a type="number">x<b type="number">1<c type="number">y</response>'
        )
        assert parser.result == {"b": 1}
        assert parser.error_count == 2
        assert parser.resync_count == 0


# ---------------------------------------------------------------------------
# One-shot helpers
# ---------------------------------------------------------------------------


class TestParseTaggedText:
    def test_missing_container_raises(self):
        with pytest.raises(TaggedParseError, match="missing <response> tag"):
            parse_tagged_text('<name type="string">Ada')

    def test_missing_container_falls_back_when_not_required(self):
        result = parse_tagged_text('<name type="string">Ada', require_container=False)
        assert result == {"name": "Ada"}

    def test_parse_fields_without_container(self):
        assert parse_fields('<a type="number">1<b type="string">x') == {"a": 1, "b": "x"}

    def test_unterminated_response_is_flushed(self):
        assert parse_tagged_text('<response><a type="number">12') == {"a": 12}
