"""
Incremental parser for the tagged-field response protocol.

A model answers a structured step like this::

    <response>
      <title type="string">Tide pools
      <depth type="number">3.5
      <tags type="array">["marine", "coast"]
      <code type="string">
        const x = <div>Hello</div>;
    </response>

Fields need no closing tag: a field's content runs until the next field
marker or the container close. A field marker is a tag whose attributes
include ``type=`` (or the older ``tag-category="wizard"``), so arbitrary
markup inside string content (``<div>`` above) does not end the field.
Fields declared ``type="object"`` are the one exception: they run to their
own ``</name>`` so that nested field markers belong to the object.

TaggedFieldParser consumes text in arbitrary chunks and produces the same
final result however the text is split. It is an explicit state machine::

    AWAITING_CONTAINER -> AWAITING_FIELD <-> ACCUMULATING_FIELD -> DONE
                                                 |         ^
                                                 v         |
                                             RESYNCHRONIZING
"""

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from wizardflow.errors import FieldCoercionError, TaggedParseError
from wizardflow.flow.coercion import coerce_value, normalize_type

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS = 3

DEFAULT_CONTAINER_TAG = "response"

# <name attrs>; qualifies as a field marker only if attrs carry type= or tag-category=
FIELD_MARKER_PATTERN = re.compile(r"<([A-Za-z_][\w-]*)(\s+[^<>]*)>")
_FIELD_ATTR_PATTERN = re.compile(r"(?:(?<![\w-])type|tag-category)\s*=")
_TYPE_ATTR_PATTERN = re.compile(r"""(?<![\w-])type\s*=\s*["']([^"']+)["']""")


class ParserPhase(StrEnum):
    AWAITING_CONTAINER = "awaiting_container"
    AWAITING_FIELD = "awaiting_field"
    ACCUMULATING_FIELD = "accumulating_field"
    RESYNCHRONIZING = "resynchronizing"
    DONE = "done"


TRANSITIONS: dict[ParserPhase, frozenset[ParserPhase]] = {
    ParserPhase.AWAITING_CONTAINER: frozenset({ParserPhase.AWAITING_FIELD}),
    ParserPhase.AWAITING_FIELD: frozenset(
        {ParserPhase.ACCUMULATING_FIELD, ParserPhase.RESYNCHRONIZING, ParserPhase.DONE}
    ),
    ParserPhase.ACCUMULATING_FIELD: frozenset(
        {ParserPhase.AWAITING_FIELD, ParserPhase.RESYNCHRONIZING, ParserPhase.DONE}
    ),
    ParserPhase.RESYNCHRONIZING: frozenset({ParserPhase.ACCUMULATING_FIELD, ParserPhase.DONE}),
    ParserPhase.DONE: frozenset(),
}


@dataclass
class ParseResult:
    """Best-effort result so far. Only ``done=True`` is final."""

    done: bool
    result: dict[str, Any]


@dataclass
class _OpenField:
    name: str
    type_hint: str | None
    parts: list[str] = field(default_factory=list)

    @property
    def is_object(self) -> bool:
        return normalize_type(self.type_hint) == "object"

    @property
    def text(self) -> str:
        return "".join(self.parts)


def _hold_back_index(buffer: str) -> int:
    """Index where a trailing, possibly incomplete marker starts (len(buffer) if none)."""
    idx = buffer.rfind("<")
    if idx != -1 and ">" not in buffer[idx:]:
        return idx
    return len(buffer)


def _strip_closing_tag(text: str, name: str) -> str:
    trimmed = text.rstrip()
    closer = re.search(rf"</{re.escape(name)}\s*>$", trimmed)
    return trimmed[: closer.start()] if closer else trimmed


class TaggedFieldParser:
    """
    Streaming parser for one model response.

    Example:
        parser = TaggedFieldParser()
        for chunk in ['<response><name type="str', 'ing">Ada</response>']:
            update = parser.push(chunk)
        update.done    # True
        update.result  # {'name': 'Ada'}
    """

    def __init__(
        self,
        container_tag: str = DEFAULT_CONTAINER_TAG,
        expect_container: bool = True,
    ):
        self.container_tag = container_tag
        self._open_pattern = re.compile(rf"<{re.escape(container_tag)}\s*>", re.IGNORECASE)
        self._close_pattern = re.compile(rf"</{re.escape(container_tag)}\s*>", re.IGNORECASE)

        self.phase = (
            ParserPhase.AWAITING_CONTAINER if expect_container else ParserPhase.AWAITING_FIELD
        )
        self.result: dict[str, Any] = {}
        self.errors: list[str] = []
        self.error_count = 0
        self.consecutive_errors = 0
        self.resync_count = 0

        self._buffer = ""
        self._field: _OpenField | None = None
        self._collapsed: set[str] = set()

    @property
    def done(self) -> bool:
        return self.phase is ParserPhase.DONE

    # === PUBLIC API ===

    def push(self, chunk: str) -> ParseResult | None:
        """
        Feed the next chunk.

        Returns None until the container has opened, then the best-effort
        result so far. Never raises for malformed input.
        """
        if self.done:
            return ParseResult(done=True, result=self._snapshot())

        self._buffer += chunk
        try:
            while self._advance():
                pass
        except Exception as e:
            self._recover(e)

        if self.phase is ParserPhase.AWAITING_CONTAINER:
            return None
        return ParseResult(done=self.done, result=self._snapshot())

    def finish(self) -> ParseResult | None:
        """
        Flush an unterminated stream.

        An open field takes whatever text remains. Returns None if the
        container never opened.
        """
        if self.phase is ParserPhase.AWAITING_CONTAINER:
            return None
        if not self.done:
            try:
                if self.phase is ParserPhase.ACCUMULATING_FIELD and self._field is not None:
                    self._field.parts.append(self._buffer)
                    self._buffer = ""
                    self._complete_field()
            except Exception as e:
                self._recover(e)
            self.phase = ParserPhase.DONE
            self._buffer = ""
        return ParseResult(done=True, result=self._snapshot())

    # === STATE MACHINE ===

    def _transition(self, target: ParserPhase) -> None:
        if target not in TRANSITIONS[self.phase]:
            raise TaggedParseError(f"Illegal parser transition {self.phase} -> {target}")
        self.phase = target

    def _advance(self) -> bool:
        """Run one transition. Returns True if the machine should keep going."""
        if self.phase == ParserPhase.AWAITING_CONTAINER:
            return self._await_container()
        if self.phase in (ParserPhase.AWAITING_FIELD, ParserPhase.RESYNCHRONIZING):
            return self._await_field()
        if self.phase == ParserPhase.ACCUMULATING_FIELD:
            return self._accumulate()
        return False

    def _await_container(self) -> bool:
        match = self._open_pattern.search(self._buffer)
        if match is None:
            self._buffer = self._buffer[_hold_back_index(self._buffer) :]
            return False
        self._buffer = self._buffer[match.end() :]
        self._transition(ParserPhase.AWAITING_FIELD)
        return True

    def _await_field(self) -> bool:
        kind, match = self._next_boundary(self._buffer)
        if match is None:
            # Text between fields is discarded
            self._buffer = self._buffer[_hold_back_index(self._buffer) :]
            return False

        if kind == "close":
            self._buffer = self._buffer[match.end() :]
            self._transition(ParserPhase.DONE)
            return False

        if self.phase is ParserPhase.RESYNCHRONIZING:
            self.resync_count += 1
            self.consecutive_errors = 0
            logger.debug(f"Parser resynchronized at field '{match.group(1)}'")

        type_match = _TYPE_ATTR_PATTERN.search(match.group(2))
        self._field = _OpenField(
            name=match.group(1),
            type_hint=type_match.group(1).lower() if type_match else None,
        )
        self._buffer = self._buffer[match.end() :]
        self._transition(ParserPhase.ACCUMULATING_FIELD)
        return True

    def _accumulate(self) -> bool:
        open_field = self._field
        if open_field is None:
            raise TaggedParseError("Accumulating without an open field")

        if open_field.is_object:
            closer = re.search(rf"</{re.escape(open_field.name)}\s*>", self._buffer)
            container_close = self._close_pattern.search(self._buffer)
            if closer and (container_close is None or closer.start() < container_close.start()):
                open_field.parts.append(self._buffer[: closer.start()])
                self._buffer = self._buffer[closer.end() :]
                self._complete_field()
                return True
            end = container_close
        else:
            _, end = self._next_boundary(self._buffer)

        if end is None:
            split = _hold_back_index(self._buffer)
            open_field.parts.append(self._buffer[:split])
            self._buffer = self._buffer[split:]
            return False

        open_field.parts.append(self._buffer[: end.start()])
        self._buffer = self._buffer[end.start() :]
        self._complete_field()
        return True

    def _next_boundary(self, text: str) -> tuple[str | None, re.Match | None]:
        """Earliest field marker or container close in ``text``."""
        marker = None
        for candidate in FIELD_MARKER_PATTERN.finditer(text):
            if _FIELD_ATTR_PATTERN.search(candidate.group(2)):
                marker = candidate
                break
        close = self._close_pattern.search(text)

        if marker and (close is None or marker.start() < close.start()):
            return "field", marker
        if close:
            return "close", close
        return None, None

    # === FIELD COMPLETION ===

    def _complete_field(self) -> None:
        open_field = self._field
        self._field = None
        raw = _strip_closing_tag(open_field.text, open_field.name)

        try:
            value = coerce_value(
                raw, open_field.type_hint, open_field.name, nested=self._parse_nested
            )
        except FieldCoercionError as e:
            self._record_error(f"{open_field.name}: {e}")
            if self.consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                self._transition(ParserPhase.RESYNCHRONIZING)
            else:
                self._transition(ParserPhase.AWAITING_FIELD)
            return

        self._store(open_field.name, value)
        self.consecutive_errors = 0
        self._transition(ParserPhase.AWAITING_FIELD)

    def _parse_nested(self, content: str) -> dict[str, Any]:
        nested = TaggedFieldParser(self.container_tag, expect_container=False)
        nested.push(content)
        outcome = nested.finish()
        self.errors.extend(nested.errors)
        self.error_count += nested.error_count
        return outcome.result if outcome else {}

    def _store(self, name: str, value: Any) -> None:
        # Repeated names collapse into a list in arrival order
        if name in self._collapsed:
            self.result[name].append(value)
        elif name in self.result:
            self.result[name] = [self.result[name], value]
            self._collapsed.add(name)
        else:
            self.result[name] = value

    # === ERRORS ===

    def _record_error(self, message: str) -> None:
        self.errors.append(message)
        self.error_count += 1
        self.consecutive_errors += 1
        logger.debug(f"Parse error ({self.consecutive_errors} consecutive): {message}")

    def _recover(self, error: Exception) -> None:
        """Absorb an unexpected failure and move the machine somewhere safe."""
        self._record_error(f"internal: {error}")
        logger.warning(f"Tagged parser recovered from internal error: {error}")
        self._field = None
        # Guarantee forward progress on the next push
        self._buffer = self._buffer[1:]
        if self.phase is not ParserPhase.AWAITING_CONTAINER:
            if self.consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                self.phase = ParserPhase.RESYNCHRONIZING
            else:
                self.phase = ParserPhase.AWAITING_FIELD

    # === SNAPSHOTS ===

    def _snapshot(self) -> dict[str, Any]:
        snapshot = {
            key: list(value) if key in self._collapsed else value
            for key, value in self.result.items()
        }
        open_field = self._field
        if open_field is not None and normalize_type(open_field.type_hint) == "string":
            preview = _strip_closing_tag(open_field.text, open_field.name).strip()
            name = open_field.name
            if name in self._collapsed:
                snapshot[name] = [*snapshot[name], preview]
            elif name in snapshot:
                snapshot[name] = [snapshot[name], preview]
            else:
                snapshot[name] = preview
        return snapshot


def parse_tagged_text(
    text: str,
    container_tag: str = DEFAULT_CONTAINER_TAG,
    require_container: bool = True,
) -> dict[str, Any]:
    """
    Parse a complete response in one pass.

    Raises:
        TaggedParseError: the container marker is missing and
            ``require_container`` is set
    """
    parser = TaggedFieldParser(container_tag)
    parser.push(text)
    outcome = parser.finish()
    if outcome is None:
        if require_container:
            raise TaggedParseError(f"Invalid tagged response: missing <{container_tag}> tag")
        return parse_fields(text, container_tag)
    return outcome.result


def parse_fields(content: str, container_tag: str = DEFAULT_CONTAINER_TAG) -> dict[str, Any]:
    """Apply the field grammar to text that has no container."""
    parser = TaggedFieldParser(container_tag, expect_container=False)
    parser.push(content)
    outcome = parser.finish()
    return outcome.result if outcome else {}
