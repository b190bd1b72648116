"""Stream event types for streamed completions.

A discriminated union of frozen dataclasses. Providers yield these from
``LLMProvider.stream()``; the wizard feeds every ``TextDeltaEvent`` into the
tagged-field parser and reads token usage off the ``FinishEvent``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class TextDeltaEvent:
    """A chunk of text produced by the model."""

    type: Literal["text_delta"] = "text_delta"
    content: str = ""  # this chunk's text
    snapshot: str = ""  # accumulated text so far


@dataclass(frozen=True)
class TextEndEvent:
    """Signals that text generation is complete."""

    type: Literal["text_end"] = "text_end"
    full_text: str = ""


@dataclass(frozen=True)
class FinishEvent:
    """The model has finished generating."""

    type: Literal["finish"] = "finish"
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


@dataclass(frozen=True)
class StreamErrorEvent:
    """An error occurred mid-stream."""

    type: Literal["error"] = "error"
    error: str = ""
    recoverable: bool = False


StreamEvent = TextDeltaEvent | TextEndEvent | FinishEvent | StreamErrorEvent
