"""LLM provider abstraction."""

from wizardflow.llm.mock import MockLLMProvider
from wizardflow.llm.provider import LLMProvider, LLMResponse
from wizardflow.llm.registry import ProviderRegistry, RoutingLLMProvider
from wizardflow.llm.stream_events import (
    FinishEvent,
    StreamErrorEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "MockLLMProvider",
    "ProviderRegistry",
    "RoutingLLMProvider",
    "StreamEvent",
    "TextDeltaEvent",
    "TextEndEvent",
    "FinishEvent",
    "StreamErrorEvent",
]

try:
    from wizardflow.llm.litellm import LiteLLMProvider  # noqa: F401

    __all__.append("LiteLLMProvider")
except ImportError:
    pass

try:
    from wizardflow.llm.http import HttpCompletionProvider  # noqa: F401

    __all__.append("HttpCompletionProvider")
except ImportError:
    pass
