"""LLM Provider abstraction for pluggable completion backends."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from wizardflow.errors import LLMProviderError
from wizardflow.llm.stream_events import (
    FinishEvent,
    StreamErrorEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)


@dataclass
class LLMResponse:
    """Response from a completion call."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    raw_response: Any = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def has_usage(self) -> bool:
        return self.total_tokens > 0


class LLMProvider(ABC):
    """
    Abstract completion provider - plug in any model backend.

    Implementations should handle:
    - API authentication
    - Request/response formatting
    - Token counting
    - Raising LLMProviderError for transport and non-2xx failures
    """

    name: str = "base"

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> LLMResponse:
        """
        Generate a completion for a single prompt.

        Args:
            prompt: The full user prompt
            model: Model identifier understood by this provider
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            system: Optional system prompt

        Returns:
            LLMResponse with content and token usage
        """

    def supports_model(self, model: str) -> bool:
        """Whether this provider can serve ``model``. Defaults to everything."""
        return True

    async def stream(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a completion as an async iterator of StreamEvents.

        Default implementation wraps complete() with synthetic events.
        Subclasses SHOULD override for true streaming.
        """
        response = await self.complete(
            prompt=prompt,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
        )
        yield TextDeltaEvent(content=response.content, snapshot=response.content)
        yield TextEndEvent(full_text=response.content)
        yield FinishEvent(
            stop_reason=response.stop_reason,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            model=response.model,
        )

    async def complete_streaming(
        self,
        prompt: str,
        model: str,
        on_chunk: Callable[[str], None],
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> LLMResponse:
        """
        Drive ``stream()`` to completion, handing every text chunk to ``on_chunk``.

        Returns the assembled response. A non-recoverable StreamErrorEvent
        raises LLMProviderError.
        """
        parts: list[str] = []
        finish: FinishEvent | None = None

        async for event in self.stream(
            prompt=prompt,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
        ):
            if isinstance(event, TextDeltaEvent):
                if event.content:
                    parts.append(event.content)
                    on_chunk(event.content)
            elif isinstance(event, FinishEvent):
                finish = event
            elif isinstance(event, StreamErrorEvent) and not event.recoverable:
                raise LLMProviderError(event.error, provider=self.name)

        return LLMResponse(
            content="".join(parts),
            model=(finish.model if finish and finish.model else model),
            input_tokens=finish.input_tokens if finish else 0,
            output_tokens=finish.output_tokens if finish else 0,
            stop_reason=finish.stop_reason if finish else "",
        )
