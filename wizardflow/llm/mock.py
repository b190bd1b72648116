"""Scripted provider for tests and offline development."""

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass

from wizardflow.llm.provider import LLMProvider, LLMResponse
from wizardflow.llm.stream_events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)

# A scripted reply: literal text, an exception to raise, or a function of the prompt
MockReply = str | BaseException | Callable[[str], str]


@dataclass
class MockCall:
    """One recorded call to the mock provider."""

    prompt: str
    model: str
    max_tokens: int
    temperature: float
    streamed: bool


class MockLLMProvider(LLMProvider):
    """
    Replays scripted replies in order.

    When the script runs out, ``default`` is returned (or, if it is None,
    the last reply is repeated). Streamed replies are split into
    ``chunk_size``-character pieces.
    """

    name = "mock"

    def __init__(
        self,
        replies: Iterable[MockReply] = (),
        default: MockReply | None = None,
        chunk_size: int | None = None,
        delay: float = 0.0,
        usage: tuple[int, int] = (0, 0),
        models: set[str] | None = None,
    ):
        self._replies: deque[MockReply] = deque(replies)
        self._last: MockReply | None = None
        self.default = default
        self.chunk_size = chunk_size
        self.delay = delay
        self.usage = usage
        self.models = models
        self.calls: list[MockCall] = []

    def supports_model(self, model: str) -> bool:
        return self.models is None or model in self.models

    def add_reply(self, reply: MockReply) -> None:
        self._replies.append(reply)

    def _next_text(self, prompt: str) -> str:
        if self._replies:
            reply = self._replies.popleft()
            self._last = reply
        elif self.default is not None:
            reply = self.default
        elif self._last is not None:
            reply = self._last
        else:
            reply = ""

        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    def _chunks(self, text: str) -> list[str]:
        if not self.chunk_size or self.chunk_size <= 0:
            return [text]
        return [text[i : i + self.chunk_size] for i in range(0, len(text), self.chunk_size)]

    async def complete(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> LLMResponse:
        self.calls.append(MockCall(prompt, model, max_tokens, temperature, streamed=False))
        if self.delay:
            await asyncio.sleep(self.delay)
        text = self._next_text(prompt)
        return LLMResponse(
            content=text,
            model=model,
            input_tokens=self.usage[0],
            output_tokens=self.usage[1],
            stop_reason="stop",
        )

    async def stream(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append(MockCall(prompt, model, max_tokens, temperature, streamed=True))
        text = self._next_text(prompt)
        snapshot = ""
        for chunk in self._chunks(text):
            if self.delay:
                await asyncio.sleep(self.delay)
            snapshot += chunk
            yield TextDeltaEvent(content=chunk, snapshot=snapshot)
        yield TextEndEvent(full_text=text)
        yield FinishEvent(
            stop_reason="stop",
            input_tokens=self.usage[0],
            output_tokens=self.usage[1],
            model=model,
        )
