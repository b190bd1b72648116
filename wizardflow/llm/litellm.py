"""LiteLLM-backed provider: one interface over OpenAI, Anthropic, Gemini, xAI, ...

Model strings follow LiteLLM's ``provider/model`` convention, e.g.
``anthropic/claude-haiku-4-5-20251001`` or ``openai/gpt-4o-mini``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import litellm

from wizardflow.errors import LLMProviderError
from wizardflow.llm.provider import LLMProvider, LLMResponse
from wizardflow.llm.stream_events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_BACKOFF_SECONDS = 2.0


def _build_messages(prompt: str, system: str) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


class LiteLLMProvider(LLMProvider):
    """
    Completion provider backed by ``litellm.acompletion``.

    Rate-limit errors are retried with exponential backoff up to
    ``max_retries`` times; every other failure is raised as
    LLMProviderError so the wizard can count it against the step's budget.
    """

    name = "litellm"

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        api_base: str | None = None,
        max_retries: int = 2,
        supported_prefixes: tuple[str, ...] | None = None,
    ):
        """
        Args:
            model: Default model used when a step does not name one
            api_key: Explicit API key; otherwise LiteLLM reads vendor env vars
            api_base: Optional base URL override (proxies, local servers)
            max_retries: Rate-limit retries per call
            supported_prefixes: Restrict supports_model() to these prefixes
        """
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.max_retries = max_retries
        self.supported_prefixes = supported_prefixes

    def supports_model(self, model: str) -> bool:
        if not self.supported_prefixes:
            return True
        return model.startswith(self.supported_prefixes)

    def _request_kwargs(
        self, prompt: str, model: str, max_tokens: int, temperature: float, system: str
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "messages": _build_messages(prompt, system),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        return kwargs

    async def _call(self, **kwargs: Any) -> Any:
        attempt = 0
        while True:
            try:
                return await litellm.acompletion(**kwargs)
            except litellm.RateLimitError as e:
                if attempt >= self.max_retries:
                    raise LLMProviderError(
                        f"Rate limited after {attempt + 1} attempts: {e}", provider=self.name
                    ) from e
                delay = RATE_LIMIT_BACKOFF_SECONDS * (2**attempt)
                logger.warning(f"Rate limited by {kwargs['model']}, retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                attempt += 1
            except Exception as e:
                status = getattr(e, "status_code", None)
                raise LLMProviderError(
                    f"LLM API error: {e}", provider=self.name, status_code=status
                ) from e

    async def complete(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> LLMResponse:
        kwargs = self._request_kwargs(prompt, model, max_tokens, temperature, system)
        response = await self._call(**kwargs)

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            model=getattr(response, "model", None) or kwargs["model"],
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )

    async def stream(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> AsyncIterator[StreamEvent]:
        kwargs = self._request_kwargs(prompt, model, max_tokens, temperature, system)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}
        response = await self._call(**kwargs)

        snapshot = ""
        stop_reason = ""
        input_tokens = 0
        output_tokens = 0
        try:
            async for chunk in response:
                if chunk.choices:
                    choice = chunk.choices[0]
                    delta = getattr(choice.delta, "content", None) or ""
                    if delta:
                        snapshot += delta
                        yield TextDeltaEvent(content=delta, snapshot=snapshot)
                    if choice.finish_reason:
                        stop_reason = choice.finish_reason
                usage = getattr(chunk, "usage", None)
                if usage:
                    input_tokens = getattr(usage, "prompt_tokens", 0) or 0
                    output_tokens = getattr(usage, "completion_tokens", 0) or 0
        except Exception as e:
            raise LLMProviderError(f"Stream interrupted: {e}", provider=self.name) from e

        yield TextEndEvent(full_text=snapshot)
        yield FinishEvent(
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=kwargs["model"],
        )
