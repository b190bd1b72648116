"""Generic HTTP completion provider.

Talks to a hosted completion service exposing two endpoints:

    POST {base_url}/completions         -> {"completion": str, "usage": {...}}
    POST {base_url}/completions/stream  -> raw text body, streamed

Both accept ``{"prompt", "max_tokens", "temperature"}`` and authenticate
with an ``x-api-key`` header.
"""

import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import httpx

from wizardflow.errors import LLMProviderError
from wizardflow.llm.provider import LLMProvider, LLMResponse
from wizardflow.llm.stream_events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


def _error_message(response: httpx.Response) -> str:
    """Pull the most specific error text out of a non-2xx response."""
    message = f"HTTP {response.status_code}: {response.reason_phrase}"
    try:
        data = response.json()
    except ValueError:
        text = response.text.strip()
        return text or message
    if isinstance(data, dict):
        return data.get("error") or data.get("message") or message
    return message


def _usage(data: dict[str, Any]) -> tuple[int, int]:
    usage = (data.get("fullResult") or {}).get("usage") or data.get("usage") or {}
    return usage.get("prompt_tokens", 0) or 0, usage.get("completion_tokens", 0) or 0


class HttpCompletionProvider(LLMProvider):
    """Provider for a plain JSON-over-HTTP completion endpoint."""

    name = "http"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        models: set[str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            base_url: Service root; defaults to WIZARDFLOW_HTTP_BASE_URL
            api_key: Defaults to WIZARDFLOW_HTTP_API_KEY
            models: Model ids this endpoint serves (None = any)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or os.environ.get("WIZARDFLOW_HTTP_BASE_URL", "")).rstrip("/")
        self.api_key = api_key or os.environ.get("WIZARDFLOW_HTTP_API_KEY")
        if not self.base_url:
            raise ValueError(
                "HTTP completion base URL required. Set WIZARDFLOW_HTTP_BASE_URL or pass base_url."
            )
        if not self.api_key:
            raise ValueError(
                "HTTP completion API key required. Set WIZARDFLOW_HTTP_API_KEY or pass api_key."
            )
        self.models = models
        self.timeout = timeout
        self._transport = transport

    def supports_model(self, model: str) -> bool:
        return self.models is None or model in self.models

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json", "x-api-key": self.api_key},
            timeout=self.timeout,
            transport=self._transport,
        )

    @staticmethod
    def _payload(prompt: str, max_tokens: int, temperature: float, system: str) -> dict:
        full_prompt = f"{system}\n\n{prompt}" if system else prompt
        return {"prompt": full_prompt, "max_tokens": max_tokens, "temperature": temperature}

    async def complete(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> LLMResponse:
        payload = self._payload(prompt, max_tokens, temperature, system)
        try:
            async with self._client() as client:
                response = await client.post("/completions", json=payload)
        except httpx.HTTPError as e:
            raise LLMProviderError(f"LLM API error: {e}", provider=self.name) from e

        if response.is_error:
            raise LLMProviderError(
                f"LLM API error: {_error_message(response)}",
                provider=self.name,
                status_code=response.status_code,
            )

        data = response.json()
        input_tokens, output_tokens = _usage(data)
        return LLMResponse(
            content=data.get("completion", ""),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            raw_response=data,
        )

    async def stream(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> AsyncIterator[StreamEvent]:
        payload = self._payload(prompt, max_tokens, temperature, system)
        snapshot = ""
        try:
            async with self._client() as client:
                async with client.stream("POST", "/completions/stream", json=payload) as response:
                    if response.is_error:
                        await response.aread()
                        raise LLMProviderError(
                            f"LLM API error: {_error_message(response)}",
                            provider=self.name,
                            status_code=response.status_code,
                        )
                    async for chunk in response.aiter_text():
                        if not chunk:
                            continue
                        snapshot += chunk
                        yield TextDeltaEvent(content=chunk, snapshot=snapshot)
        except httpx.HTTPError as e:
            raise LLMProviderError(f"LLM API error: {e}", provider=self.name) from e

        yield TextEndEvent(full_text=snapshot)
        yield FinishEvent(model=model)
