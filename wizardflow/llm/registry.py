"""Provider selection by model identifier."""

import logging
import os
from collections.abc import AsyncIterator

from wizardflow.errors import LLMProviderError
from wizardflow.llm.provider import LLMProvider, LLMResponse
from wizardflow.llm.stream_events import StreamEvent

logger = logging.getLogger(__name__)

# env var -> LiteLLM model prefixes it unlocks
VENDOR_KEYS: dict[str, tuple[str, ...]] = {
    "OPENAI_API_KEY": ("openai/", "gpt-"),
    "ANTHROPIC_API_KEY": ("anthropic/", "claude-"),
    "GEMINI_API_KEY": ("gemini/", "gemini-"),
    "XAI_API_KEY": ("xai/", "grok-"),
}


class ProviderRegistry:
    """Named providers, consulted in registration order."""

    def __init__(self) -> None:
        self._providers: dict[str, LLMProvider] = {}

    @classmethod
    def from_env(cls) -> "ProviderRegistry":
        """
        Register default providers for whichever credentials are present.

        - WIZARDFLOW_HTTP_API_KEY + WIZARDFLOW_HTTP_BASE_URL -> HttpCompletionProvider
        - any vendor key in VENDOR_KEYS -> LiteLLMProvider limited to those vendors
        """
        registry = cls()

        if os.environ.get("WIZARDFLOW_HTTP_API_KEY") and os.environ.get("WIZARDFLOW_HTTP_BASE_URL"):
            from wizardflow.llm.http import HttpCompletionProvider

            models = os.environ.get("WIZARDFLOW_HTTP_MODELS")
            registry.register(
                "http",
                HttpCompletionProvider(
                    models={m.strip() for m in models.split(",")} if models else None
                ),
            )

        prefixes: tuple[str, ...] = ()
        for env_var, vendor_prefixes in VENDOR_KEYS.items():
            if os.environ.get(env_var):
                prefixes += vendor_prefixes
        if prefixes:
            from wizardflow.llm.litellm import LiteLLMProvider

            registry.register("litellm", LiteLLMProvider(supported_prefixes=prefixes))

        if not registry._providers:
            logger.warning("No LLM credentials found in environment; no providers registered")
        return registry

    def register(self, name: str, provider: LLMProvider) -> None:
        self._providers[name] = provider
        logger.debug(f"Registered provider '{name}' ({type(provider).__name__})")

    def get_provider_for_model(self, model: str) -> LLMProvider:
        for provider in self._providers.values():
            if provider.supports_model(model):
                return provider
        raise LLMProviderError(f"No provider registered for model: {model}")

    def has_provider_for_model(self, model: str) -> bool:
        return any(p.supports_model(model) for p in self._providers.values())

    @property
    def providers(self) -> list[LLMProvider]:
        return list(self._providers.values())


class RoutingLLMProvider(LLMProvider):
    """An LLMProvider that forwards each call to the registry's match for the model."""

    name = "router"

    def __init__(self, registry: ProviderRegistry | None = None):
        self.registry = registry or ProviderRegistry.from_env()

    def supports_model(self, model: str) -> bool:
        return self.registry.has_provider_for_model(model)

    async def complete(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> LLMResponse:
        if not model:
            raise LLMProviderError("Model must be specified")
        provider = self.registry.get_provider_for_model(model)
        return await provider.complete(
            prompt=prompt,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
        )

    async def stream(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system: str = "",
    ) -> AsyncIterator[StreamEvent]:
        if not model:
            raise LLMProviderError("Model must be specified")
        provider = self.registry.get_provider_for_model(model)
        async for event in provider.stream(
            prompt=prompt,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
        ):
            yield event
