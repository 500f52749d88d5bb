"""Model provider registry: maps "provider/model" strings to callable model handles.

Providers are resolved lazily from a name -> factory map and cached on the
registry for its lifetime. Every model call goes through LiteLLM.
"""

import importlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, NamedTuple

from .errors import (
    AgentError,
    ModelTimeoutError,
    ProviderError,
    ProviderLoadError,
    UnsupportedProviderError,
)

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "openai"
DEFAULT_LMSTUDIO_URL = "http://127.0.0.1:1234"


class ParsedModel(NamedTuple):
    provider: str
    model_name: str


def parse_model_identifier(model_string: str) -> ParsedModel:
    """Split "provider/model" on the first slash.

    Strings without a slash keep working as bare OpenAI model names.
    """
    if "/" not in model_string:
        return ParsedModel(DEFAULT_PROVIDER, model_string)
    provider, model_name = model_string.split("/", 1)
    return ParsedModel(provider.lower(), model_name)


@dataclass
class ModelHandle:
    """A resolved model: everything LiteLLM needs to call it."""

    provider: str
    model_name: str
    litellm_model: str
    api_key: str | None = None
    api_base: str | None = None

    def complete(
        self,
        messages: list[dict],
        *,
        tools: list[dict] | None = None,
        tool_choice: str = "auto",
        temperature: float | None = None,
        timeout: float | None = None,
    ):
        """Run one chat completion. Returns (message, finish_reason)."""
        import litellm

        litellm.suppress_debug_info = True

        completion_kwargs: dict[str, Any] = dict(
            model=self.litellm_model,
            messages=messages,
        )
        if tools:
            completion_kwargs["tools"] = tools
            completion_kwargs["tool_choice"] = tool_choice
        for key, val in [
            ("temperature", temperature),
            ("timeout", timeout),
            ("api_key", self.api_key),
            ("api_base", self.api_base),
        ]:
            if val is not None:
                completion_kwargs[key] = val

        try:
            response = litellm.completion(**completion_kwargs)
        except litellm.Timeout as e:
            raise ModelTimeoutError(
                f"model call timed out after {timeout}s ({self.litellm_model})"
            ) from e
        except Exception as e:
            raise AgentError(f"LLM call failed: {e}") from e

        choice = response.choices[0]
        return choice.message, choice.finish_reason


class BaseProvider:
    """Common behavior for providers whose key can come from the environment."""

    name = ""
    litellm_prefix = ""

    def __init__(self):
        self.api_key: str | None = None

    def requires_api_key(self) -> bool:
        return False

    def initialize(self, credentials: dict[str, str]) -> None:
        key = credentials.get(self.name)
        if key:
            self.api_key = key

    def get_model(self, model_name: str) -> ModelHandle:
        return ModelHandle(
            provider=self.name,
            model_name=model_name,
            litellm_model=f"{self.litellm_prefix}/{model_name}",
            api_key=self.api_key,
        )


class OpenAIProvider(BaseProvider):
    name = "openai"
    litellm_prefix = "openai"


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    litellm_prefix = "anthropic"


class GoogleProvider(BaseProvider):
    name = "google"
    litellm_prefix = "gemini"


class LMStudioProvider(BaseProvider):
    """Local LM Studio server speaking the OpenAI-compatible API."""

    name = "lmstudio"
    litellm_prefix = "openai"

    def get_model(self, model_name: str) -> ModelHandle:
        base_url = os.environ.get("LMSTUDIO_BASE_URL", DEFAULT_LMSTUDIO_URL)
        return ModelHandle(
            provider=self.name,
            model_name=model_name,
            litellm_model=f"openai/{model_name}",
            api_key=self.api_key or "lm-studio",
            api_base=f"{base_url.rstrip('/')}/v1",
        )


class OpenRouterProvider(BaseProvider):
    """Router provider. Needs an explicit key and fails fast without one."""

    name = "openrouter"
    litellm_prefix = "openrouter"

    def requires_api_key(self) -> bool:
        return True

    def get_model(self, model_name: str) -> ModelHandle:
        try:
            importlib.import_module("litellm")
        except ImportError as e:
            raise ProviderError(
                "OpenRouter provider is not available. Install the litellm package.",
                self.name,
            ) from e

        api_key = self.api_key or os.environ.get("OPENROUTER_API_KEY")
        if not api_key:
            raise ProviderError(
                "OpenRouter API key not provided. Set OPENROUTER_API_KEY or add "
                'an "openrouter" entry to keys.json.',
                self.name,
            )

        # model_name keeps its org part ("anthropic/claude-3.5-sonnet",
        # "openrouter/auto"); LiteLLM wants it behind its own prefix.
        return ModelHandle(
            provider=self.name,
            model_name=model_name,
            litellm_model=f"openrouter/{model_name}",
            api_key=api_key,
        )


PROVIDER_FACTORIES: dict[str, Callable[[], BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
    "openrouter": OpenRouterProvider,
    "lmstudio": LMStudioProvider,
}


class ProviderRegistry:
    """Lazily constructs and caches one provider instance per provider name.

    Built once by the composition root and handed to the session, so tests
    can use a fresh registry each time.
    """

    def __init__(self, factories: dict[str, Callable[[], Any]] | None = None):
        source = PROVIDER_FACTORIES if factories is None else factories
        self._factories = {name.lower(): f for name, f in source.items()}
        self._providers: dict[str, Any] = {}

    def register(self, name: str, factory: Callable[[], Any]) -> None:
        """Add or replace a provider factory. Drops any cached instance."""
        key = name.lower()
        self._factories[key] = factory
        self._providers.pop(key, None)

    def is_cached(self, name: str) -> bool:
        return name.lower() in self._providers

    def get_provider(self, provider_name: str):
        key = provider_name.lower()
        cached = self._providers.get(key)
        if cached is not None:
            return cached

        factory = self._factories.get(key)
        if factory is None:
            raise UnsupportedProviderError(provider_name)

        try:
            provider = factory()
        except Exception as e:
            raise ProviderLoadError(
                f"Failed to load provider {provider_name}: {e}",
                provider_name,
                recoverable=True,
            ) from e

        logger.debug("provider %s loaded", key)
        self._providers[key] = provider
        return provider

    def get_model_from_string(
        self, model_string: str, credentials: dict[str, str] | None = None
    ) -> ModelHandle:
        """Parse, resolve, initialize (when the provider asks for it), build the model."""
        provider_name, model_name = parse_model_identifier(model_string)
        try:
            provider = self.get_provider(provider_name)
            if provider.requires_api_key():
                provider.initialize(credentials or {})
            return provider.get_model(model_name)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(
                f"Error getting model for {model_string}: {e}",
                provider_name,
                recoverable=True,
            ) from e
