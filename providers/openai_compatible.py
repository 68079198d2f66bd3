"""
Provider OpenAI-compatible : vLLM, Ollama (/v1) et OpenAI.

Le stream est demandé avec include_usage : le dernier chunk a
`choices: []` et porte les compteurs de tokens.
"""
import logging
from typing import Iterator, Optional

import openai
from openai import OpenAI

from config import OPENAI_API_KEY

from streaming.errors import ProviderError

from .models import ModelConfig, ModelRegistry, load_registry

logger = logging.getLogger("llm-provider")


class OpenAICompatibleProvider:

    def __init__(self, client: OpenAI):
        self._client = client

    @classmethod
    def for_base_url(cls, base_url: str, api_key: Optional[str] = None) -> "OpenAICompatibleProvider":
        # vLLM et Ollama n'exigent pas de vraie clé
        return cls(OpenAI(base_url=base_url, api_key=api_key or OPENAI_API_KEY or "dummy-key"))

    def stream(self, model: str, messages: list[dict]) -> Iterator[dict]:
        """Génère les chunks bruts (dict) du serveur."""
        try:
            stream = self._client.chat.completions.create(
                model=model,
                messages=messages,
                stream=True,
                stream_options={"include_usage": True},
            )
            for chunk in stream:
                yield chunk.model_dump(exclude_none=True)
        except openai.OpenAIError as e:
            raise ProviderError(f"{type(e).__name__}: {e}", model) from e


class ProviderRouter:
    """Choisit le provider selon le modèle demandé. Un client par api_base."""

    def __init__(self, registry: Optional[ModelRegistry] = None, provider_factory=OpenAICompatibleProvider.for_base_url):
        self._registry = registry or load_registry()
        self._provider_factory = provider_factory
        self._providers: dict[str, OpenAICompatibleProvider] = {}

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    def resolve(self, model_name: Optional[str]) -> tuple[OpenAICompatibleProvider, ModelConfig]:
        config = self._registry.resolve(model_name)
        provider = self._providers.get(config.api_base)
        if provider is None:
            provider = self._provider_factory(config.api_base)
            self._providers[config.api_base] = provider
        logger.info(f"Modèle '{config.id}' -> {config.provider} ({config.api_base})")
        return provider, config
