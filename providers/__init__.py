"""Adapters vers les serveurs de modèles (vLLM, Ollama, OpenAI)."""
from .models import ModelConfig, ModelRegistry, load_registry
from .openai_compatible import OpenAICompatibleProvider, ProviderRouter

__all__ = [
    "ModelConfig",
    "ModelRegistry",
    "load_registry",
    "OpenAICompatibleProvider",
    "ProviderRouter",
]
