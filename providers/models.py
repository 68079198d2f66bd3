"""
Registre des modèles disponibles.

Chargé depuis MODELS_CONFIG_PATH (JSON) si défini, sinon depuis les
valeurs par défaut ci-dessous. Format du fichier :

    {
      "defaultModel": "llama3.2",
      "models": {
        "llama3.2": {"name": "Llama 3.2", "provider": "ollama"},
        "internvl": {"provider": "vllm", "model": "OpenGVLab/InternVL2_5-1B-MPO", "multimodal": true}
      }
    }
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional

from config import DEFAULT_MODEL, MODELS_CONFIG_PATH, OLLAMA_API_BASE, OPENAI_API_BASE, VLLM_API_BASE

from streaming.errors import UnknownModelError

logger = logging.getLogger("model-registry")

PROVIDER_API_BASES = {
    "ollama": OLLAMA_API_BASE,
    "vllm": VLLM_API_BASE,
    "openai": OPENAI_API_BASE,
}

DEFAULT_MODELS = {
    "llama3.2": {"name": "Llama 3.2", "provider": "ollama", "context_length": 128000},
    "qwen2.5-coder": {"name": "Qwen 2.5 Coder", "provider": "ollama", "context_length": 32768},
    "internvl2.5-1b": {
        "name": "InternVL 2.5 1B MPO",
        "provider": "vllm",
        "model": "OpenGVLab/InternVL2_5-1B-MPO",
        "multimodal": True,
    },
    "gpt-4o-mini": {"name": "GPT-4o mini", "provider": "openai", "multimodal": True},
}


@dataclass(frozen=True)
class ModelConfig:
    id: str
    name: str
    provider: str
    api_base: str
    model: str  # Identifiant envoyé au serveur
    multimodal: bool = False
    enabled: bool = True
    context_length: Optional[int] = None


class ModelRegistry:

    def __init__(self, models: dict[str, ModelConfig], default_model: str = DEFAULT_MODEL):
        self._models = models
        self.default_model = default_model

    def all(self, enabled_only: bool = True) -> dict[str, ModelConfig]:
        return {k: m for k, m in self._models.items() if m.enabled or not enabled_only}

    def resolve(self, model_id: Optional[str]) -> ModelConfig:
        """Modèle demandé, ou modèle par défaut si absent."""
        selected = model_id or self.default_model
        config = self._models.get(selected)
        if config is None or not config.enabled:
            raise UnknownModelError(selected)
        return config


def _build(model_id: str, raw: dict) -> ModelConfig:
    provider = raw.get("provider", "ollama")
    return ModelConfig(
        id=model_id,
        name=raw.get("name", model_id),
        provider=provider,
        api_base=raw.get("api_base") or raw.get("apiBase") or PROVIDER_API_BASES.get(provider, OLLAMA_API_BASE),
        model=raw.get("model", model_id),
        multimodal=bool(raw.get("multimodal", False)),
        enabled=raw.get("enabled", True) is not False,
        context_length=raw.get("context_length") or raw.get("contextLength"),
    )


def load_registry(path: str = MODELS_CONFIG_PATH) -> ModelRegistry:
    default_model = DEFAULT_MODEL
    raw_models = DEFAULT_MODELS
    if path:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        raw_models = data.get("models", {})
        default_model = data.get("defaultModel") or default_model
        logger.info(f"{len(raw_models)} modèle(s) chargé(s) depuis {path}")

    models = {model_id: _build(model_id, raw) for model_id, raw in raw_models.items()}
    return ModelRegistry(models, default_model=default_model)
