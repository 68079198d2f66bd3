"""
Messages échangés sur les queues et normalisation des chunks provider.

Format des messages :
- Requête  : {"correlationId", "modelName", "promptMessages": [{"role", "content"}]}
- Réponse  : {"correlationId", "timestamp", "isTerminal", "delta", "status", "error", "result"}

Chaque provider a son propre format de chunk (OpenAI `choices[0].delta`,
Ollama `message.content` + `done`, ...). Tout est ramené ici à
Delta | Terminal pour que l'agrégateur ne voie qu'une seule forme.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import MalformedMessageError

# Les durées Ollama sont en nanosecondes
NANOSECONDS = 1e9


# ============================================================
# REQUÊTE
# ============================================================

class PromptPart(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    type: Literal["text", "image_url"]
    text: Optional[str] = None
    image_url: Optional[dict[str, Any]] = None


class PromptMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "assistant", "user"]
    content: Union[str, list[PromptPart]]

    def to_provider(self) -> dict:
        return self.model_dump(exclude_none=True)


class InferenceRequestMessage(BaseModel):
    """Requête de génération publiée sur la queue de requêtes."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    correlation_id: str = Field(alias="correlationId", min_length=1)
    model_name: Optional[str] = Field(default=None, alias="modelName")
    prompt_messages: list[PromptMessage] = Field(default_factory=list, alias="promptMessages")

    def encode(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode()

    @classmethod
    def decode(cls, body: bytes) -> "InferenceRequestMessage":
        return _decode(cls, body)


# ============================================================
# CHUNKS NORMALISÉS
# ============================================================

@dataclass(frozen=True)
class ProviderUsage:
    """Compteurs d'usage, quel que soit le format du provider."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    total_duration_s: Optional[float] = None
    eval_duration_s: Optional[float] = None


@dataclass(frozen=True)
class Delta:
    text: str


@dataclass(frozen=True)
class Terminal:
    usage: ProviderUsage = field(default_factory=ProviderUsage)
    status: str = "completed"
    error: Optional[str] = None
    model: Optional[str] = None
    response_id: Optional[str] = None
    created: Optional[int] = None


NormalizedChunk = Union[Delta, Terminal]


def _as_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_seconds(value) -> Optional[float]:
    try:
        nanoseconds = float(value)
    except (TypeError, ValueError):
        return None
    if nanoseconds <= 0:
        return None
    return nanoseconds / NANOSECONDS


def normalize_usage(payload: Optional[dict]) -> ProviderUsage:
    """
    Extrait les compteurs d'un payload provider.

    Supporte `usage.{prompt,completion,total}_tokens` (OpenAI / vLLM) et
    `prompt_eval_count` / `eval_count` / `*_duration` (Ollama natif).
    Les compteurs absents valent 0.
    """
    payload = payload if isinstance(payload, dict) else {}
    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}

    prompt_tokens = _as_int(usage.get("prompt_tokens", payload.get("prompt_eval_count")))
    completion_tokens = _as_int(usage.get("completion_tokens", payload.get("eval_count")))
    total_tokens = _as_int(usage.get("total_tokens")) or prompt_tokens + completion_tokens

    return ProviderUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
        total_duration_s=_as_seconds(usage.get("total_duration", payload.get("total_duration"))),
        eval_duration_s=_as_seconds(usage.get("eval_duration", payload.get("eval_duration"))),
    )


def is_terminal_payload(payload: Optional[dict]) -> bool:
    """Fin de stream : `done: true` ou `choices` présent mais vide."""
    if not isinstance(payload, dict):
        return False
    if payload.get("done") is True:
        return True
    choices = payload.get("choices")
    return isinstance(choices, list) and len(choices) == 0


def extract_content(payload: Optional[dict]) -> str:
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
    elif isinstance(payload.get("message"), dict):
        content = payload["message"].get("content")
    else:
        content = payload.get("response")
    return content if isinstance(content, str) else ""


def normalize_provider_event(payload: dict) -> NormalizedChunk:
    """Convertit un chunk provider brut en Delta ou Terminal."""
    if is_terminal_payload(payload):
        created = payload.get("created")
        return Terminal(
            usage=normalize_usage(payload),
            model=payload.get("model"),
            response_id=payload.get("id"),
            created=created if isinstance(created, int) else None,
        )
    return Delta(extract_content(payload))


# ============================================================
# RÉPONSE (chunk streamé)
# ============================================================

class StreamChunkMessage(BaseModel):
    """Chunk publié par le worker sur la queue de réponses."""

    model_config = ConfigDict(populate_by_name=True)

    correlation_id: str = Field(alias="correlationId", min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_terminal: Optional[bool] = Field(default=None, alias="isTerminal")
    delta: str = ""
    status: Literal["streaming", "completed", "failed"] = "streaming"
    error: Optional[str] = None
    result: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_chunk(cls, correlation_id: str, chunk: NormalizedChunk, raw: Optional[dict] = None) -> "StreamChunkMessage":
        if isinstance(chunk, Terminal):
            return cls(
                correlation_id=correlation_id,
                is_terminal=True,
                status=chunk.status,
                error=chunk.error,
                result=raw or {},
            )
        return cls(correlation_id=correlation_id, is_terminal=False, delta=chunk.text, result=raw or {})

    def to_chunk(self) -> NormalizedChunk:
        # Anciens producteurs : pas de isTerminal, seulement le payload brut
        if self.status == "failed":
            return Terminal(usage=normalize_usage(self.result), status="failed", error=self.error)
        if self.is_terminal is None:
            chunk = normalize_provider_event(self.result)
            if isinstance(chunk, Delta) and self.delta:
                return Delta(self.delta)
            return chunk
        if not self.is_terminal:
            return Delta(self.delta)

        created = self.result.get("created")
        return Terminal(
            usage=normalize_usage(self.result),
            status=self.status if self.status != "streaming" else "completed",
            error=self.error,
            model=self.result.get("model"),
            response_id=self.result.get("id"),
            created=created if isinstance(created, int) else None,
        )

    def encode(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode()

    @classmethod
    def decode(cls, body: bytes) -> "StreamChunkMessage":
        return _decode(cls, body)


def _decode(model, body: bytes):
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"JSON invalide: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessageError(f"Objet JSON attendu, reçu {type(data).__name__}")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedMessageError(f"Message invalide: {e.error_count()} erreur(s)") from e
