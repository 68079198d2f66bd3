"""
Agrégateur des réponses streamées par les workers.

Consomme la queue de réponses, reconstitue le texte par correlation id,
relaie chaque chunk à l'appelant encore connecté puis, au chunk terminal,
calcule l'usage, persiste le résultat et libère l'état en mémoire.

Livraison at-least-once : un chunk terminal reçu deux fois ne doit
ni planter ni repersister.
"""
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Optional

from config import COMPLETION_COST_PER_TOKEN, FINALIZED_CACHE_SIZE, PROMPT_COST_PER_TOKEN, STATE_TTL

from .connection import Delivery
from .delivery import ChunkReceived, DeliveryTarget, StreamEnded
from .errors import MalformedMessageError
from .messages import Delta, StreamChunkMessage, Terminal
from .registry import CorrelationRegistry
from .usage import compute_usage

logger = logging.getLogger("llm-aggregator")


@dataclass
class AccumulatedResponseState:
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    text: str = ""


class ResponseAggregator:

    def __init__(
        self,
        registry: CorrelationRegistry,
        store,
        prompt_rate: float = PROMPT_COST_PER_TOKEN,
        completion_rate: float = COMPLETION_COST_PER_TOKEN,
        finalized_cache_size: int = FINALIZED_CACHE_SIZE,
        state_ttl: float = STATE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._store = store
        self._prompt_rate = prompt_rate
        self._completion_rate = completion_rate
        self._finalized_cache_size = finalized_cache_size
        self._state_ttl = state_ttl
        self._clock = clock

        self._states: dict[str, AccumulatedResponseState] = {}
        # correlation id -> statut final
        self._finalized: "OrderedDict[str, str]" = OrderedDict()
        self._lock = Lock()

    def text_so_far(self, correlation_id: str) -> Optional[str]:
        with self._lock:
            state = self._states.get(correlation_id)
            return state.text if state else None

    def in_flight(self) -> int:
        with self._lock:
            return len(self._states)

    # ============================================================
    # CONSOMMATION
    # ============================================================

    def handle_delivery(self, delivery: Delivery):
        """Callback consumer de la queue de réponses."""
        try:
            message = StreamChunkMessage.decode(delivery.body)
        except MalformedMessageError as e:
            # Pas de requeue : boucle infinie sinon
            logger.warning(f"Message de réponse invalide ignoré: {e}")
            delivery.ack()
            return

        try:
            self.process(message)
        except Exception as e:
            logger.error(f"Erreur traitement chunk {message.correlation_id[:8]}: {e}", exc_info=True)
            delivery.nack(requeue=False)
            return

        delivery.ack()

    def process(self, message: StreamChunkMessage):
        chunk = message.to_chunk()
        if isinstance(chunk, Terminal):
            self._on_terminal(message.correlation_id, chunk, message)
        else:
            self._on_delta(message.correlation_id, chunk)

    # ============================================================
    # CHUNKS
    # ============================================================

    def _on_delta(self, correlation_id: str, chunk: Delta):
        with self._lock:
            state = self._states.get(correlation_id)
            if state is None:
                final_status = self._finalized.get(correlation_id)
                if final_status is not None and final_status != "failed":
                    logger.info(f"Chunk tardif ignoré pour {correlation_id[:8]} (déjà {final_status})")
                    return
                if final_status is not None:
                    del self._finalized[correlation_id]
                    logger.info(f"Nouvelle tentative pour {correlation_id[:8]}, accumulation repartie de zéro")
                now = self._clock()
                state = AccumulatedResponseState(created_at=now, last_seen=now)
                self._states[correlation_id] = state
            state.text += chunk.text
            state.last_seen = self._clock()

        target = self._registry.get(correlation_id, touch=True)
        if target is not None and chunk.text:
            self._notify(correlation_id, target, ChunkReceived(correlation_id, chunk.text))

    def _on_terminal(self, correlation_id: str, chunk: Terminal, message: StreamChunkMessage):
        now = self._clock()
        with self._lock:
            state = self._states.pop(correlation_id, None)
            if state is None and correlation_id in self._finalized:
                logger.info(f"Chunk terminal dupliqué ignoré: {correlation_id[:8]}")
                return
            if state is None:
                state = AccumulatedResponseState(created_at=now, last_seen=now)
            self._mark_finalized(correlation_id, chunk.status)

        entry = self._registry.entry(correlation_id)
        started_at = entry.registered_at if entry else state.created_at
        usage = compute_usage(
            chunk.usage,
            started_at=started_at,
            finished_at=now,
            prompt_rate=self._prompt_rate,
            completion_rate=self._completion_rate,
        )

        result = {
            "id": chunk.response_id or f"response-{int(now * 1000)}",
            "model": chunk.model or "unknown",
            "created": chunk.created or int(now),
            "timestamp": message.timestamp.isoformat(),
            **usage.to_dict(),
        }
        fields = {
            "response": state.text,
            "status": chunk.status,
            "result": result,
            "is_completed": True,
            "error": chunk.error,
        }

        logger.info(
            f"Session {correlation_id[:8]} terminée ({chunk.status}, "
            f"{len(state.text)} chars, {usage.total_tokens} tokens)"
        )
        self._persist(correlation_id, fields)

        if entry is not None:
            self._notify(
                correlation_id,
                entry.target,
                StreamEnded(correlation_id, chunk.status, usage=usage, error=chunk.error),
            )
            try:
                entry.target.close()
            except Exception as e:
                logger.warning(f"Fermeture de la cible {correlation_id[:8]} impossible: {e}")
            self._registry.remove(correlation_id)

    def _mark_finalized(self, correlation_id: str, status: str):
        self._finalized[correlation_id] = status
        self._finalized.move_to_end(correlation_id)
        while len(self._finalized) > self._finalized_cache_size:
            self._finalized.popitem(last=False)

    def _persist(self, correlation_id: str, fields: dict):
        # Un échec de persistance ne bloque pas le pipeline
        try:
            self._store.update_by_id(correlation_id, fields)
        except Exception as e:
            logger.error(f"Sauvegarde du résultat {correlation_id[:8]} impossible: {e}")

    def _notify(self, correlation_id: str, target: DeliveryTarget, event):
        # Appelant parti (socket fermée, boucle asyncio arrêtée...)
        try:
            target.send(event)
        except Exception as e:
            logger.warning(f"Livraison à {correlation_id[:8]} impossible: {e}")

    # ============================================================
    # NETTOYAGE
    # ============================================================

    def evict_stale(self) -> list[str]:
        """Abandonne les accumulations sans aucun chunk depuis STATE_TTL."""
        deadline = self._clock() - self._state_ttl
        with self._lock:
            stale = [(cid, s) for cid, s in self._states.items() if s.last_seen <= deadline]
            for cid, _ in stale:
                del self._states[cid]
                self._mark_finalized(cid, "failed")

        for cid, state in stale:
            logger.warning(f"Session {cid[:8]} abandonnée sans chunk terminal ({len(state.text)} chars)")
            self._persist(cid, {
                "response": state.text,
                "status": "failed",
                "error": "stream interrompu",
                "is_completed": True,
            })
        return [cid for cid, _ in stale]
