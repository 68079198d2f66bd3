"""
Registre de corrélation : correlation id -> cible de livraison.

Alimenté par le dispatcher, lu et vidé par l'agrégateur. Chaque entrée
expire après REGISTRY_TTL secondes sans chunk, l'appelant reçoit alors
StreamExpired.
"""
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

from config import REGISTRY_TTL

from .delivery import DeliveryTarget, StreamExpired
from .errors import DuplicateCorrelationError

logger = logging.getLogger("correlation-registry")


@dataclass
class RegistryEntry:
    target: DeliveryTarget
    registered_at: float  # horloge murale, pour la durée de génération
    expires_at: float  # horloge monotone


class CorrelationRegistry:
    """Thread-safe : le dispatcher écrit depuis les threads HTTP."""

    def __init__(self, ttl: float = REGISTRY_TTL, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, RegistryEntry] = {}
        self._lock = Lock()

    def register(self, correlation_id: str, target: DeliveryTarget) -> RegistryEntry:
        with self._lock:
            if correlation_id in self._entries:
                raise DuplicateCorrelationError(correlation_id)
            entry = RegistryEntry(
                target=target,
                registered_at=time.time(),
                expires_at=self._clock() + self._ttl,
            )
            self._entries[correlation_id] = entry
        return entry

    def entry(self, correlation_id: str, touch: bool = False) -> Optional[RegistryEntry]:
        with self._lock:
            entry = self._entries.get(correlation_id)
            if entry is not None and touch:
                entry.expires_at = self._clock() + self._ttl
            return entry

    def get(self, correlation_id: str, touch: bool = False) -> Optional[DeliveryTarget]:
        entry = self.entry(correlation_id, touch=touch)
        return entry.target if entry else None

    def remove(self, correlation_id: str) -> Optional[RegistryEntry]:
        with self._lock:
            return self._entries.pop(correlation_id, None)

    def evict_expired(self) -> list[str]:
        """Retire les entrées expirées et prévient leurs appelants."""
        now = self._clock()
        with self._lock:
            expired = [(cid, e) for cid, e in self._entries.items() if e.expires_at <= now]
            for cid, _ in expired:
                del self._entries[cid]

        for cid, entry in expired:
            logger.warning(f"Appelant {cid[:8]} expiré après {self._ttl}s sans chunk")
            try:
                entry.target.send(StreamExpired(cid))
                entry.target.close()
            except Exception as e:
                logger.warning(f"Notification d'expiration impossible pour {cid[:8]}: {e}")

        return [cid for cid, _ in expired]

    def __contains__(self, correlation_id: str) -> bool:
        with self._lock:
            return correlation_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
