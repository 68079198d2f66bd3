"""
Supervision de la connexion RabbitMQ.

Sur fermeture ou erreur de connexion : attente fixe (RECONNECT_DELAY) puis
réinitialisation complète - connexion, déclaration des queues, consumers.
Le registre en mémoire n'est pas rejoué depuis le broker.
"""
import logging
from dataclasses import dataclass
from threading import Event, Lock
from typing import Callable, Optional

from config import POLL_INTERVAL, PREFETCH_COUNT, RECONNECT_DELAY

from .connection import BrokerConnection, Delivery
from .errors import BrokerConnectionError
from .topology import QueueTopology

logger = logging.getLogger("rabbit-supervisor")


@dataclass(frozen=True)
class ConsumerSpec:
    queue: str
    handler: Callable[[Delivery], None]


class ReconnectionSupervisor:

    def __init__(
        self,
        connection: BrokerConnection,
        topology: QueueTopology,
        consumers: list[ConsumerSpec],
        retry_delay: float = RECONNECT_DELAY,
        poll_interval: float = POLL_INTERVAL,
        prefetch_count: int = PREFETCH_COUNT,
    ):
        self._connection = connection
        self._topology = topology
        self._consumers = list(consumers)
        self._retry_delay = retry_delay
        self._poll_interval = poll_interval
        self._prefetch_count = prefetch_count
        self._tick_hooks: list[Callable[[], None]] = []
        self._lock = Lock()
        self._ready = Event()

        connection.on_close(self._on_closed)
        connection.on_error(self._on_error)

    @property
    def ready(self) -> bool:
        return self._ready.is_set() and self._connection.is_open

    def add_tick_hook(self, hook: Callable[[], None]):
        """Appelé à chaque tour de boucle (expirations, nettoyage)."""
        self._tick_hooks.append(hook)

    def _on_closed(self, error: Optional[Exception]):
        self._ready.clear()
        if error is not None:
            logger.warning(f"Connexion fermée, reconnexion dans {self._retry_delay}s")

    def _on_error(self, error: Exception):
        logger.error(f"Erreur de connexion RabbitMQ: {error}")

    # ============================================================
    # INITIALISATION
    # ============================================================

    def initialize(self):
        """connect -> déclaration des queues -> consumers."""
        with self._lock:
            self._initialize()

    def ensure_connected(self):
        """Réinitialise si la connexion n'est pas saine (appelé avant publication)."""
        if self.ready:
            return
        with self._lock:
            if self.ready:
                return
            logger.warning("Connexion RabbitMQ non prête, réinitialisation...")
            self._initialize()

    def _initialize(self):
        self._ready.clear()
        self._connection.connect()
        self._topology.declare_all()
        if self._consumers:
            self._connection.set_prefetch(self._prefetch_count)
        for consumer in self._consumers:
            self._connection.consume(consumer.queue, consumer.handler)
        self._ready.set()
        logger.info(f"Messagerie initialisée ({len(self._consumers)} consumer(s))")

    # ============================================================
    # BOUCLE
    # ============================================================

    def run_once(self, stop_event: Event):
        """Un tour de boucle : (ré)initialise si besoin, draine, ticks."""
        if not self.ready:
            try:
                self.ensure_connected()
            except BrokerConnectionError as e:
                logger.warning(f"Initialisation impossible, nouvel essai dans {self._retry_delay}s: {e}")
                stop_event.wait(self._retry_delay)
                return

        try:
            self._connection.drain_events(time_limit=self._poll_interval)
        except BrokerConnectionError as e:
            self._ready.clear()
            logger.warning(f"Connexion perdue, reconnexion dans {self._retry_delay}s: {e}")
            stop_event.wait(self._retry_delay)
        except Exception as e:
            # Connexion intacte (publication refusée, handler en erreur...) : on continue
            logger.error(f"Erreur pendant le traitement, nouvel essai dans {self._retry_delay}s: {e}", exc_info=True)
            stop_event.wait(self._retry_delay)

        for hook in self._tick_hooks:
            try:
                hook()
            except Exception as e:
                logger.error(f"Erreur tick: {e}", exc_info=True)

    def run(self, stop_event: Event):
        """Boucle jusqu'à stop_event."""
        while not stop_event.is_set():
            self.run_once(stop_event)
        logger.info("Superviseur arrêté")
