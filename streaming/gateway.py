"""
Gateway côté service métier : possède la connexion, le registre,
l'agrégateur et le superviseur. Pas de singleton : une instance par app.

Usage:
    gateway = Gateway(store=get_store())
    gateway.start()
    gateway.dispatch(request, target)
    ...
    gateway.stop()
"""
import logging
from threading import Event, Thread
from typing import Optional

from config import INFERENCE_REQUEST_QUEUE, INFERENCE_RESPONSE_QUEUE

from .aggregator import ResponseAggregator
from .connection import BrokerConnection
from .delivery import DeliveryTarget
from .dispatcher import RequestDispatcher
from .messages import InferenceRequestMessage
from .registry import CorrelationRegistry
from .supervisor import ConsumerSpec, ReconnectionSupervisor
from .topology import QueueTopology

logger = logging.getLogger("llm-gateway")


class Gateway:

    def __init__(
        self,
        store,
        connection: Optional[BrokerConnection] = None,
        registry: Optional[CorrelationRegistry] = None,
        topology: Optional[QueueTopology] = None,
        aggregator: Optional[ResponseAggregator] = None,
        request_queue: str = INFERENCE_REQUEST_QUEUE,
        response_queue: str = INFERENCE_RESPONSE_QUEUE,
        **supervisor_options,
    ):
        self.connection = connection or BrokerConnection()
        self.registry = registry or CorrelationRegistry()
        self.topology = topology or QueueTopology(
            self.connection,
            request_queue=request_queue,
            response_queue=response_queue,
        )
        self.aggregator = aggregator or ResponseAggregator(self.registry, store)
        self.supervisor = ReconnectionSupervisor(
            self.connection,
            self.topology,
            consumers=[ConsumerSpec(self.topology.response_queue, self.aggregator.handle_delivery)],
            **supervisor_options,
        )
        self.supervisor.add_tick_hook(self.registry.evict_expired)
        self.supervisor.add_tick_hook(self.aggregator.evict_stale)
        self.dispatcher = RequestDispatcher(
            self.connection,
            self.registry,
            supervisor=self.supervisor,
            queue=self.topology.request_queue,
        )

        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def ready(self) -> bool:
        return self.supervisor.ready

    def start(self):
        """Lance la boucle consumer dans un thread de fond."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self.supervisor.run, args=(self._stop,), name="llm-gateway", daemon=True)
        self._thread.start()
        logger.info("Gateway démarrée")

    def dispatch(self, request: InferenceRequestMessage, target: Optional[DeliveryTarget] = None):
        self.dispatcher.dispatch(request, target)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.connection.close()
        logger.info("Gateway arrêtée")
