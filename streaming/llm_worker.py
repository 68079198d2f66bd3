"""
Worker LLM indépendant - Traite les requêtes depuis RabbitMQ.
Lance ce script séparément pour scaler horizontalement.

Usage:
    python -m streaming.llm_worker
    # Ou avec plusieurs instances :
    python -m streaming.llm_worker &
    python -m streaming.llm_worker &
"""
import logging
import signal
from threading import Event
from typing import Optional

from config import LOG_FORMAT, LOG_LEVEL
from providers import ProviderRouter

from .connection import BrokerConnection
from .relay import StreamRelay
from .supervisor import ConsumerSpec, ReconnectionSupervisor
from .topology import QueueTopology

logger = logging.getLogger("llm-worker")


class LLMWorker:
    """
    Worker qui consomme les requêtes d'inférence depuis RabbitMQ.
    Publie les chunks de réponse sur la queue de réponses.
    """

    def __init__(
        self,
        connection: Optional[BrokerConnection] = None,
        router: Optional[ProviderRouter] = None,
        **supervisor_options,
    ):
        self.connection = connection or BrokerConnection()
        self.topology = QueueTopology(self.connection)
        self.relay = StreamRelay(
            self.connection,
            router or ProviderRouter(),
            request_queue=self.topology.request_queue,
            response_queue=self.topology.response_queue,
        )
        self.supervisor = ReconnectionSupervisor(
            self.connection,
            self.topology,
            consumers=[ConsumerSpec(self.topology.request_queue, self.relay.handle_delivery)],
            **supervisor_options,
        )
        self._stop = Event()

    def install_signal_handlers(self):
        # Graceful shutdown
        signal.signal(signal.SIGINT, self._shutdown)
        signal.signal(signal.SIGTERM, self._shutdown)

    def _shutdown(self, signum, frame):
        """Arrêt propre du worker."""
        logger.info("Arrêt du worker...")
        self._stop.set()

    def run(self):
        """Lance le worker en boucle."""
        logger.info(f"Worker démarré, en attente de tâches sur '{self.topology.request_queue}'...")
        self.supervisor.run(self._stop)
        self.connection.close()
        logger.info("Worker arrêté proprement")


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    worker = LLMWorker()
    worker.install_signal_handlers()
    worker.run()
