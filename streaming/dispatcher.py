import logging
from typing import Optional

from config import INFERENCE_REQUEST_QUEUE

from .connection import BrokerConnection
from .delivery import DeliveryTarget
from .messages import InferenceRequestMessage
from .registry import CorrelationRegistry

logger = logging.getLogger("llm-dispatcher")


class RequestDispatcher:
    """Publie les requêtes d'inférence et enregistre l'appelant qui attend."""

    def __init__(
        self,
        connection: BrokerConnection,
        registry: CorrelationRegistry,
        supervisor=None,
        queue: str = INFERENCE_REQUEST_QUEUE,
    ):
        self._connection = connection
        self._registry = registry
        self._supervisor = supervisor
        self._queue = queue

    def dispatch(self, request: InferenceRequestMessage, target: Optional[DeliveryTarget] = None):
        """
        Envoie la requête sur la queue de requêtes.

        La cible est enregistrée AVANT publication : un chunk peut arriver
        avant le retour de basic_publish. En cas d'échec l'entrée est retirée
        et l'erreur remonte à l'appelant (pas de retry ici).
        """
        if self._supervisor is not None and not self._supervisor.ready:
            self._supervisor.ensure_connected()

        correlation_id = request.correlation_id
        if target is not None:
            self._registry.register(correlation_id, target)

        try:
            self._connection.publish(
                self._queue,
                request.encode(),
                correlation_id=correlation_id,
            )
        except Exception as e:
            if target is not None:
                self._registry.remove(correlation_id)
            logger.error(f"Echec d'envoi de la requête {correlation_id[:8]}: {e}")
            raise

        logger.info(f"Requête envoyée: {correlation_id[:8]}... (modèle {request.model_name})")
