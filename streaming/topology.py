"""Déclaration des queues du protocole (à chaque démarrage et reconnexion)."""
import logging
from typing import Optional

from config import (
    FAILURE_POLICY,
    INFERENCE_REQUEST_QUEUE,
    INFERENCE_RESPONSE_QUEUE,
    REQUEST_MESSAGE_TTL_MS,
)

from .connection import BrokerConnection

logger = logging.getLogger("rabbit-topology")


def dead_letter_queue_for(queue: str) -> str:
    return f"{queue}.dead"


class QueueTopology:
    """
    Queues durables, non exclusives.

    La queue de requêtes porte le TTL des messages et, en politique
    dead_letter, le routage vers `<queue>.dead`. Les arguments doivent rester
    identiques d'un démarrage à l'autre (sinon PRECONDITION_FAILED).
    """

    def __init__(
        self,
        connection: BrokerConnection,
        request_queue: str = INFERENCE_REQUEST_QUEUE,
        response_queue: str = INFERENCE_RESPONSE_QUEUE,
        message_ttl_ms: int = REQUEST_MESSAGE_TTL_MS,
        failure_policy: str = FAILURE_POLICY,
    ):
        self._connection = connection
        self.request_queue = request_queue
        self.response_queue = response_queue
        self._message_ttl_ms = message_ttl_ms
        self.dead_letter_queue: Optional[str] = (
            dead_letter_queue_for(request_queue) if failure_policy == "dead_letter" else None
        )

    def declare_queue(self, name: str, arguments: Optional[dict] = None):
        self._connection.declare_queue(name, arguments=arguments)
        logger.debug(f"Queue '{name}' déclarée")

    def request_queue_arguments(self) -> dict:
        arguments = {}
        if self._message_ttl_ms > 0:
            arguments["x-message-ttl"] = self._message_ttl_ms
        if self.dead_letter_queue:
            arguments["x-dead-letter-exchange"] = ""
            arguments["x-dead-letter-routing-key"] = self.dead_letter_queue
        return arguments

    def declare_all(self):
        if self.dead_letter_queue:
            self.declare_queue(self.dead_letter_queue)
        self.declare_queue(self.request_queue, arguments=self.request_queue_arguments())
        self.declare_queue(self.response_queue)
        logger.info(f"Queues prêtes: '{self.request_queue}', '{self.response_queue}'")
