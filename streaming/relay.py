"""
Relais côté worker : requête -> provider -> chunks sur la queue de réponses.

Prefetch 1 : un worker termine le stream d'une requête avant d'accepter
la suivante, les chunks d'une requête sortent donc dans l'ordre.
"""
import logging

from config import (
    FAILURE_POLICY,
    INFERENCE_REQUEST_QUEUE,
    INFERENCE_RESPONSE_QUEUE,
    MAX_DELIVERY_ATTEMPTS,
)

from .connection import ATTEMPTS_HEADER, BrokerConnection, Delivery
from .errors import BrokerError, MalformedMessageError, PublishError
from .messages import InferenceRequestMessage, StreamChunkMessage, Terminal, normalize_provider_event

logger = logging.getLogger("llm-relay")

FAILURE_POLICIES = ("requeue", "dead_letter")


class StreamRelay:

    def __init__(
        self,
        connection: BrokerConnection,
        router,
        request_queue: str = INFERENCE_REQUEST_QUEUE,
        response_queue: str = INFERENCE_RESPONSE_QUEUE,
        failure_policy: str = FAILURE_POLICY,
        max_attempts: int = MAX_DELIVERY_ATTEMPTS,
    ):
        if failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"FAILURE_POLICY inconnue: {failure_policy}")
        self._connection = connection
        self._router = router
        self._request_queue = request_queue
        self._response_queue = response_queue
        self._failure_policy = failure_policy
        self._max_attempts = max(1, max_attempts)

    def handle_delivery(self, delivery: Delivery):
        """
        Traite une requête d'inférence.

        Format attendu:
        {
            "correlationId": "uuid",
            "modelName": "llama3.2" (optionnel),
            "promptMessages": [{"role": "user", "content": "..."}]
        }
        """
        try:
            request = InferenceRequestMessage.decode(delivery.body)
        except MalformedMessageError as e:
            logger.warning(f"Requête invalide ignorée: {e}")
            delivery.ack()
            return

        correlation_id = request.correlation_id
        if not request.prompt_messages:
            logger.warning(f"Requête {correlation_id[:8]} sans prompt, ignorée")
            delivery.ack()
            return

        logger.info(f"Traitement session {correlation_id[:8]} (tentative {delivery.attempts})...")

        try:
            self._process(delivery, request)
        except PublishError as e:
            # Refus du broker, connexion saine : la requête revient après le délai du superviseur
            logger.error(f"Publication refusée pour {correlation_id[:8]}, requête remise en queue: {e}")
            delivery.nack(requeue=True)
            raise

    def _process(self, delivery: Delivery, request: InferenceRequestMessage):
        correlation_id = request.correlation_id
        try:
            chunks = self._relay(request)
        except BrokerError:
            # Le superviseur reconnecte, le broker relivrera la requête
            raise
        except Exception as e:
            logger.error(f"Erreur génération {correlation_id[:8]}: {e}", exc_info=True)
            self._publish(StreamChunkMessage(
                correlation_id=correlation_id,
                is_terminal=True,
                status="failed",
                error=str(e),
            ))
            self._settle_failure(delivery, request)
            return

        delivery.ack()
        logger.info(f"Session {correlation_id[:8]} relayée ({chunks} chunks)")

    def _relay(self, request: InferenceRequestMessage) -> int:
        provider, model = self._router.resolve(request.model_name)
        messages = [m.to_provider() for m in request.prompt_messages]

        count = 0
        for event in provider.stream(model.model, messages):
            chunk = normalize_provider_event(event)
            self._publish(StreamChunkMessage.from_chunk(request.correlation_id, chunk, event))
            count += 1
            if isinstance(chunk, Terminal):
                return count

        # Serveur sans include_usage : on ferme quand même le stream
        logger.warning(f"Stream {request.correlation_id[:8]} terminé sans chunk final, usage inconnu")
        self._publish(StreamChunkMessage.from_chunk(request.correlation_id, Terminal(), {"model": model.model}))
        return count + 1

    def _publish(self, message: StreamChunkMessage):
        self._connection.publish(
            self._response_queue,
            message.encode(),
            correlation_id=message.correlation_id,
        )

    def _settle_failure(self, delivery: Delivery, request: InferenceRequestMessage):
        attempt = delivery.attempts
        correlation_id = request.correlation_id

        if self._failure_policy == "requeue" and attempt < self._max_attempts:
            # Republie avec le compteur incrémenté puis acquitte l'original
            self._connection.publish(
                self._request_queue,
                delivery.body,
                correlation_id=correlation_id,
                headers={ATTEMPTS_HEADER: attempt + 1},
            )
            delivery.ack()
            logger.warning(f"Session {correlation_id[:8]} remise en queue ({attempt + 1}/{self._max_attempts})")
            return

        # Reject sans requeue : dead-letter si configuré, sinon abandon
        delivery.nack(requeue=False)
        if self._failure_policy == "dead_letter":
            logger.error(f"Session {correlation_id[:8]} envoyée en dead-letter")
        else:
            logger.error(f"Session {correlation_id[:8]} abandonnée après {attempt} tentative(s)")
