"""
Connexion RabbitMQ partagée - un channel de publication, un channel de consommation.

Les deux channels ont un état d'ack indépendant. Le channel de publication
active les publisher confirms : un message refusé par le broker lève
PublishError au lieu d'être perdu silencieusement.
"""
import logging
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, Optional

import pika
from pika.exceptions import AMQPChannelError, AMQPConnectionError, NackError, UnroutableError

from config import BLOCKED_CONNECTION_TIMEOUT, HEARTBEAT, RABBITMQ_URL

from .errors import BrokerConnectionError, NotConnectedError, PublishError

logger = logging.getLogger("rabbit-connection")

ATTEMPTS_HEADER = "x-attempts"


@dataclass
class Delivery:
    """Message reçu, avec ack/nack liés au channel qui l'a livré."""
    body: bytes
    delivery_tag: int
    redelivered: bool = False
    headers: dict[str, Any] = field(default_factory=dict)
    channel: Any = None

    @property
    def attempts(self) -> int:
        """Numéro de tentative (1 = première livraison)."""
        if ATTEMPTS_HEADER in self.headers:
            return int(self.headers[ATTEMPTS_HEADER])
        # Quorum queues : compteur géré par le broker
        if "x-delivery-count" in self.headers:
            return int(self.headers["x-delivery-count"]) + 1
        return 1

    def ack(self):
        self.channel.basic_ack(delivery_tag=self.delivery_tag)

    def nack(self, requeue: bool = False):
        self.channel.basic_nack(delivery_tag=self.delivery_tag, requeue=requeue)


class BrokerConnection:
    """
    Une seule connexion active à la fois par process.

    pika.BlockingConnection n'est pas thread-safe : tout accès aux channels
    passe par un RLock (les threads HTTP publient pendant que le thread
    consumer draine les événements).
    """

    def __init__(
        self,
        url: str = RABBITMQ_URL,
        heartbeat: int = HEARTBEAT,
        blocked_connection_timeout: int = BLOCKED_CONNECTION_TIMEOUT,
        connection_factory: Callable = pika.BlockingConnection,
    ):
        self._url = url
        self._heartbeat = heartbeat
        self._blocked_connection_timeout = blocked_connection_timeout
        self._connection_factory = connection_factory

        self._connection = None
        self._publish_channel = None
        self._consume_channel = None
        self._lock = RLock()

        self._close_handlers: list[Callable[[Optional[Exception]], None]] = []
        self._error_handlers: list[Callable[[Exception], None]] = []

    # ============================================================
    # CYCLE DE VIE
    # ============================================================

    def connect(self):
        """Etablit la connexion et ouvre les deux channels."""
        if not self._url:
            raise BrokerConnectionError("RABBITMQ_URL non configuré")

        with self._lock:
            self._discard()

            params = pika.URLParameters(self._url)
            params.heartbeat = self._heartbeat
            params.blocked_connection_timeout = self._blocked_connection_timeout

            try:
                self._connection = self._connection_factory(params)
                self._publish_channel = self._connection.channel()
                self._publish_channel.confirm_delivery()
                self._consume_channel = self._connection.channel()
            except AMQPConnectionError as e:
                self._discard()
                raise BrokerConnectionError(f"RabbitMQ injoignable: {e}") from e

            logger.info("Connexion RabbitMQ établie")

    @property
    def is_open(self) -> bool:
        conn = self._connection
        return conn is not None and conn.is_open

    def on_close(self, handler: Callable[[Optional[Exception]], None]):
        self._close_handlers.append(handler)

    def on_error(self, handler: Callable[[Exception], None]):
        self._error_handlers.append(handler)

    def close(self):
        """Ferme proprement la connexion."""
        with self._lock:
            was_open = self.is_open
            self._discard()
        if was_open:
            logger.info("Connexion RabbitMQ fermée")
            self._notify_close(None)

    def _discard(self):
        conn = self._connection
        self._connection = None
        self._publish_channel = None
        self._consume_channel = None
        if conn is not None and conn.is_open:
            try:
                conn.close()
            except AMQPConnectionError as e:
                logger.debug(f"Fermeture d'une connexion déjà perdue: {e}")

    def _connection_lost(self, error: Exception):
        with self._lock:
            self._discard()
        logger.warning(f"Connexion RabbitMQ perdue: {error}")
        for handler in list(self._error_handlers):
            handler(error)
        self._notify_close(error)

    def _notify_close(self, error: Optional[Exception]):
        for handler in list(self._close_handlers):
            handler(error)

    def _require(self, channel, operation: str):
        if channel is None or not self.is_open:
            raise NotConnectedError(operation)
        return channel

    # ============================================================
    # OPÉRATIONS
    # ============================================================

    def declare_queue(self, queue: str, arguments: Optional[dict] = None):
        """Déclare une queue durable (idempotent)."""
        with self._lock:
            ch = self._require(self._publish_channel, "declare_queue")
            try:
                ch.queue_declare(
                    queue=queue,
                    durable=True,  # Survit au redémarrage
                    exclusive=False,
                    auto_delete=False,
                    arguments=arguments or None,
                )
            except (AMQPConnectionError, AMQPChannelError) as e:
                self._connection_lost(e)
                raise BrokerConnectionError(f"Déclaration de '{queue}' impossible: {e}") from e

    def set_prefetch(self, count: int):
        with self._lock:
            ch = self._require(self._consume_channel, "set_prefetch")
            ch.basic_qos(prefetch_count=count)

    def publish(
        self,
        queue: str,
        body: bytes,
        correlation_id: Optional[str] = None,
        headers: Optional[dict] = None,
    ):
        """Publie un message persistant sur une queue (exchange par défaut)."""
        with self._lock:
            ch = self._require(self._publish_channel, "publish")
            try:
                ch.basic_publish(
                    exchange="",
                    routing_key=queue,
                    body=body,
                    properties=pika.BasicProperties(
                        delivery_mode=2,  # Persistant
                        content_type="application/json",
                        correlation_id=correlation_id,
                        headers=headers,
                    ),
                )
            except (NackError, UnroutableError) as e:
                raise PublishError(queue, str(e)) from e
            except (AMQPConnectionError, AMQPChannelError) as e:
                self._connection_lost(e)
                raise BrokerConnectionError(f"Publication sur '{queue}' impossible: {e}") from e

    def consume(self, queue: str, handler: Callable[[Delivery], None]) -> str:
        """Attache un consumer ; handler doit acquitter lui-même la Delivery."""
        with self._lock:
            ch = self._require(self._consume_channel, "consume")

            def on_message(channel, method, properties, body):
                handler(Delivery(
                    body=body,
                    delivery_tag=method.delivery_tag,
                    redelivered=bool(method.redelivered),
                    headers=dict(properties.headers or {}),
                    channel=channel,
                ))

            tag = ch.basic_consume(queue=queue, on_message_callback=on_message, auto_ack=False)
            logger.info(f"Consumer attaché sur '{queue}'")
            return tag

    def drain_events(self, time_limit: float = 0):
        """Traite les événements réseau en attente (livraisons, heartbeats)."""
        with self._lock:
            conn = self._connection
            if conn is None or not conn.is_open:
                raise NotConnectedError("drain_events")
            try:
                conn.process_data_events(time_limit=time_limit)
            except (AMQPConnectionError, AMQPChannelError) as e:
                self._connection_lost(e)
                raise BrokerConnectionError(f"Connexion perdue: {e}") from e
