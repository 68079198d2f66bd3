"""
Doublures de test : faux broker pika en mémoire, provider et cibles.

FakeBroker.connection_factory remplace pika.BlockingConnection dans
BrokerConnection ; les messages sont livrés aux consumers pendant
process_data_events(), comme avec le vrai client bloquant.
"""
import itertools
import json
from collections import deque
from types import SimpleNamespace

import pika
from pika.exceptions import AMQPConnectionError, ChannelWrongStateError, StreamLostError

from streaming.connection import Delivery
from streaming.delivery import DeliveryTarget
from streaming.messages import InferenceRequestMessage, PromptMessage, StreamChunkMessage


# ============================================================
# BROKER
# ============================================================

class FakeBroker:

    def __init__(self):
        self.queues: dict[str, deque] = {}
        self.queue_arguments: dict[str, dict] = {}
        self.declarations: list[str] = []
        self.published: list[tuple[str, bytes, pika.BasicProperties]] = []
        self.connections: list["FakeConnection"] = []
        self.reachable = True
        self.fail_publish = None

        self._tags = itertools.count(1)

    def connection_factory(self, params):
        if not self.reachable:
            raise AMQPConnectionError("broker injoignable")
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    def queue(self, name: str) -> deque:
        return self.queues.setdefault(name, deque())

    def enqueue(self, queue: str, body: bytes, properties=None, redelivered: bool = False):
        self.queue(queue).append((body, properties or pika.BasicProperties(), redelivered))

    def pending(self, queue: str) -> list[dict]:
        return [json.loads(body) for body, _, _ in self.queues.get(queue, [])]

    def published_to(self, queue: str) -> list[dict]:
        return [json.loads(body) for q, body, _ in self.published if q == queue]

    def declaration_count(self, queue: str) -> int:
        return self.declarations.count(queue)

    def drop_connections(self):
        """Perte réseau : détectée à la prochaine I/O."""
        for conn in self.connections:
            conn.lost = True

    def close_connections(self):
        """Fermeture côté broker déjà constatée par le client."""
        for conn in self.connections:
            conn.is_open = False

    @property
    def current(self) -> "FakeConnection":
        return self.connections[-1]


class FakeConnection:

    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.is_open = True
        self.lost = False
        self.channels: list[FakeChannel] = []

    @property
    def is_closed(self) -> bool:
        return not self.is_open

    def channel(self) -> "FakeChannel":
        if self.lost:
            raise StreamLostError("Transport indicated EOF")
        ch = FakeChannel(self)
        self.channels.append(ch)
        return ch

    def process_data_events(self, time_limit=0):
        if self.lost:
            raise StreamLostError("Transport indicated EOF")
        while any(ch.deliver_pending() for ch in list(self.channels)):
            pass

    def close(self):
        self.is_open = False

    @property
    def consumers(self) -> list[str]:
        return [queue for ch in self.channels for queue, _ in ch.consumers]


class FakeChannel:

    def __init__(self, connection: FakeConnection):
        self.connection = connection
        self.broker = connection.broker
        self.prefetch_count = 0
        self.confirming = False
        self.consumers: list[tuple] = []
        self.unacked: dict[int, tuple] = {}
        self.acked: list[int] = []
        self.nacked: list[tuple[int, bool]] = []

    def _check(self):
        if self.connection.lost:
            raise StreamLostError("Transport indicated EOF")
        if not self.connection.is_open:
            raise ChannelWrongStateError("Channel is closed.")

    def confirm_delivery(self):
        self.confirming = True

    def queue_declare(self, queue, durable=False, exclusive=False, auto_delete=False, arguments=None):
        self._check()
        self.broker.declarations.append(queue)
        self.broker.queue_arguments[queue] = dict(arguments or {})
        count = len(self.broker.queue(queue))
        return SimpleNamespace(method=SimpleNamespace(queue=queue, message_count=count))

    def basic_qos(self, prefetch_count=0):
        self._check()
        self.prefetch_count = prefetch_count

    def basic_publish(self, exchange, routing_key, body, properties=None, mandatory=False):
        self._check()
        if self.broker.fail_publish is not None:
            raise self.broker.fail_publish
        self.broker.published.append((routing_key, body, properties))
        self.broker.enqueue(routing_key, body, properties)

    def basic_consume(self, queue, on_message_callback, auto_ack=False):
        self._check()
        self.consumers.append((queue, on_message_callback))
        return f"ctag-{len(self.consumers)}"

    def basic_ack(self, delivery_tag):
        self._check()
        self.unacked.pop(delivery_tag)
        self.acked.append(delivery_tag)

    def basic_nack(self, delivery_tag, requeue=True):
        self._check()
        queue, body, properties = self.unacked.pop(delivery_tag)
        self.nacked.append((delivery_tag, requeue))
        if requeue:
            self.broker.queue(queue).appendleft((body, properties, True))
            return
        dead_letter = self.broker.queue_arguments.get(queue, {}).get("x-dead-letter-routing-key")
        if dead_letter:
            self.broker.enqueue(dead_letter, body, properties)

    def deliver_pending(self) -> bool:
        delivered = False
        for queue, callback in self.consumers:
            pending = self.broker.queue(queue)
            while pending and (not self.prefetch_count or len(self.unacked) < self.prefetch_count):
                body, properties, redelivered = pending.popleft()
                tag = next(self.broker._tags)
                self.unacked[tag] = (queue, body, properties)
                method = SimpleNamespace(delivery_tag=tag, redelivered=redelivered, routing_key=queue)
                callback(self, method, properties, body)
                delivered = True
        return delivered


# ============================================================
# DELIVERIES ISOLÉES
# ============================================================

class AckRecorder:
    """Channel minimal pour tester un handler sans broker."""

    def __init__(self):
        self.acked = []
        self.nacked = []

    def basic_ack(self, delivery_tag):
        self.acked.append(delivery_tag)

    def basic_nack(self, delivery_tag, requeue=True):
        self.nacked.append((delivery_tag, requeue))


_delivery_tags = itertools.count(1)


def make_delivery(body, headers=None) -> Delivery:
    if isinstance(body, (StreamChunkMessage, InferenceRequestMessage)):
        body = body.encode()
    return Delivery(
        body=body,
        delivery_tag=next(_delivery_tags),
        headers=dict(headers or {}),
        channel=AckRecorder(),
    )


# ============================================================
# PROVIDER / CIBLES
# ============================================================

def openai_chunk(text: str, model: str = "llama3.2") -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": model,
        "choices": [{"index": 0, "delta": {"content": text}}],
    }


def openai_final(prompt_tokens: int, completion_tokens: int, model: str = "llama3.2") -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": model,
        "choices": [],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def make_request(correlation_id: str, text: str = "Bonjour", model: str = "llama3.2") -> InferenceRequestMessage:
    return InferenceRequestMessage(
        correlation_id=correlation_id,
        model_name=model,
        prompt_messages=[PromptMessage(role="user", content=text)],
    )


def delta_message(correlation_id: str, text: str) -> StreamChunkMessage:
    return StreamChunkMessage(correlation_id=correlation_id, is_terminal=False, delta=text)


def terminal_message(correlation_id: str, prompt_tokens: int = 0, completion_tokens: int = 0, **kwargs) -> StreamChunkMessage:
    return StreamChunkMessage(
        correlation_id=correlation_id,
        is_terminal=True,
        status=kwargs.pop("status", "completed"),
        result=openai_final(prompt_tokens, completion_tokens),
        **kwargs,
    )


class FakeProvider:

    def __init__(self, events=None, error: Exception = None):
        self.events = list(events or [])
        self.error = error
        self.calls = []
        self.consumed = 0

    def stream(self, model, messages):
        self.calls.append((model, messages))
        for event in self.events:
            self.consumed += 1
            yield event
        if self.error is not None:
            raise self.error


class FakeRouter:

    def __init__(self, provider: FakeProvider = None, error: Exception = None):
        self.provider = provider or FakeProvider()
        self.error = error

    def resolve(self, model_name):
        if self.error is not None:
            raise self.error
        model = model_name or "llama3.2"
        return self.provider, SimpleNamespace(id=model, model=model)


class RecordingTarget(DeliveryTarget):

    def __init__(self):
        self.events = []
        self.closed = 0

    def send(self, event):
        self.events.append(event)

    def close(self):
        self.closed += 1

    @property
    def texts(self) -> list[str]:
        return [e.text for e in self.events if hasattr(e, "text")]
