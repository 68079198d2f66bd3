"""
Cibles de livraison : ce qui attend les chunks d'une requête.

Une cible reçoit des événements typés via send() puis close() une fois
le stream terminé (fin, échec ou expiration).
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Union

from .usage import UsageRecord


@dataclass(frozen=True)
class ChunkReceived:
    correlation_id: str
    text: str


@dataclass(frozen=True)
class StreamEnded:
    correlation_id: str
    status: str
    usage: Optional[UsageRecord] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class StreamExpired:
    correlation_id: str


ChunkEvent = Union[ChunkReceived, StreamEnded, StreamExpired]


class DeliveryTarget(ABC):

    @abstractmethod
    def send(self, event: ChunkEvent) -> None:
        pass

    def close(self) -> None:
        pass


class CallbackTarget(DeliveryTarget):
    """Adapte des callbacks on_chunk / on_end / on_timeout en cible."""

    def __init__(
        self,
        on_chunk: Callable[[str], None],
        on_end: Callable[[StreamEnded], None],
        on_timeout: Optional[Callable[[], None]] = None,
    ):
        self._on_chunk = on_chunk
        self._on_end = on_end
        self._on_timeout = on_timeout

    def send(self, event: ChunkEvent) -> None:
        if isinstance(event, ChunkReceived):
            self._on_chunk(event.text)
        elif isinstance(event, StreamEnded):
            self._on_end(event)
        elif isinstance(event, StreamExpired) and self._on_timeout:
            self._on_timeout()


class AsyncStreamSink(DeliveryTarget):
    """
    Pont entre le thread consumer RabbitMQ et une coroutine asyncio.

    Les événements sont poussés dans une asyncio.Queue via
    call_soon_threadsafe ; None marque la fermeture.

    Usage:
        sink = AsyncStreamSink()
        await asyncio.to_thread(gateway.dispatch, request, sink)
        return StreamingResponse(sink.text())
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def send(self, event: ChunkEvent) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._loop.call_soon_threadsafe(self._queue.put_nowait, None)

    async def events(self) -> AsyncIterator[ChunkEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if not isinstance(event, ChunkReceived):
                return

    async def text(self) -> AsyncIterator[str]:
        """Texte brut pour une réponse HTTP chunked."""
        async for event in self.events():
            if isinstance(event, ChunkReceived):
                yield event.text
            elif isinstance(event, StreamEnded) and event.status == "failed":
                yield f"[ERROR: {event.error}]"
            elif isinstance(event, StreamExpired):
                yield "[ERROR: timeout]"
