"""Tests des cibles de livraison."""
import asyncio
import threading

import pytest

from streaming.delivery import AsyncStreamSink, CallbackTarget, ChunkReceived, StreamEnded, StreamExpired


def test_callback_target_dispatches_by_event_type():
    chunks, ends, timeouts = [], [], []
    target = CallbackTarget(chunks.append, ends.append, on_timeout=lambda: timeouts.append(True))

    target.send(ChunkReceived("a", "x"))
    target.send(StreamEnded("a", "completed"))
    target.send(StreamExpired("a"))

    assert chunks == ["x"]
    assert ends == [StreamEnded("a", "completed")]
    assert timeouts == [True]


def test_callback_target_without_timeout_handler():
    target = CallbackTarget(lambda text: None, lambda event: None)
    target.send(StreamExpired("a"))


@pytest.mark.asyncio
async def test_sink_streams_text_from_another_thread():
    sink = AsyncStreamSink()

    def produce():
        sink.send(ChunkReceived("a", "Hel"))
        sink.send(ChunkReceived("a", "lo"))
        sink.send(StreamEnded("a", "completed"))
        sink.close()

    thread = threading.Thread(target=produce)
    thread.start()
    parts = [part async for part in sink.text()]
    thread.join()

    assert parts == ["Hel", "lo"]


@pytest.mark.asyncio
async def test_sink_reports_failure():
    sink = AsyncStreamSink()
    sink.send(ChunkReceived("a", "dé"))
    sink.send(StreamEnded("a", "failed", error="provider hors ligne"))

    parts = [part async for part in sink.text()]

    assert parts == ["dé", "[ERROR: provider hors ligne]"]


@pytest.mark.asyncio
async def test_sink_reports_timeout():
    sink = AsyncStreamSink()
    sink.send(StreamExpired("a"))
    sink.close()

    parts = await asyncio.wait_for(_collect(sink), timeout=1)

    assert parts == ["[ERROR: timeout]"]


@pytest.mark.asyncio
async def test_sink_close_ends_iteration():
    sink = AsyncStreamSink()
    sink.close()
    sink.close()

    events = [event async for event in sink.events()]

    assert events == []


async def _collect(sink):
    return [part async for part in sink.text()]
