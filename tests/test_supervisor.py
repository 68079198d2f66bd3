"""Tests de la supervision : initialisation et reconnexion."""
from threading import Event

import pytest

from fakes import RecordingTarget, make_request
from streaming.gateway import Gateway
from streaming.supervisor import ConsumerSpec, ReconnectionSupervisor
from streaming.topology import QueueTopology


@pytest.fixture
def stop():
    return Event()


@pytest.fixture
def received():
    return []


@pytest.fixture
def supervisor(make_connection, received):
    connection = make_connection()
    topology = QueueTopology(connection, "req", "resp", message_ttl_ms=0, failure_policy="requeue")

    def handler(delivery):
        received.append(delivery.body)
        delivery.ack()

    return ReconnectionSupervisor(
        connection,
        topology,
        consumers=[ConsumerSpec("resp", handler)],
        retry_delay=0,
        poll_interval=0,
    )


def test_initialize_declares_queues_and_consumers(supervisor, broker):
    supervisor.initialize()

    assert supervisor.ready
    assert broker.declaration_count("req") == 1
    assert broker.declaration_count("resp") == 1
    assert broker.current.consumers == ["resp"]
    assert broker.current.channels[1].prefetch_count == 1


def test_run_once_delivers_messages(supervisor, broker, received, stop):
    supervisor.initialize()
    broker.enqueue("resp", b'{"a": 1}')

    supervisor.run_once(stop)

    assert received == [b'{"a": 1}']


def test_reconnects_after_connection_loss(supervisor, broker, received, stop):
    supervisor.initialize()
    first = broker.current

    broker.drop_connections()
    supervisor.run_once(stop)
    assert not supervisor.ready

    supervisor.run_once(stop)
    assert supervisor.ready
    assert broker.current is not first
    assert broker.declaration_count("req") == 2
    assert broker.declaration_count("resp") == 2
    assert broker.current.consumers == ["resp"]

    # Les messages publiés pendant la coupure sont livrés au nouveau consumer
    broker.enqueue("resp", b"{}")
    supervisor.run_once(stop)
    assert received == [b"{}"]


def test_unreachable_broker_is_retried(supervisor, broker, stop):
    broker.reachable = False
    supervisor.run_once(stop)
    assert not supervisor.ready

    broker.reachable = True
    supervisor.run_once(stop)
    assert supervisor.ready


def test_tick_hooks_run_every_loop(supervisor, stop):
    ticks = []
    supervisor.add_tick_hook(lambda: ticks.append(1))

    def broken():
        raise RuntimeError("hook en erreur")

    supervisor.add_tick_hook(broken)
    supervisor.initialize()
    supervisor.run_once(stop)
    supervisor.run_once(stop)

    assert ticks == [1, 1]


def test_run_stops_on_event(supervisor, stop):
    supervisor.add_tick_hook(stop.set)
    supervisor.run(stop)
    assert stop.is_set()


class TestGatewayReconnection:

    def test_dispatch_reinitializes_closed_connection(self, broker, store, make_connection):
        gateway = Gateway(
            store,
            connection=make_connection(),
            request_queue="req",
            response_queue="resp",
            retry_delay=0,
            poll_interval=0,
        )
        gateway.supervisor.initialize()
        broker.close_connections()
        assert not gateway.ready

        gateway.dispatch(make_request("abc"), RecordingTarget())

        assert gateway.ready
        assert broker.declaration_count("req") == 2
        assert broker.pending("req")[0]["correlationId"] == "abc"
        assert "abc" in gateway.registry
