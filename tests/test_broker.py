from __future__ import annotations

import socket
import threading
import uuid

import pytest

from trialrunner.broker import ConnectionBroker
from trialrunner.errors import BrokerClosedError, BrokerUsageError
from trialrunner.messages import WorkerLog, encode, encode_trial_id


def identified_pair(trial_id: uuid.UUID) -> tuple[socket.socket, socket.socket]:
    """A (server, client) socket pair where the client has sent its handshake."""
    server, client = socket.socketpair()
    client.sendall(encode_trial_id(trial_id))
    return server, client


def test_reserve_then_accept_resolves() -> None:
    broker = ConnectionBroker()
    trial_id = uuid.uuid4()
    future = broker.reserve(trial_id)
    assert not future.done()

    server, client = identified_pair(trial_id)
    broker.on_accept(server)

    connection = future.result(timeout=1)
    assert connection.trial_id == trial_id
    client.sendall(encode(WorkerLog("hello")))
    assert connection.receive() == WorkerLog("hello")
    connection.close()
    client.close()


def test_accept_then_reserve_resolves_identically() -> None:
    broker = ConnectionBroker()
    trial_id = uuid.uuid4()
    server, client = identified_pair(trial_id)
    broker.on_accept(server)

    future = broker.reserve(trial_id)
    assert future.done()
    connection = future.result()
    assert connection.trial_id == trial_id
    client.sendall(encode(WorkerLog("hello")))
    assert connection.receive() == WorkerLog("hello")
    connection.close()
    client.close()


def test_second_reservation_of_pending_id_is_a_usage_error() -> None:
    broker = ConnectionBroker()
    trial_id = uuid.uuid4()
    broker.reserve(trial_id)
    with pytest.raises(BrokerUsageError):
        broker.reserve(trial_id)


def test_reserving_a_resolved_id_is_a_usage_error() -> None:
    broker = ConnectionBroker()
    trial_id = uuid.uuid4()
    future = broker.reserve(trial_id)
    server, client = identified_pair(trial_id)
    broker.on_accept(server)
    future.result(timeout=1).close()
    client.close()

    with pytest.raises(BrokerUsageError):
        broker.reserve(trial_id)


def test_second_connection_for_an_id_is_dropped() -> None:
    broker = ConnectionBroker()
    trial_id = uuid.uuid4()
    future = broker.reserve(trial_id)
    first_server, first_client = identified_pair(trial_id)
    broker.on_accept(first_server)
    second_server, second_client = identified_pair(trial_id)
    broker.on_accept(second_server)

    second_client.settimeout(1)
    assert second_client.recv(1) == b""
    assert future.result(timeout=1).trial_id == trial_id
    for sock in (first_client, second_client):
        sock.close()


def test_short_handshake_drops_only_that_connection() -> None:
    broker = ConnectionBroker(handshake_timeout=1)
    server, client = socket.socketpair()
    client.sendall(b"\x00" * 5)
    client.close()
    broker.on_accept(server)
    assert server.fileno() == -1

    trial_id = uuid.uuid4()
    future = broker.reserve(trial_id)
    good_server, good_client = identified_pair(trial_id)
    broker.on_accept(good_server)
    assert future.result(timeout=1).trial_id == trial_id
    good_client.close()


def test_silent_connection_times_out_on_handshake() -> None:
    broker = ConnectionBroker(handshake_timeout=0.1)
    server, client = socket.socketpair()
    broker.on_accept(server)
    assert server.fileno() == -1
    client.close()


def test_shutdown_fails_pending_reservations() -> None:
    broker = ConnectionBroker()
    future = broker.reserve(uuid.uuid4())
    broker.shutdown()
    with pytest.raises(BrokerClosedError):
        future.result(timeout=1)


def test_reserve_after_shutdown_raises() -> None:
    broker = ConnectionBroker()
    broker.shutdown()
    with pytest.raises(BrokerClosedError):
        broker.reserve(uuid.uuid4())


def test_shutdown_leaves_matched_connections_open() -> None:
    broker = ConnectionBroker()
    trial_id = uuid.uuid4()
    future = broker.reserve(trial_id)
    server, client = identified_pair(trial_id)
    broker.on_accept(server)
    broker.shutdown()

    connection = future.result(timeout=1)
    client.sendall(encode(WorkerLog("still here")))
    assert connection.receive() == WorkerLog("still here")
    connection.close()
    client.close()


def test_shutdown_closes_parked_connections() -> None:
    broker = ConnectionBroker()
    server, client = identified_pair(uuid.uuid4())
    broker.on_accept(server)
    broker.shutdown()
    client.settimeout(1)
    assert client.recv(1) == b""
    client.close()


def test_cancelled_reservation_closes_late_connection() -> None:
    broker = ConnectionBroker()
    trial_id = uuid.uuid4()
    future = broker.reserve(trial_id)
    assert future.cancel()
    server, client = identified_pair(trial_id)
    broker.on_accept(server)
    client.settimeout(1)
    assert client.recv(1) == b""
    client.close()


def test_workers_connect_over_tcp(broker: ConnectionBroker) -> None:
    trial_ids = [uuid.uuid4() for _ in range(5)]
    futures = {trial_id: broker.reserve(trial_id) for trial_id in trial_ids[:3]}

    clients = []
    for trial_id in trial_ids:
        client = socket.create_connection(("127.0.0.1", broker.port), timeout=5)
        client.sendall(encode_trial_id(trial_id))
        clients.append(client)
    futures.update({trial_id: broker.reserve(trial_id) for trial_id in trial_ids[3:]})

    for trial_id, future in futures.items():
        assert future.result(timeout=5).trial_id == trial_id
    for client in clients:
        client.close()


def test_concurrent_reservations_and_connections(broker: ConnectionBroker) -> None:
    trial_ids = [uuid.uuid4() for _ in range(20)]
    futures = {}
    lock = threading.Lock()

    def reserve(trial_id: uuid.UUID) -> None:
        future = broker.reserve(trial_id)
        with lock:
            futures[trial_id] = future

    clients = []

    def connect(trial_id: uuid.UUID) -> None:
        client = socket.create_connection(("127.0.0.1", broker.port), timeout=5)
        client.sendall(encode_trial_id(trial_id))
        with lock:
            clients.append(client)

    threads = [threading.Thread(target=reserve, args=(t,)) for t in trial_ids]
    threads += [threading.Thread(target=connect, args=(t,)) for t in trial_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    for trial_id in trial_ids:
        assert futures[trial_id].result(timeout=5).trial_id == trial_id
    for client in clients:
        client.close()
