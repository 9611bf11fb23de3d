"""Rendezvous between worker processes and the trials that own them.

A trial reserves its id before (or after) launching its worker; the worker
connects back and writes that id as its handshake. Whichever side arrives
second completes the pair, so the two may happen in either order.
"""

from __future__ import annotations

import socket
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .connection import WorkerConnection
from .errors import BrokerClosedError, BrokerUsageError, MessageDecodeError
from .logger import logger
from .messages import TRIAL_ID_LENGTH, decode_trial_id
from .models import HANDSHAKE_TIMEOUT

if TYPE_CHECKING:
    import uuid
    from types import TracebackType

# How often the accept loop wakes up to check for shutdown
_ACCEPT_POLL_SECONDS = 0.2


@dataclass
class _Slot:
    """Either a reservation awaiting a socket, or a socket awaiting a reservation."""

    future: Future[WorkerConnection] | None = None
    connection: WorkerConnection | None = None


def _recv_exactly(sock: socket.socket, size: int) -> bytes:
    """Read up to ``size`` bytes, stopping early only at end of stream.

    Returns:
        The bytes read; shorter than ``size`` if the peer closed first.
    """
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data.extend(chunk)
    return bytes(data)


class ConnectionBroker:
    """Listens on a loopback port and hands identified sockets to their trials.

    A single lock guards the id-to-slot map, which is the only state touched
    by concurrent callers. A connection whose id arrives before the matching
    reservation is parked in its slot until the reservation comes in.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ) -> None:
        """Initialise the broker without binding yet.

        Args:
            host: Interface to listen on.
            port: Port to listen on; 0 picks a free one.
            handshake_timeout: Seconds a new connection has to send its id.
        """
        self.host = host
        self.handshake_timeout = handshake_timeout
        self._requested_port = port
        self._lock = threading.Lock()
        self._slots: dict[uuid.UUID, _Slot] = {}
        self._resolved: set[uuid.UUID] = set()
        self._closed = False
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        """The port workers should connect to.

        Raises:
            RuntimeError: If the broker has not been started.
        """
        if self._listener is None:
            msg = "Broker has not been started"
            raise RuntimeError(msg)
        return self._listener.getsockname()[1]

    def start(self) -> ConnectionBroker:
        """Bind the listening socket and start accepting connections.

        Returns:
            The broker itself.

        Raises:
            OSError: If the listening socket cannot be bound.
        """
        try:
            self._listener = socket.create_server((self.host, self._requested_port))
        except OSError:
            logger.exception("Failed to bind broker on %s:%s", self.host, self._requested_port)
            raise
        self._listener.settimeout(_ACCEPT_POLL_SECONDS)
        self._accept_thread = threading.Thread(
            target=self._accept_loop, name="broker-accept", daemon=True
        )
        self._accept_thread.start()
        logger.info("🔌 Broker listening on %s:%d", self.host, self.port)
        return self

    def reserve(self, trial_id: uuid.UUID) -> Future[WorkerConnection]:
        """Register interest in the connection for ``trial_id``.

        Returns:
            A future resolved with the identified connection, or failed with
            :class:`BrokerClosedError` if the broker shuts down first.

        Raises:
            BrokerClosedError: If the broker is already shut down.
            BrokerUsageError: If ``trial_id`` is already reserved or resolved.
        """
        future: Future[WorkerConnection] = Future()
        with self._lock:
            if self._closed:
                msg = f"Cannot reserve {trial_id}: broker closed"
                raise BrokerClosedError(msg)
            if trial_id in self._resolved:
                msg = f"Trial id {trial_id} has already been resolved"
                raise BrokerUsageError(msg)
            slot = self._slots.get(trial_id)
            if slot is not None and slot.future is not None:
                msg = f"Trial id {trial_id} is already reserved"
                raise BrokerUsageError(msg)
            if slot is None:
                self._slots[trial_id] = _Slot(future=future)
                return future
            del self._slots[trial_id]
            self._resolved.add(trial_id)
        future.set_result(slot.connection)
        return future

    def on_accept(self, sock: socket.socket) -> None:
        """Identify a newly accepted socket and pair it with its reservation.

        Blocks only on reading the handshake. A short or malformed handshake
        drops the connection; so does a second connection for an id.
        """
        try:
            sock.settimeout(self.handshake_timeout)
            trial_id = decode_trial_id(_recv_exactly(sock, TRIAL_ID_LENGTH))
            sock.settimeout(None)
        except (OSError, MessageDecodeError) as e:
            logger.warning("⚠️ Dropping connection with unreadable handshake: %s", e)
            sock.close()
            return

        connection = WorkerConnection(sock, trial_id)
        with self._lock:
            if self._closed:
                future = None
                problem = "broker closed"
            elif trial_id in self._resolved:
                future = None
                problem = "id already resolved"
            else:
                slot = self._slots.get(trial_id)
                if slot is None:
                    self._slots[trial_id] = _Slot(connection=connection)
                    logger.debug("Parked connection for %s until it is reserved", trial_id)
                    return
                if slot.connection is not None:
                    future = None
                    problem = "duplicate connection"
                else:
                    del self._slots[trial_id]
                    self._resolved.add(trial_id)
                    future = slot.future
                    problem = ""

        if future is None:
            logger.warning("⚠️ Rejecting connection for %s: %s", trial_id, problem)
            connection.close()
        elif future.set_running_or_notify_cancel():
            future.set_result(connection)
        else:
            logger.debug("Reservation for %s was cancelled; closing its connection", trial_id)
            connection.close()

    def shutdown(self) -> None:
        """Stop listening and fail every reservation still pending.

        Connections already handed to a trial are unaffected.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            slots = self._slots
            self._slots = {}

        if self._listener is not None:
            self._listener.close()
        for trial_id, slot in slots.items():
            if slot.future is not None and slot.future.set_running_or_notify_cancel():
                msg = f"Broker closed before trial {trial_id} connected"
                slot.future.set_exception(BrokerClosedError(msg))
            if slot.connection is not None:
                slot.connection.close()
        accept_thread = self._accept_thread
        if accept_thread is not None and accept_thread is not threading.current_thread():
            accept_thread.join(timeout=2)
        logger.debug("Broker shut down, %d pending slot(s) released", len(slots))

    def _accept_loop(self) -> None:
        """Accept connections until shutdown, identifying each on its own thread."""
        listener = self._listener
        while not self._closed:
            try:
                sock, address = listener.accept()
            except TimeoutError:
                continue
            except OSError:
                if self._closed:
                    break
                logger.exception("Broker accept failed")
                continue
            logger.debug("Accepted connection from %s:%s", *address[:2])
            threading.Thread(
                target=self.on_accept, args=(sock,), name="broker-handshake", daemon=True
            ).start()

    def __enter__(self) -> ConnectionBroker:
        """Start the broker for use in a ``with`` block."""
        return self.start()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Shut the broker down on leaving a ``with`` block."""
        self.shutdown()
