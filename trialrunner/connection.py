"""Message channel over one identified worker socket."""

from __future__ import annotations

import contextlib
import socket
from typing import TYPE_CHECKING

from .errors import MessageDecodeError
from .messages import decode, encode

if TYPE_CHECKING:
    import uuid
    from types import TracebackType

    from .messages import Message

# Upper bound on a single JSON line, to stop a runaway peer exhausting memory.
MAX_MESSAGE_BYTES = 16 * 1024 * 1024
_RECV_SIZE = 65536


class WorkerConnection:
    """A socket whose handshake has been read, carrying JSON-line messages.

    Used on both ends: the runner wraps accepted sockets, the worker wraps
    the socket it connected with.
    """

    def __init__(self, sock: socket.socket, trial_id: uuid.UUID) -> None:
        """Wrap an already identified socket.

        Args:
            sock: Connected socket, positioned just after the handshake.
            trial_id: Trial id the socket was identified with.
        """
        self.trial_id = trial_id
        self._sock = sock
        self._buffer = bytearray()
        self._closed = False
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` has been called."""
        return self._closed

    def settimeout(self, timeout: float | None) -> None:
        """Set the timeout applied to subsequent reads and writes."""
        self._sock.settimeout(timeout)

    def send(self, message: Message) -> None:
        """Write one message."""
        self._sock.sendall(encode(message))

    def receive(self) -> Message | None:
        """Read the next message, blocking until one is complete.

        Returns:
            The message, or None if the peer closed the connection cleanly.

        Raises:
            MessageDecodeError: If the peer sent a malformed message or
                closed the connection partway through one.
            TimeoutError: If the socket timeout expired first.
        """
        while True:
            end = self._buffer.find(b"\n")
            if end >= 0:
                line = bytes(self._buffer[:end])
                del self._buffer[: end + 1]
                if line.strip():
                    return decode(line)
                continue
            if len(self._buffer) > MAX_MESSAGE_BYTES:
                msg = f"Message exceeds {MAX_MESSAGE_BYTES} bytes"
                raise MessageDecodeError(msg)
            chunk = self._sock.recv(_RECV_SIZE)
            if not chunk:
                if self._buffer.strip():
                    msg = "Connection closed partway through a message"
                    raise MessageDecodeError(msg)
                return None
            self._buffer.extend(chunk)

    def close_writer(self) -> None:
        """Half-close the connection, signalling end of input to the peer."""
        # The peer may already be gone, which leaves nothing to signal.
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_WR)

    def close(self) -> None:
        """Close the underlying socket."""
        if not self._closed:
            self._closed = True
            self._sock.close()

    def __enter__(self) -> WorkerConnection:
        """Return the connection for use in a ``with`` block."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the connection on leaving a ``with`` block."""
        self.close()
