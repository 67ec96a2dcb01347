"""
Blocking message stream over an already-authenticated socket.

``PGStream`` buffers outgoing frames until ``flush`` and decodes incoming
frames through ``protocol.MessageReader``. Every blocking read is bounded by the
network timeout; a timeout, EOF or socket error is connection-fatal.
"""

import select
import socket
import time
from typing import Optional, Tuple

import structlog

from .exceptions import ConnectionClosedError, ConnectionFatalError
from .protocol import MessageReader, TERMINATE_MESSAGE, encode_cancel_request

logger = structlog.get_logger()

RECV_CHUNK_SIZE = 65536


class PGStream:
    """
    Framed wrapper around one duplex socket.

    Args:
        sock: connected socket (TLS and authentication already done)
        connection_id: identifier used in log events
        cancel_address: (host, port) for out-of-band cancel requests
        network_timeout: seconds each blocking read may wait (None = forever)
    """

    def __init__(self, sock: socket.socket, connection_id: str = '0',
                 cancel_address: Optional[Tuple[str, int]] = None,
                 network_timeout: Optional[float] = None):
        self.sock = sock
        self.connection_id = connection_id
        self.cancel_address = cancel_address
        self._reader = MessageReader()
        self._outgoing = bytearray()
        self._closed = False
        self._network_timeout = None
        self.set_network_timeout(network_timeout)

    @property
    def closed(self) -> bool:
        return self._closed

    def set_network_timeout(self, seconds: Optional[float]):
        if seconds is not None and seconds < 0:
            raise ValueError("Network timeout must be >= 0 or None")
        # 0 from configuration means "no timeout", matching socketTimeout semantics
        self._network_timeout = seconds or None
        if not self._closed:
            self.sock.settimeout(self._network_timeout)

    def get_network_timeout(self) -> Optional[float]:
        return self._network_timeout

    def send(self, data: bytes):
        """Queue bytes for the next flush."""
        self._check_open()
        self._outgoing += data

    def discard_pending(self):
        """Drop queued bytes that were never flushed."""
        self._outgoing.clear()

    @property
    def pending_bytes(self) -> int:
        return len(self._outgoing)

    def flush(self):
        self._check_open()
        if not self._outgoing:
            return
        data = bytes(self._outgoing)
        self._outgoing.clear()
        try:
            self.sock.sendall(data)
        except OSError as e:
            self._fail(f"Error sending to the server: {e}", e)
        logger.debug("Flushed messages", connection_id=self.connection_id, bytes=len(data))

    def receive(self):
        """
        Block until one full backend message is available and return it.

        Raises:
            ConnectionFatalError: EOF, timeout or socket error
            ProtocolViolation: malformed frame
        """
        self._check_open()
        while True:
            message = self._reader.next_message()
            if message is not None:
                return message
            self._read_chunk()

    def has_pending_message(self, timeout: Optional[float]) -> bool:
        """
        Check whether a complete message can be read.

        Args:
            timeout: 0 polls without blocking, None waits indefinitely,
                a positive value bounds the wait in seconds

        Returns:
            True if ``receive`` will return without waiting on the socket
        """
        self._check_open()
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._reader.has_complete_message():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                readable, _, _ = select.select([self.sock], [], [], remaining)
            except (OSError, ValueError) as e:
                self._fail(f"Error waiting for the server: {e}", e)
            if not readable:
                return False
            self._read_chunk()
            if deadline is not None and time.monotonic() >= deadline:
                return self._reader.has_complete_message()
        return True

    def _read_chunk(self):
        try:
            chunk = self.sock.recv(RECV_CHUNK_SIZE)
        except socket.timeout as e:
            self._fail(f"Read timed out after {self._network_timeout}s", e, sqlstate='08006')
        except OSError as e:
            self._fail(f"Error reading from the server: {e}", e)
        if not chunk:
            self._fail("Unexpected end of stream from the server")
        self._reader.feed(chunk)

    def _fail(self, message: str, cause: Optional[BaseException] = None, sqlstate: str = '08006'):
        logger.error("Connection failure", connection_id=self.connection_id, error=message)
        self.abort()
        raise ConnectionFatalError(message, sqlstate) from cause

    def _check_open(self):
        if self._closed:
            raise ConnectionClosedError()

    def send_cancel(self, pid: int, secret: int, timeout: Optional[float] = 10.0):
        """
        Send CancelRequest over a new connection to ``cancel_address``.

        The server closes the side connection without replying; cancellation
        is advisory and the primary stream must still be drained.
        """
        if self.cancel_address is None:
            raise ConnectionFatalError("No address available for cancel requests", '08001')
        with socket.create_connection(self.cancel_address, timeout=timeout) as side:
            side.sendall(encode_cancel_request(pid, secret))
            try:
                while side.recv(RECV_CHUNK_SIZE):
                    pass
            except OSError as e:
                logger.debug("Cancel connection closed with error",
                             connection_id=self.connection_id, error=str(e))
        logger.info("Cancel request sent", connection_id=self.connection_id, pid=pid)

    def terminate(self):
        """Polite shutdown: send Terminate, then close."""
        if self._closed:
            return
        try:
            self.sock.sendall(bytes(self._outgoing) + TERMINATE_MESSAGE)
        except OSError as e:
            logger.debug("Terminate not delivered", connection_id=self.connection_id, error=str(e))
        self.abort()

    def abort(self):
        """Force-close the socket without a termination handshake."""
        if self._closed:
            return
        self._closed = True
        self._outgoing.clear()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        self.sock.close()
