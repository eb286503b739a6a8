"""Blocking socket transport to a clamd daemon."""

from __future__ import annotations

import logging
import socket
import threading

from clamd_sdk.exceptions import (
    ClamdConnectionError,
    ClamdError,
    ClamdProtocolError,
    ClamdTimeoutError,
    ClamdWriteError,
    SessionClosedError,
    error_for_kind,
)
from clamd_sdk.models import BackendDescriptor, TransportKind, Verdict
from clamd_sdk.protocol import encode_command, parse_response

logger = logging.getLogger(__name__)

MAX_REPLY_SIZE = 64 * 1024
_RECV_SIZE = 4096
# Upper bound on waiting for a reply clamd sent before dropping the connection.
PENDING_REPLY_TIMEOUT = 1.0


def reply_complete(buffer: bytes | bytearray) -> bool:
    """Whether *buffer* ends on a reply delimiter (NUL or newline)."""
    return buffer[-1:] in (b"\0", b"\n")


def write_failure(cause: BaseException, pending: bytes) -> ClamdError:
    """Build the error for a failed write, given any reply clamd sent first.

    clamd answers ``INSTREAM size limit exceeded. ERROR`` and hangs up when a
    stream passes its StreamMaxLength, so the next write fails. When such a
    reply was received, the daemon's verdict is attached to the error. An
    error verdict is raised as its own kind, e.g. :class:`SizeLimitExceededError`.
    """
    error: ClamdError = ClamdWriteError(f"Write to clamd failed: {cause!r}")
    if not pending:
        return error
    try:
        verdict = parse_response(pending)
    except ClamdError:
        return error
    logger.debug("clamd replied before the stream ended: %r", pending)
    if verdict.is_error:
        error = error_for_kind(verdict.error_kind or "Error", verdict.detail)
    error.verdict = verdict
    return error


class TransportSession:
    """One connection to clamd, owned by a single scan for its lifetime.

    Writes are serialised under a lock so concurrent submissions never
    interleave. Any write failure closes the connection; later sends raise
    :class:`SessionClosedError`.

    Example::

        with TransportSession.open(BackendDescriptor.tcp("localhost")) as session:
            session.send(encode_header())
            ...
            verdict = session.receive_verdict()
    """

    def __init__(self, sock: socket.socket, descriptor: BackendDescriptor) -> None:
        self._sock: socket.socket | None = sock
        self._descriptor = descriptor
        self._lock = threading.Lock()
        # Guards only the socket handoff; close() must not wait on a blocked recv.
        self._release_lock = threading.Lock()
        self._failed = False
        self._replied = False
        self.bytes_sent = 0

    @classmethod
    def open(cls, descriptor: BackendDescriptor, timeout: float | None = None) -> TransportSession:
        """Connect to the daemon described by *descriptor*.

        Raises:
            ClamdConnectionError: If the connection is refused, the socket
                does not exist, or *timeout* elapses first.
        """
        if timeout is None:
            timeout = descriptor.connect_timeout
        target = descriptor.describe()
        logger.debug("Connecting to clamd at %s (timeout %.1fs)", target, timeout)
        try:
            if descriptor.transport is TransportKind.SOCKET:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                try:
                    sock.settimeout(timeout)
                    sock.connect(descriptor.address)
                except BaseException:
                    sock.close()
                    raise
            else:
                sock = socket.create_connection(descriptor.address, timeout=timeout)  # type: ignore[arg-type]
        except OSError as exc:
            raise ClamdConnectionError(f"Cannot connect to clamd at {target}: {exc}") from exc

        sock.settimeout(descriptor.read_timeout)
        return cls(sock, descriptor)

    @property
    def closed(self) -> bool:
        return self._sock is None

    def send(self, frame: bytes) -> None:
        """Write one frame.

        Raises:
            ClamdWriteError: On broken pipe, reset or write timeout.
            SizeLimitExceededError: If clamd rejected the stream before
                hanging up.
            SessionClosedError: If the session already failed or was closed.
        """
        with self._lock:
            sock = self._require_open()
            try:
                sock.sendall(frame)
            except OSError as exc:
                self._failed = True
                pending = self._pending_reply(sock)
                self._release()
                raise write_failure(exc, pending) from exc
            self.bytes_sent += len(frame)

    def receive_verdict(self) -> Verdict:
        """Read and parse the daemon's reply to an INSTREAM request.

        Raises:
            ClamdTimeoutError: If no complete reply arrives within the read timeout.
            ClamdProtocolError: If the reply is oversized or undecodable.
        """
        return parse_response(self._read_reply())

    def command(self, name: str) -> str:
        """Send a single z-mode command (``PING``, ``VERSION``) and return the reply text."""
        self.send(encode_command(name))
        raw = self._read_reply()
        try:
            return raw.rstrip(b"\0\r\n").decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ClamdProtocolError(f"Undecodable reply to {name}: {raw[:64]!r}") from exc

    def close(self) -> None:
        """Release the connection. Safe to call any number of times.

        Does not wait for an in-flight send or reply read; a read blocked in
        another thread is woken and fails.
        """
        self._release()

    def __enter__(self) -> TransportSession:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_open(self) -> socket.socket:
        if self._sock is None or self._failed:
            raise SessionClosedError("Transport session is closed")
        return self._sock

    def _read_reply(self) -> bytes:
        with self._lock:
            sock = self._require_open()
            if self._replied:
                raise SessionClosedError("Reply was already read from this session")
            self._replied = True
            buffer = bytearray()
            try:
                while True:
                    piece = sock.recv(_RECV_SIZE)
                    if not piece:
                        break
                    buffer += piece
                    if len(buffer) > MAX_REPLY_SIZE:
                        raise ClamdProtocolError(f"Reply from clamd exceeds {MAX_REPLY_SIZE} bytes")
                    if reply_complete(buffer):
                        break
            except socket.timeout as exc:
                self._release()
                raise ClamdTimeoutError(
                    f"No reply from clamd within {self._descriptor.read_timeout}s"
                ) from exc
            except OSError as exc:
                if self._sock is None:
                    raise SessionClosedError("Transport session was closed while awaiting the reply") from exc
                self._release()
                raise ClamdWriteError(f"Read from clamd failed: {exc}") from exc
            if self._sock is None:
                raise SessionClosedError("Transport session was closed while awaiting the reply")
        logger.debug("clamd replied %r", bytes(buffer))
        return bytes(buffer)

    def _pending_reply(self, sock: socket.socket) -> bytes:
        """Collect a reply already sent by clamd, waiting briefly for the rest.

        Returns ``b""`` unless a delimited reply (or one cut by EOF) arrives.
        """
        buffer = bytearray()
        try:
            sock.settimeout(min(PENDING_REPLY_TIMEOUT, self._descriptor.read_timeout))
            while len(buffer) <= MAX_REPLY_SIZE:
                piece = sock.recv(_RECV_SIZE)
                if not piece or reply_complete(buffer + piece):
                    return bytes(buffer + piece)
                buffer += piece
        except OSError:
            # Nothing usable; the write error stands.
            pass
        return b""

    def _release(self) -> None:
        with self._release_lock:
            if self._sock is None:
                return
            sock, self._sock = self._sock, None
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already reset or disconnected by the peer.
            pass
        try:
            sock.close()
        finally:
            logger.debug("Closed clamd connection to %s", self._descriptor.describe())
