"""Asynchronous (``asyncio`` streams) transport to a clamd daemon."""

from __future__ import annotations

import asyncio
import logging

from clamd_sdk.exceptions import (
    ClamdConnectionError,
    ClamdProtocolError,
    ClamdTimeoutError,
    ClamdWriteError,
    SessionClosedError,
)
from clamd_sdk.models import BackendDescriptor, TransportKind, Verdict
from clamd_sdk.protocol import encode_command, parse_response
from clamd_sdk.transport import (
    _RECV_SIZE,
    MAX_REPLY_SIZE,
    PENDING_REPLY_TIMEOUT,
    reply_complete,
    write_failure,
)

logger = logging.getLogger(__name__)


class AsyncTransportSession:
    """Asynchronous counterpart of :class:`~clamd_sdk.transport.TransportSession`.

    From the first send on, a pending read watches for a reply, so an answer
    clamd sends before hanging up mid-stream is not lost with the connection.

    Example::

        async with await AsyncTransportSession.open(descriptor) as session:
            await session.send(encode_header())
            ...
            verdict = await session.receive_verdict()
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        descriptor: BackendDescriptor,
    ) -> None:
        self._reader = reader
        self._writer: asyncio.StreamWriter | None = writer
        self._descriptor = descriptor
        self._lock = asyncio.Lock()
        self._failed = False
        self._replied = False
        self._first_piece: asyncio.Task[bytes] | None = None
        self.bytes_sent = 0

    @classmethod
    async def open(cls, descriptor: BackendDescriptor, timeout: float | None = None) -> AsyncTransportSession:
        """Connect to the daemon described by *descriptor*.

        Raises:
            ClamdConnectionError: If the connection is refused, the socket
                does not exist, or *timeout* elapses first.
        """
        if timeout is None:
            timeout = descriptor.connect_timeout
        target = descriptor.describe()
        logger.debug("Connecting to clamd at %s (timeout %.1fs)", target, timeout)
        if descriptor.transport is TransportKind.SOCKET:
            connecting = asyncio.open_unix_connection(descriptor.address)  # type: ignore[arg-type]
        else:
            host, port = descriptor.address  # type: ignore[misc]
            connecting = asyncio.open_connection(host, port)
        try:
            reader, writer = await asyncio.wait_for(connecting, timeout)
        except asyncio.TimeoutError as exc:
            raise ClamdConnectionError(f"Timed out connecting to clamd at {target} after {timeout}s") from exc
        except OSError as exc:
            raise ClamdConnectionError(f"Cannot connect to clamd at {target}: {exc}") from exc
        return cls(reader, writer, descriptor)

    @property
    def closed(self) -> bool:
        return self._writer is None

    async def send(self, frame: bytes) -> None:
        """Write one frame and wait for the transport buffer to drain.

        Raises:
            ClamdWriteError: On broken pipe, reset or a drain timeout.
            SizeLimitExceededError: If clamd rejected the stream before
                hanging up.
            SessionClosedError: If the session already failed or was closed.
        """
        async with self._lock:
            writer = self._require_open()
            if self._first_piece is None:
                self._first_piece = asyncio.ensure_future(self._reader.read(_RECV_SIZE))
            elif self._first_piece.done():
                # clamd only speaks before the terminator to reject the stream.
                self._failed = True
                pending = await self._pending_reply()
                await self._release()
                raise write_failure(ConnectionResetError("clamd ended the stream early"), pending)
            try:
                writer.write(frame)
                await asyncio.wait_for(writer.drain(), self._descriptor.read_timeout)
            except (OSError, asyncio.TimeoutError) as exc:
                self._failed = True
                pending = await self._pending_reply()
                await self._release()
                raise write_failure(exc, pending) from exc
            self.bytes_sent += len(frame)

    async def receive_verdict(self) -> Verdict:
        """Read and parse the daemon's reply to an INSTREAM request.

        Raises:
            ClamdTimeoutError: If no complete reply arrives within the read timeout.
            ClamdProtocolError: If the reply is oversized or undecodable.
        """
        return parse_response(await self._read_reply())

    async def command(self, name: str) -> str:
        """Send a single z-mode command (``PING``, ``VERSION``) and return the reply text."""
        await self.send(encode_command(name))
        raw = await self._read_reply()
        try:
            return raw.rstrip(b"\0\r\n").decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ClamdProtocolError(f"Undecodable reply to {name}: {raw[:64]!r}") from exc

    async def close(self) -> None:
        """Release the connection. Safe to call any number of times."""
        await self._release()

    async def __aenter__(self) -> AsyncTransportSession:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_open(self) -> asyncio.StreamWriter:
        if self._writer is None or self._failed:
            raise SessionClosedError("Transport session is closed")
        return self._writer

    async def _read_reply(self) -> bytes:
        async with self._lock:
            self._require_open()
            if self._replied:
                raise SessionClosedError("Reply was already read from this session")
            self._replied = True
            try:
                raw = await asyncio.wait_for(self._collect_reply(), self._descriptor.read_timeout)
            except asyncio.TimeoutError as exc:
                await self._release()
                raise ClamdTimeoutError(
                    f"No reply from clamd within {self._descriptor.read_timeout}s"
                ) from exc
            except OSError as exc:
                await self._release()
                raise ClamdWriteError(f"Read from clamd failed: {exc!r}") from exc
        logger.debug("clamd replied %r", raw)
        return raw

    async def _collect_reply(self) -> bytes:
        buffer = bytearray()
        while True:
            if self._first_piece is not None:
                piece, self._first_piece = await self._first_piece, None
            else:
                piece = await self._reader.read(_RECV_SIZE)
            if not piece:
                break
            buffer += piece
            if len(buffer) > MAX_REPLY_SIZE:
                raise ClamdProtocolError(f"Reply from clamd exceeds {MAX_REPLY_SIZE} bytes")
            if reply_complete(buffer):
                break
        return bytes(buffer)

    async def _pending_reply(self) -> bytes:
        """Return a delimited reply clamd already sent, or ``b""``."""
        if self._first_piece is None:
            return b""
        timeout = min(PENDING_REPLY_TIMEOUT, self._descriptor.read_timeout)
        try:
            piece = await asyncio.wait_for(asyncio.shield(self._first_piece), timeout)
        except (OSError, asyncio.TimeoutError):
            return b""
        if piece and (reply_complete(piece) or self._reader.at_eof()):
            return piece
        return b""

    async def _release(self) -> None:
        if self._writer is None:
            return
        writer, self._writer = self._writer, None
        watcher = self._first_piece
        if watcher is not None:
            if not watcher.done():
                watcher.cancel()
            elif not watcher.cancelled():
                # Marks a reset seen only by the watcher as retrieved.
                watcher.exception()
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            # The peer may already have reset the connection.
            pass
        logger.debug("Closed clamd connection to %s", self._descriptor.describe())
