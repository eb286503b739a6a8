"""Asynchronous client for a clamd daemon, including the scanning pass-through."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterable, AsyncIterator
from pathlib import Path
from typing import Union

from clamd_sdk.async_transport import AsyncTransportSession
from clamd_sdk.client import _infection_flag
from clamd_sdk.coordinator import AsyncScanCoordinator
from clamd_sdk.exceptions import ClamdError, ClamdProtocolError
from clamd_sdk.models import BackendDescriptor, Verdict, VersionInfo
from clamd_sdk.passthrough import PassThrough, Sink
from clamd_sdk.protocol import DEFAULT_CHUNK_SIZE, ChunkSource, iter_chunks

logger = logging.getLogger(__name__)

AsyncChunkSource = Union[ChunkSource, AsyncIterable[bytes]]


class AsyncClamdClient:
    """Asynchronous client for clamd's INSTREAM scanning.

    Args:
        descriptor: Where to reach clamd. Defaults to
            :meth:`BackendDescriptor.from_env`.
        chunk_size: Size of each data frame sent to the daemon, in bytes.

    Example::

        async with AsyncClamdClient(BackendDescriptor.unix("/run/clamav/clamd.ctl")) as client:
            verdict = await client.scan_bytes(payload)
            print(verdict.status)
    """

    def __init__(
        self,
        descriptor: BackendDescriptor | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._descriptor = descriptor or BackendDescriptor.from_env()
        self._chunk_size = chunk_size
        self._open_passthroughs: weakref.WeakSet[PassThrough] = weakref.WeakSet()

    @property
    def descriptor(self) -> BackendDescriptor:
        return self._descriptor

    async def ping(self) -> bool:
        """Check that clamd answers ``PING`` with ``PONG``."""
        reply = await self._command("PING")
        if reply.strip() != "PONG":
            raise ClamdProtocolError(f"Unexpected reply to PING: {reply!r}")
        return True

    async def version(self) -> VersionInfo:
        """Retrieve the engine and signature database versions."""
        return VersionInfo.parse(await self._command("VERSION"))

    async def open_session(self) -> AsyncScanCoordinator:
        """Connect and return a started coordinator for caller-driven feeding."""
        session = await AsyncTransportSession.open(self._descriptor)
        coordinator = AsyncScanCoordinator(session, size_limit=self._descriptor.size_limit)
        try:
            await coordinator.start()
        except BaseException:
            await session.close()
            raise
        return coordinator

    async def scan_stream(self, data: AsyncChunkSource) -> Verdict:
        """Stream *data* to clamd and return the verdict.

        Args:
            data: Raw bytes, a readable binary stream, or a (sync or async)
                iterable of chunks.
        """
        logger.debug("Scanning stream via clamd at %s", self._descriptor.describe())
        try:
            coordinator = await self.open_session()
        except ClamdError as exc:
            return Verdict.from_exception(exc)

        async with coordinator:
            try:
                async for chunk in _aiter_chunks(data, self._chunk_size):
                    await coordinator.feed(chunk)
            except ClamdError:
                return coordinator.verdict  # type: ignore[return-value]
            return await coordinator.finish()

    scan = scan_stream

    async def scan_bytes(self, data: bytes) -> Verdict:
        return await self.scan_stream(data)

    async def scan_file(self, file_path: Union[str, Path]) -> Verdict:
        """Stream a file on disk to clamd.

        Raises:
            FileNotFoundError: If *file_path* does not exist.
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        with open(path, "rb") as fh:
            return await self.scan_stream(fh)

    async def is_infected(self, data: AsyncChunkSource) -> bool | None:
        """Return ``True``/``False``, or ``None`` when clamd was inconclusive."""
        return _infection_flag(await self.scan_stream(data))

    def pass_through(self, sink: Sink = None, max_pending: int = 16) -> PassThrough:
        """Create a duplex that forwards data to *sink* while clamd scans it.

        See :class:`~clamd_sdk.passthrough.PassThrough`.
        """
        duplex = PassThrough(self.open_session, sink=sink, max_pending=max_pending)
        self._open_passthroughs.add(duplex)
        return duplex

    async def close(self) -> None:
        """Close every pass-through created by this client that is still running."""
        duplexes = list(self._open_passthroughs)
        self._open_passthroughs = weakref.WeakSet()
        await asyncio.gather(*(d.aclose() for d in duplexes))

    async def __aenter__(self) -> AsyncClamdClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _command(self, name: str) -> str:
        async with await AsyncTransportSession.open(self._descriptor) as session:
            return await session.command(name)


async def _aiter_chunks(data: AsyncChunkSource, chunk_size: int) -> AsyncIterator[bytes]:
    if isinstance(data, AsyncIterable):
        async for chunk in data:
            yield chunk
    else:
        for chunk in iter_chunks(data, chunk_size):
            yield chunk
