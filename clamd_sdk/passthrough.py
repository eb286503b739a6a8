"""Duplex pass-through: forward a byte stream downstream while clamd scans it."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from clamd_sdk.coordinator import AsyncScanCoordinator
from clamd_sdk.exceptions import (
    ClamdConnectionError,
    ClamdError,
    ClamdTimeoutError,
    ClamdWriteError,
    InvalidStateError,
    SessionClosedError,
)
from clamd_sdk.models import Verdict

logger = logging.getLogger(__name__)

_FATAL_ERRORS = (ClamdConnectionError, ClamdWriteError, ClamdTimeoutError)

CoordinatorFactory = Callable[[], Awaitable[AsyncScanCoordinator]]
Sink = Any


class PassThrough:
    """Forward every written chunk downstream and feed the same chunks to clamd.

    Two tasks make progress independently: one delivers chunks to *sink*
    (or to :meth:`read` when no sink is given), the other feeds a scan
    coordinator. Bounded queues between :meth:`write` and the two tasks
    provide backpressure. The verdict is delivered once through
    :meth:`verdict` / :attr:`scan_complete`, whether downstream delivery
    finishes before or after it.

    A scan failure never retracts forwarded bytes. Forwarding stops only for
    failures fatal to the transport (connect, write, timeout); an infected
    verdict or a size-limit error leaves the stream flowing.

    Args:
        open_coordinator: Coroutine factory returning a started coordinator.
        sink: Async callable, or object with an async (or plain) ``write``
            method, receiving forwarded chunks. When *None*, consume the
            forwarded chunks with ``async for`` or :meth:`read`.
        max_pending: Capacity of each internal queue, in chunks.

    Example::

        async with client.pass_through(sink=upload.write) as duplex:
            async for chunk in request.stream():
                await duplex.write(chunk)
        verdict = await duplex.verdict()
    """

    def __init__(
        self,
        open_coordinator: CoordinatorFactory,
        sink: Sink = None,
        max_pending: int = 16,
    ) -> None:
        self._open_coordinator = open_coordinator
        self._deliver = _sink_callable(sink) if sink is not None else None
        self._forward_queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(max_pending)
        self._scan_queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(max_pending)
        self._coordinator: AsyncScanCoordinator | None = None
        self._scan_task: asyncio.Task[None] | None = None
        self._forward_task: asyncio.Task[None] | None = None
        self._started = False
        self._ended = False
        self._closed = False
        self._eof = False
        self._scanning = True
        self._error: BaseException | None = None
        self._fatal: ClamdError | None = None
        self._sink_error: BaseException | None = None
        self.scan_complete: asyncio.Future[Verdict] | None = None
        self.bytes_forwarded = 0
        self.bytes_scanned = 0

    @property
    def error(self) -> BaseException | None:
        """The failure behind an ``ERROR`` verdict, if any."""
        return self._error

    @property
    def transport_failed(self) -> bool:
        return self._fatal is not None

    async def start(self) -> None:
        """Open the scan session and launch both tasks. Idempotent."""
        if self._started:
            return
        self._started = True
        self.scan_complete = asyncio.get_running_loop().create_future()
        self._scan_task = asyncio.create_task(self._scan_loop())
        if self._deliver is not None:
            self._forward_task = asyncio.create_task(self._forward_loop())

    async def write(self, chunk: bytes) -> None:
        """Queue *chunk* for downstream delivery and for scanning.

        Raises:
            SessionClosedError: If called after :meth:`aclose`.
            InvalidStateError: If called after :meth:`end`.
            ClamdError: If the scan transport failed fatally.
        """
        self._require_open()
        await self.start()
        if self._ended:
            raise InvalidStateError("Cannot write after end()")
        if self._sink_error is not None:
            raise self._sink_error
        if self._fatal is not None:
            raise self._fatal
        chunk = bytes(chunk)
        await self._forward_queue.put(chunk)
        if self._scanning:
            await self._scan_queue.put(chunk)
        self._require_open()

    async def end(self) -> None:
        """Signal end of the upstream stream; clamd gets its terminator after the last chunk."""
        self._require_open()
        await self.start()
        if self._ended:
            return
        self._ended = True
        await self._forward_queue.put(None)
        if self._scanning:
            await self._scan_queue.put(None)

    async def read(self) -> bytes:
        """Return the next forwarded chunk, or ``b""`` once the stream has ended.

        Only available when no sink was given.
        """
        if self._deliver is not None:
            raise InvalidStateError("Chunks are delivered to the sink; nothing to read")
        await self.start()
        while not self._eof:
            chunk = await self._forward_queue.get()
            if chunk is None:
                self._eof = True
                break
            if chunk:
                self.bytes_forwarded += len(chunk)
                return chunk
        return b""

    def __aiter__(self) -> PassThrough:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read()
        if not chunk:
            raise StopAsyncIteration
        return chunk

    async def verdict(self) -> Verdict:
        """Wait for the scan to resolve and return its verdict."""
        await self.start()
        assert self.scan_complete is not None
        return await asyncio.shield(self.scan_complete)

    async def wait_forwarded(self) -> None:
        """Wait until every chunk reached the sink; re-raise a sink failure."""
        if self._forward_task is not None:
            if self._forward_task.cancelled():
                raise SessionClosedError("Pass-through was closed before forwarding finished")
            await asyncio.shield(self._forward_task)
        if self._sink_error is not None:
            raise self._sink_error

    async def aclose(self) -> None:
        """Cancel both tasks and release the scan transport. Idempotent.

        Later :meth:`write` and :meth:`end` calls raise :class:`SessionClosedError`;
        :meth:`read` returns ``b""``.
        """
        if self._closed:
            return
        self._closed = self._ended = self._eof = True
        if not self._started:
            self._started = True
            self.scan_complete = asyncio.get_running_loop().create_future()
        tasks = [t for t in (self._scan_task, self._forward_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._coordinator is not None:
            await self._coordinator.abort("Pass-through closed")
        await self._release_waiters()
        self._resolve(Verdict.error("Cancelled", "Pass-through closed before the scan completed"))

    cancel = aclose

    async def __aenter__(self) -> PassThrough:
        await self.start()
        return self

    async def __aexit__(self, exc_type: object, exc: BaseException | None, tb: object) -> None:
        if exc is not None or self._closed:
            await self.aclose()
            return
        try:
            await self.end()
            await self.wait_forwarded()
            await self.verdict()
        finally:
            await self.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _scan_loop(self) -> None:
        try:
            self._coordinator = await self._open_coordinator()
            while True:
                chunk = await self._scan_queue.get()
                if chunk is None:
                    break
                await self._coordinator.feed(chunk)
                self.bytes_scanned += len(chunk)
            verdict = await self._coordinator.finish()
        except asyncio.CancelledError:
            self._stop_scanning()
            if self._coordinator is not None:
                await self._coordinator.abort("Scan cancelled")
            if self._sink_error is not None:
                self._error = self._sink_error
                self._resolve(Verdict.from_exception(self._sink_error))
            else:
                self._resolve(Verdict.error("Cancelled", "Scan cancelled before completion"))
            raise
        except Exception as exc:
            if not isinstance(exc, ClamdError):
                logger.exception("Unexpected failure while scanning pass-through stream")
            self._error = exc
            if isinstance(exc, _FATAL_ERRORS) and exc.verdict is None:
                self._fatal = exc
            self._stop_scanning()
            verdict = Verdict.from_exception(exc)
            if self._coordinator is not None:
                verdict = await self._coordinator.abort(exc)
        self._resolve(verdict)

    def _require_open(self) -> None:
        if self._closed:
            raise SessionClosedError("Pass-through is closed")

    async def _release_waiters(self) -> None:
        # Writers blocked on a full queue get through and fail; readers see end of stream.
        _drain(self._forward_queue)
        _drain(self._scan_queue)
        await asyncio.sleep(0)
        _drain(self._forward_queue)
        _drain(self._scan_queue)
        if self._deliver is None and not self._forward_queue.full():
            self._forward_queue.put_nowait(None)

    def _stop_scanning(self) -> None:
        self._scanning = False
        # Unblock a writer waiting on the scan queue; nothing consumes it any more.
        _drain(self._scan_queue)

    async def _forward_loop(self) -> None:
        assert self._deliver is not None
        while True:
            chunk = await self._forward_queue.get()
            if chunk is None:
                return
            try:
                await self._deliver(chunk)
            except Exception as exc:
                logger.warning("Downstream sink failed; aborting scan: %r", exc)
                self._sink_error = exc
                _drain(self._forward_queue)
                if self._scan_task is not None:
                    self._scan_task.cancel()
                return
            self.bytes_forwarded += len(chunk)

    def _resolve(self, verdict: Verdict) -> None:
        if self.scan_complete is not None and not self.scan_complete.done():
            self.scan_complete.set_result(verdict)


def _drain(queue: asyncio.Queue[Optional[bytes]]) -> None:
    while not queue.empty():
        queue.get_nowait()


def _sink_callable(sink: Sink) -> Callable[[bytes], Awaitable[None]]:
    write = getattr(sink, "write", sink)

    async def deliver(chunk: bytes) -> None:
        result = write(chunk)
        if inspect.isawaitable(result):
            await result

    return deliver
