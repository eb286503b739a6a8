"""Tests for the scanning PassThrough duplex."""

from __future__ import annotations

import asyncio
import dataclasses

import pytest

from clamd_sdk.async_client import AsyncClamdClient
from clamd_sdk.exceptions import ClamdConnectionError, InvalidStateError, SessionClosedError
from clamd_sdk.models import BackendDescriptor, VerdictStatus

CHUNKS = [b"The quick ", b"brown fox ", b"jumps over ", b"the lazy dog"]


class ListSink:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []

    async def write(self, chunk: bytes) -> None:
        self.chunks.append(chunk)

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)


@pytest.fixture()
def client(clamd_tcp) -> AsyncClamdClient:
    return AsyncClamdClient(clamd_tcp.descriptor)


class TestForwarding:
    async def test_sink_and_scanner_see_same_bytes(self, client: AsyncClamdClient, clamd_tcp):
        sink = ListSink()
        async with client.pass_through(sink) as duplex:
            for chunk in CHUNKS:
                await duplex.write(chunk)
        verdict = await duplex.verdict()
        assert verdict.status is VerdictStatus.CLEAN
        assert sink.chunks == CHUNKS
        assert clamd_tcp.payload == sink.data
        assert duplex.bytes_forwarded == duplex.bytes_scanned == len(sink.data)
        assert duplex.error is None

    async def test_plain_callable_sink(self, client: AsyncClamdClient):
        received: list[bytes] = []
        async with client.pass_through(received.append) as duplex:
            for chunk in CHUNKS:
                await duplex.write(chunk)
        assert received == CHUNKS
        assert (await duplex.verdict()).is_clean

    async def test_readable_side(self, client: AsyncClamdClient, clamd_tcp):
        duplex = client.pass_through(max_pending=2)
        received: list[bytes] = []

        async def produce() -> None:
            for chunk in CHUNKS:
                await duplex.write(chunk)
            await duplex.end()

        async def consume() -> None:
            async for chunk in duplex:
                received.append(chunk)

        await asyncio.gather(produce(), consume())
        assert (await duplex.verdict()).is_clean
        assert received == CHUNKS
        assert clamd_tcp.payload == b"".join(CHUNKS)
        assert await duplex.read() == b""
        await duplex.aclose()

    async def test_read_with_sink_is_rejected(self, client: AsyncClamdClient):
        duplex = client.pass_through(ListSink())
        with pytest.raises(InvalidStateError):
            await duplex.read()
        await duplex.aclose()

    async def test_write_after_end(self, client: AsyncClamdClient):
        duplex = client.pass_through(ListSink())
        await duplex.end()
        with pytest.raises(InvalidStateError):
            await duplex.write(b"late")
        await duplex.verdict()
        await duplex.aclose()


class TestVerdictDelivery:
    async def test_infected_is_not_an_error(self, client: AsyncClamdClient, clamd_tcp, eicar_bytes: bytes):
        clamd_tcp.reply = b"stream: Eicar-Test-Signature FOUND\0"
        sink = ListSink()
        async with client.pass_through(sink) as duplex:
            await duplex.write(eicar_bytes)
        verdict = await duplex.verdict()
        assert verdict.is_infected
        assert verdict.names == ("Eicar-Test-Signature",)
        assert duplex.error is None
        assert not duplex.transport_failed
        assert sink.data == eicar_bytes

    async def test_verdict_before_downstream_finishes(self, client: AsyncClamdClient):
        gate = asyncio.Event()
        sink = ListSink()

        async def slow_sink(chunk: bytes) -> None:
            await gate.wait()
            await sink.write(chunk)

        duplex = client.pass_through(slow_sink)
        for chunk in CHUNKS:
            await duplex.write(chunk)
        await duplex.end()

        verdict = await asyncio.wait_for(duplex.verdict(), 5)
        assert verdict.is_clean
        assert duplex.bytes_forwarded == 0

        gate.set()
        await duplex.wait_forwarded()
        assert sink.chunks == CHUNKS
        assert duplex.bytes_forwarded == duplex.bytes_scanned
        await duplex.aclose()

    async def test_scan_complete_fires_once(self, client: AsyncClamdClient):
        async with client.pass_through(ListSink()) as duplex:
            await duplex.write(b"data")
        first = await duplex.verdict()
        await duplex.aclose()
        assert duplex.scan_complete.done()
        assert await duplex.verdict() is first


class TestFailures:
    async def test_connection_failure_stops_forwarding(self, closed_port):
        client = AsyncClamdClient(BackendDescriptor.tcp("127.0.0.1", closed_port, connect_timeout=1))
        sink = ListSink()
        duplex = client.pass_through(sink)
        await duplex.write(b"first")
        verdict = await duplex.verdict()
        assert verdict.status is VerdictStatus.ERROR
        assert verdict.error_kind == "ConnectionError"
        assert duplex.transport_failed
        assert isinstance(duplex.error, ClamdConnectionError)
        with pytest.raises(ClamdConnectionError):
            await duplex.write(b"second")
        await asyncio.sleep(0)
        assert sink.chunks == [b"first"]
        await duplex.aclose()

    async def test_size_limit_keeps_forwarding(self, clamd_tcp):
        client = AsyncClamdClient(dataclasses.replace(clamd_tcp.descriptor, size_limit=15))
        sink = ListSink()
        async with client.pass_through(sink) as duplex:
            for chunk in CHUNKS:
                await duplex.write(chunk)
        verdict = await duplex.verdict()
        assert verdict.error_kind == "SizeLimitExceeded"
        assert not duplex.transport_failed
        assert sink.chunks == CHUNKS
        assert clamd_tcp.handled.wait(5)
        assert clamd_tcp.payload == CHUNKS[0]

    async def test_daemon_rejection_keeps_forwarding(self, clamd_tcp):
        clamd_tcp.reply = b"INSTREAM size limit exceeded. ERROR\0"
        clamd_tcp.reject_after = 1
        client = AsyncClamdClient(clamd_tcp.descriptor)
        chunk = b"x" * (64 * 1024)
        sink = ListSink()
        async with client.pass_through(sink) as duplex:
            for _ in range(20 * 16):
                await duplex.write(chunk)
        verdict = await duplex.verdict()
        assert verdict.error_kind == "SizeLimitExceeded"
        assert not duplex.transport_failed
        assert len(sink.data) == 20 * 1024 * 1024

    async def test_verdict_timeout(self, clamd_tcp):
        clamd_tcp.hang = True
        client = AsyncClamdClient(dataclasses.replace(clamd_tcp.descriptor, read_timeout=0.2))
        sink = ListSink()
        async with client.pass_through(sink) as duplex:
            await duplex.write(b"data")
        verdict = await duplex.verdict()
        assert verdict.error_kind == "TimeoutError"
        assert sink.data == b"data"

    async def test_sink_failure_aborts_scan(self, client: AsyncClamdClient, clamd_tcp):
        async def failing_sink(chunk: bytes) -> None:
            raise RuntimeError("downstream gone")

        duplex = client.pass_through(failing_sink)
        await duplex.write(b"data")
        verdict = await asyncio.wait_for(duplex.verdict(), 5)
        assert verdict.status is VerdictStatus.ERROR
        assert verdict.error_kind == "RuntimeError"
        assert isinstance(duplex.error, RuntimeError)
        with pytest.raises(RuntimeError):
            await duplex.write(b"more")
        with pytest.raises(RuntimeError):
            await duplex.wait_forwarded()
        await duplex.aclose()

    async def test_cancel_mid_stream_releases_transport(self, client: AsyncClamdClient, clamd_tcp):
        duplex = client.pass_through(ListSink())
        await duplex.write(b"partial")
        await asyncio.sleep(0.05)
        await duplex.aclose()
        verdict = await duplex.verdict()
        assert verdict.status is VerdictStatus.ERROR
        assert clamd_tcp.handled.wait(5)
        assert not clamd_tcp.requests[-1][1].endswith(b"\0\0\0\0")

    async def test_exception_inside_context_cancels(self, client: AsyncClamdClient):
        with pytest.raises(ValueError):
            async with client.pass_through(ListSink()) as duplex:
                await duplex.write(b"data")
                raise ValueError("upstream failed")
        assert (await duplex.verdict()).is_error

    async def test_client_close_closes_pass_throughs(self, clamd_tcp):
        async with AsyncClamdClient(clamd_tcp.descriptor) as client:
            duplex = client.pass_through(ListSink())
            await duplex.write(b"data")
        assert (await duplex.verdict()).is_error


class TestClose:
    async def test_write_after_close_raises(self, client: AsyncClamdClient):
        received: list[bytes] = []
        duplex = client.pass_through(received.append, max_pending=2)
        await duplex.write(b"a")
        await duplex.aclose()
        for _ in range(3):
            with pytest.raises(SessionClosedError):
                await asyncio.wait_for(duplex.write(b"late"), 1)
        with pytest.raises(SessionClosedError):
            await duplex.end()
        assert b"late" not in received
        assert (await duplex.verdict()).is_error

    async def test_writer_blocked_on_full_queue_is_released(self, client: AsyncClamdClient):
        gate = asyncio.Event()

        async def stalled_sink(chunk: bytes) -> None:
            await gate.wait()

        duplex = client.pass_through(stalled_sink, max_pending=1)
        await duplex.write(b"first")
        await duplex.write(b"second")
        blocked = asyncio.ensure_future(duplex.write(b"third"))
        await asyncio.sleep(0.05)
        assert not blocked.done()
        await duplex.aclose()
        with pytest.raises(SessionClosedError):
            await asyncio.wait_for(blocked, 1)

    async def test_reader_sees_end_of_stream(self, client: AsyncClamdClient):
        duplex = client.pass_through()
        reading = asyncio.ensure_future(duplex.read())
        await asyncio.sleep(0.05)
        await duplex.aclose()
        assert await asyncio.wait_for(reading, 1) == b""
        assert await duplex.read() == b""

    async def test_close_twice(self, client: AsyncClamdClient):
        duplex = client.pass_through(ListSink())
        await duplex.write(b"data")
        await duplex.cancel()
        await duplex.aclose()
        assert (await duplex.verdict()).error_kind == "Cancelled"

    async def test_close_inside_context(self, client: AsyncClamdClient):
        async with client.pass_through(ListSink()) as duplex:
            await duplex.write(b"data")
            await duplex.aclose()
        assert (await duplex.verdict()).is_error

    async def test_close_before_start(self, client: AsyncClamdClient):
        duplex = client.pass_through(ListSink())
        await duplex.aclose()
        assert (await duplex.verdict()).error_kind == "Cancelled"
        with pytest.raises(SessionClosedError):
            await duplex.write(b"data")
