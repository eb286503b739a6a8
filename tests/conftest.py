"""Shared test fixtures."""

from __future__ import annotations

import os
import socket
import socketserver
import struct
import tempfile
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field

import pytest

from clamd_sdk.models import BackendDescriptor


@pytest.fixture()
def sample_bytes() -> bytes:
    return b"Hello, ClamAV!"


@pytest.fixture()
def eicar_bytes() -> bytes:
    """EICAR anti-malware test string (safe; every AV recognises it)."""
    return b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


def decode_frames(stream: bytes) -> list[bytes]:
    """Reference decoder for a complete INSTREAM byte stream.

    The last length-0 frame of the stream is the terminator; any earlier
    length-0 frame is a genuine empty chunk.
    """
    assert stream.startswith(b"zINSTREAM\0")
    assert stream.endswith(b"\0\0\0\0")
    body = stream[len(b"zINSTREAM\0") : -4]
    chunks = []
    pos = 0
    while pos < len(body):
        (size,) = struct.unpack("!L", body[pos : pos + 4])
        chunks.append(body[pos + 4 : pos + 4 + size])
        pos += 4 + size
    assert pos == len(body)
    return chunks


# ------------------------------------------------------------------ #
# Fake clamd daemon
# ------------------------------------------------------------------ #


@dataclass
class FakeClamd:
    """Scripted clamd stand-in recording what each connection sent."""

    reply: bytes = b"stream: OK\0"
    version_reply: bytes = b"ClamAV 1.3.0/27099/Mon Oct 16 08:00:00 2023\0"
    hang: bool = False
    # Answer with ``reply`` and hang up after this many data frames, as clamd
    # does once a stream passes its StreamMaxLength.
    reject_after: int | None = None
    requests: list[tuple[bytes, bytes]] = field(default_factory=list)
    release: threading.Event = field(default_factory=threading.Event)
    handled: threading.Event = field(default_factory=threading.Event)
    descriptor: BackendDescriptor | None = None

    @property
    def payload(self) -> bytes:
        """Chunk bytes of the last INSTREAM request, without framing."""
        command, frames = self.requests[-1]
        assert command == b"zINSTREAM"
        data = bytearray()
        pos = 0
        while pos + 4 <= len(frames):
            (size,) = struct.unpack("!L", frames[pos : pos + 4])
            data += frames[pos + 4 : pos + 4 + size]
            pos += 4 + size
        return bytes(data)


def _recv_exact(sock: socket.socket, size: int) -> bytes | None:
    buf = bytearray()
    while len(buf) < size:
        piece = sock.recv(size - len(buf))
        if not piece:
            return None
        buf += piece
    return bytes(buf)


class _Handler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        fake: FakeClamd = self.server.fake  # type: ignore[attr-defined]
        sock = self.request
        command = bytearray()
        try:
            while not command.endswith(b"\0"):
                piece = sock.recv(1)
                if not piece:
                    return
                command += piece
            name = bytes(command[:-1])
            frames = bytearray()
            data_frames = 0
            if name == b"zINSTREAM":
                while True:
                    header = _recv_exact(sock, 4)
                    if header is None:
                        break
                    frames += header
                    (size,) = struct.unpack("!L", header)
                    if size == 0:
                        break
                    payload = _recv_exact(sock, size)
                    if payload is None:
                        break
                    frames += payload
                    data_frames += 1
                    if fake.reject_after is not None and data_frames >= fake.reject_after:
                        break
            fake.requests.append((name, bytes(frames)))
            if fake.reject_after is not None and data_frames >= fake.reject_after:
                sock.sendall(fake.reply)
                time.sleep(0.05)
                return
            if fake.hang:
                fake.release.wait(5)
                return
            if name == b"zPING":
                sock.sendall(b"PONG\0")
            elif name == b"zVERSION":
                sock.sendall(fake.version_reply)
            else:
                sock.sendall(fake.reply)
        except OSError:
            pass
        finally:
            fake.handled.set()


class _TCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class _UnixServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True


def _serve(server: socketserver.BaseServer, fake: FakeClamd) -> Iterator[FakeClamd]:
    server.fake = fake  # type: ignore[attr-defined]
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield fake
    finally:
        fake.release.set()
        server.shutdown()
        server.server_close()
        thread.join(5)


@pytest.fixture()
def clamd_tcp() -> Iterator[FakeClamd]:
    """A fake clamd listening on an ephemeral localhost TCP port."""
    server = _TCPServer(("127.0.0.1", 0), _Handler)
    host, port = server.server_address[:2]
    fake = FakeClamd(descriptor=BackendDescriptor.tcp(host, port, connect_timeout=2, read_timeout=5))
    yield from _serve(server, fake)


@pytest.fixture()
def clamd_unix() -> Iterator[FakeClamd]:
    """A fake clamd listening on a Unix socket."""
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "clamd.sock")
        server = _UnixServer(path, _Handler)
        fake = FakeClamd(descriptor=BackendDescriptor.unix(path, connect_timeout=2, read_timeout=5))
        yield from _serve(server, fake)


@pytest.fixture()
def closed_port() -> int:
    """A localhost TCP port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture()
def frame_decoder():
    return decode_frames
