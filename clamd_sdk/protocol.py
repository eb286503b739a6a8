"""clamd INSTREAM wire format: frame encoding and reply parsing.

The stream is framed as::

    zINSTREAM\\0 | <u32 BE len><payload> ... | <u32 BE 0>

and clamd answers with a single NUL- or newline-terminated line such as
``stream: OK`` or ``stream: Eicar-Test-Signature FOUND``.
"""

from __future__ import annotations

import io
import re
import struct
from collections.abc import Iterable, Iterator
from typing import BinaryIO, Union

from clamd_sdk.exceptions import (
    ChunkTooLargeError,
    ClamdProtocolError,
    ClamdTimeoutError,
    EmptyResponseError,
    SizeLimitExceededError,
)
from clamd_sdk.models import Verdict

HEADER = b"zINSTREAM\0"
TERMINATOR = b"\0\0\0\0"
MAX_CHUNK_SIZE = 2**32 - 1
DEFAULT_CHUNK_SIZE = 64 * 1024

_LENGTH = struct.Struct("!L")
_FOUND_RE = re.compile(r"^.*?:\s+(?P<name>.+?)\s+FOUND$", re.IGNORECASE)
_OK_RE = re.compile(r"^.*?:\s+OK$", re.IGNORECASE)
_LINE_SPLIT_RE = re.compile(r"[\0\r\n]+")

ChunkSource = Union[bytes, bytearray, memoryview, BinaryIO, Iterable[bytes]]


def encode_header() -> bytes:
    return HEADER


def encode_chunk(chunk: bytes) -> list[bytes]:
    """Encode *chunk* as one length-prefixed data frame.

    A zero-length chunk still yields a data frame (``b"\\0\\0\\0\\0"``); the
    caller must not mistake it for the terminator's position in the stream.

    Raises:
        ChunkTooLargeError: If the chunk length does not fit in 32 bits.
    """
    size = len(chunk)
    if size > MAX_CHUNK_SIZE:
        raise ChunkTooLargeError(f"Chunk of {size} bytes exceeds the {MAX_CHUNK_SIZE}-byte frame limit")
    return [_LENGTH.pack(size) + bytes(chunk)]


def encode_terminator() -> bytes:
    return TERMINATOR


def encode_command(name: str) -> bytes:
    """Frame a null-terminated (``z``-prefixed) clamd command."""
    return b"z" + name.encode("ascii") + b"\0"


def iter_chunks(data: ChunkSource, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Yield *data* in pieces of at most *chunk_size* bytes.

    *data* may be a bytes-like object, a readable binary file object, or an
    iterable of byte chunks (which are passed through unchanged).
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = io.BytesIO(bytes(data))
    if hasattr(data, "read"):
        stream: BinaryIO = data  # type: ignore[assignment]
        while True:
            piece = stream.read(chunk_size)
            if not piece:
                return
            yield piece
    else:
        yield from data  # type: ignore[misc]


def parse_response(raw: bytes) -> Verdict:
    """Turn a clamd INSTREAM reply into a :class:`Verdict`.

    Every ``<label>: <name> FOUND`` line contributes a signature name; a reply
    made only of ``<label>: OK`` lines is clean. Unknown shapes are
    inconclusive rather than errors.

    Raises:
        ClamdProtocolError: If *raw* is not valid UTF-8 text.
    """
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ClamdProtocolError(f"Undecodable reply from clamd: {raw[:64]!r}") from exc

    lines = [line.strip() for line in _LINE_SPLIT_RE.split(text) if line.strip()]
    reply = "\n".join(lines)
    if not lines:
        return Verdict.from_exception(EmptyResponseError("clamd closed the connection without a reply"))

    names = [m.group("name") for m in map(_FOUND_RE.match, lines) if m]
    if names:
        return Verdict.infected(names, raw=reply)
    if all(_OK_RE.match(line) for line in lines):
        return Verdict.clean(raw=reply)

    lowered = reply.lower()
    if "size limit exceeded" in lowered:
        return Verdict.error(SizeLimitExceededError.kind, reply, raw=reply)
    if lowered == "command read timed out":
        return Verdict.error(ClamdTimeoutError.kind, reply, raw=reply)
    return Verdict.inconclusive(raw=reply)
