"""Data models for clamd SDK requests and verdicts."""

from __future__ import annotations

import enum
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Union

from clamd_sdk.exceptions import ClamdError

DEFAULT_PORT = 3310
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 60.0


class VerdictStatus(str, enum.Enum):
    """Outcome of one scan session."""

    CLEAN = "clean"
    INFECTED = "infected"
    INCONCLUSIVE = "inconclusive"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Verdict:
    """Result of a stream scan.

    Exactly one verdict is produced per scan session. A detected infection is
    a successful scan; only transport and protocol faults produce ``ERROR``.

    Attributes:
        status: The :class:`VerdictStatus` of the scan.
        names: Detected signature names, in the order clamd reported them.
            Non-empty for ``INFECTED``, empty otherwise.
        error_kind: Name of the failure for ``ERROR`` verdicts
            (``"ConnectionError"``, ``"SizeLimitExceeded"``, ...).
        detail: Human-readable description of the failure.
        raw: The daemon's reply text, when one was received.
    """

    status: VerdictStatus
    names: tuple[str, ...] = ()
    error_kind: str = ""
    detail: str = ""
    raw: str = ""

    @classmethod
    def clean(cls, raw: str = "") -> Verdict:
        return cls(VerdictStatus.CLEAN, raw=raw)

    @classmethod
    def infected(cls, names: Sequence[str], raw: str = "") -> Verdict:
        if not names:
            raise ValueError("an infected verdict needs at least one signature name")
        return cls(VerdictStatus.INFECTED, names=tuple(names), raw=raw)

    @classmethod
    def inconclusive(cls, raw: str = "") -> Verdict:
        return cls(VerdictStatus.INCONCLUSIVE, raw=raw)

    @classmethod
    def error(cls, kind: str, detail: str = "", raw: str = "") -> Verdict:
        return cls(VerdictStatus.ERROR, error_kind=kind, detail=detail, raw=raw)

    @classmethod
    def from_exception(cls, exc: BaseException) -> Verdict:
        """Map an exception raised during a scan to an ``ERROR`` verdict."""
        kind = exc.kind if isinstance(exc, ClamdError) else type(exc).__name__
        return cls.error(kind, str(exc))

    @property
    def is_clean(self) -> bool:
        return self.status is VerdictStatus.CLEAN

    @property
    def is_infected(self) -> bool:
        return self.status is VerdictStatus.INFECTED

    @property
    def is_error(self) -> bool:
        return self.status is VerdictStatus.ERROR


class TransportKind(str, enum.Enum):
    SOCKET = "socket"
    TCP = "tcp"


Address = Union[str, tuple[str, int]]


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    """Where and how to reach a clamd daemon.

    Attributes:
        transport: Unix socket or TCP.
        address: Socket path for ``SOCKET``, ``(host, port)`` for ``TCP``.
        connect_timeout: Seconds allowed to establish the connection.
        read_timeout: Seconds allowed for each write and for the verdict.
        size_limit: Optional cap, in bytes, on the data streamed per scan.
    """

    transport: TransportKind
    address: Address
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    size_limit: int | None = None

    @classmethod
    def unix(cls, path: str, **kwargs: float | int | None) -> BackendDescriptor:
        return cls(TransportKind.SOCKET, path, **kwargs)  # type: ignore[arg-type]

    @classmethod
    def tcp(cls, host: str = "localhost", port: int = DEFAULT_PORT, **kwargs: float | int | None) -> BackendDescriptor:
        return cls(TransportKind.TCP, (host, port), **kwargs)  # type: ignore[arg-type]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BackendDescriptor:
        """Build a descriptor from ``CLAMD_*`` environment variables.

        ``CLAMD_SOCKET`` selects a Unix socket and wins over
        ``CLAMD_HOST``/``CLAMD_PORT``. ``CLAMD_CONNECT_TIMEOUT``,
        ``CLAMD_TIMEOUT`` and ``CLAMD_SIZE_LIMIT`` tune the connection.

        Raises:
            ValueError: If a numeric variable cannot be parsed.
        """
        env = os.environ if environ is None else environ
        size_limit = env.get("CLAMD_SIZE_LIMIT")
        options = {
            "connect_timeout": float(env.get("CLAMD_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT)),
            "read_timeout": float(env.get("CLAMD_TIMEOUT", DEFAULT_READ_TIMEOUT)),
            "size_limit": int(size_limit) if size_limit else None,
        }
        socket_path = env.get("CLAMD_SOCKET")
        if socket_path:
            return cls.unix(socket_path, **options)
        return cls.tcp(
            env.get("CLAMD_HOST", "localhost"),
            int(env.get("CLAMD_PORT", DEFAULT_PORT)),
            **options,
        )

    def describe(self) -> str:
        if self.transport is TransportKind.SOCKET:
            return f"unix:{self.address}"
        host, port = self.address
        return f"{host}:{port}"


@dataclass(frozen=True, slots=True)
class VersionInfo:
    """Build metadata reported by clamd's ``VERSION`` command.

    Attributes:
        engine: Engine version string (e.g. ``"ClamAV 1.3.0"``).
        database: Signature database version, or empty when not loaded.
        database_date: Publication date of the database, or empty.
    """

    engine: str
    database: str = ""
    database_date: str = ""

    @classmethod
    def parse(cls, reply: str) -> VersionInfo:
        parts = reply.strip().split("/", 2)
        parts += [""] * (3 - len(parts))
        return cls(engine=parts[0], database=parts[1], database_date=parts[2])
