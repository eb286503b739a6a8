"""Synchronous client for a clamd daemon (Unix socket or TCP)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from clamd_sdk.coordinator import ScanCoordinator
from clamd_sdk.exceptions import ClamdError, ClamdProtocolError, error_for_kind
from clamd_sdk.models import BackendDescriptor, Verdict, VerdictStatus, VersionInfo
from clamd_sdk.protocol import DEFAULT_CHUNK_SIZE, ChunkSource, iter_chunks
from clamd_sdk.transport import TransportSession

logger = logging.getLogger(__name__)


class ClamdClient:
    """Synchronous client for clamd's INSTREAM scanning.

    Args:
        descriptor: Where to reach clamd. Defaults to
            :meth:`BackendDescriptor.from_env`.
        chunk_size: Size of each data frame sent to the daemon, in bytes.

    Example::

        client = ClamdClient(BackendDescriptor.tcp("localhost", 3310))
        verdict = client.scan_file("/tmp/sample.txt")
        print(verdict.status, verdict.names)
    """

    def __init__(
        self,
        descriptor: BackendDescriptor | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._descriptor = descriptor or BackendDescriptor.from_env()
        self._chunk_size = chunk_size

    @property
    def descriptor(self) -> BackendDescriptor:
        return self._descriptor

    def ping(self) -> bool:
        """Check that clamd answers ``PING`` with ``PONG``.

        Raises:
            ClamdConnectionError: If the daemon is unreachable.
            ClamdProtocolError: If the reply is not ``PONG``.
        """
        reply = self._command("PING")
        if reply.strip() != "PONG":
            raise ClamdProtocolError(f"Unexpected reply to PING: {reply!r}")
        return True

    def version(self) -> VersionInfo:
        """Retrieve the engine and signature database versions."""
        return VersionInfo.parse(self._command("VERSION"))

    def open_session(self) -> ScanCoordinator:
        """Connect and return a started coordinator for caller-driven feeding.

        Raises:
            ClamdConnectionError: If the daemon is unreachable.
            ClamdWriteError: If the stream header cannot be sent.
        """
        session = TransportSession.open(self._descriptor)
        coordinator = ScanCoordinator(session, size_limit=self._descriptor.size_limit)
        try:
            coordinator.start()
        except BaseException:
            session.close()
            raise
        return coordinator

    def scan_stream(self, data: ChunkSource) -> Verdict:
        """Stream *data* to clamd and return the verdict.

        Transport and protocol failures are returned as ``ERROR`` verdicts;
        this method only raises for programming errors.

        Args:
            data: Raw bytes, a readable binary stream, or an iterable of chunks.
        """
        logger.debug("Scanning stream via clamd at %s", self._descriptor.describe())
        try:
            coordinator = self.open_session()
        except ClamdError as exc:
            return Verdict.from_exception(exc)

        with coordinator:
            try:
                for chunk in iter_chunks(data, self._chunk_size):
                    coordinator.feed(chunk)
            except ClamdError:
                return coordinator.verdict  # type: ignore[return-value]
            return coordinator.finish()

    scan = scan_stream

    def scan_bytes(self, data: bytes) -> Verdict:
        return self.scan_stream(data)

    def scan_file(self, file_path: Union[str, Path]) -> Verdict:
        """Stream a file on disk to clamd.

        Raises:
            FileNotFoundError: If *file_path* does not exist.
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        with open(path, "rb") as fh:
            return self.scan_stream(fh)

    def is_infected(self, data: ChunkSource) -> bool | None:
        """Return ``True``/``False``, or ``None`` when clamd was inconclusive.

        Raises:
            ClamdError: The failure behind an ``ERROR`` verdict.
        """
        return _infection_flag(self.scan_stream(data))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _command(self, name: str) -> str:
        with TransportSession.open(self._descriptor) as session:
            return session.command(name)


def _infection_flag(verdict: Verdict) -> bool | None:
    if verdict.status is VerdictStatus.ERROR:
        raise error_for_kind(verdict.error_kind, verdict.detail)
    if verdict.status is VerdictStatus.INCONCLUSIVE:
        return None
    return verdict.is_infected
