"""Scan session state machine on top of a transport session.

A coordinator drives exactly one INSTREAM scan::

    IDLE -> STREAMING -> FINALIZING -> AWAITING_VERDICT -> RESOLVED

and resolves it exactly once, either with the daemon's verdict or with an
``ERROR`` verdict describing the transport or protocol failure.
"""

from __future__ import annotations

import enum
import logging

from clamd_sdk.async_transport import AsyncTransportSession
from clamd_sdk.exceptions import (
    ClamdError,
    InvalidStateError,
    SessionClosedError,
    SizeLimitExceededError,
)
from clamd_sdk.models import Verdict
from clamd_sdk.protocol import encode_chunk, encode_header, encode_terminator
from clamd_sdk.transport import TransportSession

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    AWAITING_VERDICT = "awaiting-verdict"
    RESOLVED = "resolved"


class ScanState:
    """Mutable bookkeeping for one scan session.

    Shared by the blocking and asynchronous coordinators so both enforce the
    same ordering, size limit and resolve-once rules.
    """

    def __init__(self, size_limit: int | None = None) -> None:
        self.size_limit = size_limit
        self.state = SessionState.IDLE
        self.bytes_fed = 0
        self.verdict: Verdict | None = None

    @property
    def resolved(self) -> bool:
        return self.state is SessionState.RESOLVED

    def require(self, allowed: SessionState, action: str) -> None:
        if self.resolved:
            raise SessionClosedError(f"Cannot {action}: scan session already resolved")
        if self.state is not allowed:
            raise InvalidStateError(f"Cannot {action} while session is {self.state.value}")

    def advance(self, state: SessionState) -> None:
        logger.debug("Scan session %s -> %s", self.state.value, state.value)
        self.state = state

    def check_size(self, size: int) -> None:
        if self.size_limit is not None and self.bytes_fed + size > self.size_limit:
            raise SizeLimitExceededError(
                f"Stream exceeds size limit of {self.size_limit} bytes "
                f"({self.bytes_fed + size} bytes offered)"
            )

    def resolve(self, verdict: Verdict) -> Verdict:
        if self.resolved:
            raise InvalidStateError("Scan session resolved twice")
        self.verdict = verdict
        self.advance(SessionState.RESOLVED)
        if verdict.is_error:
            logger.warning("Scan session failed: %s (%s)", verdict.error_kind, verdict.detail)
        else:
            logger.debug("Scan session resolved: %s %s", verdict.status.value, list(verdict.names))
        return verdict


class ScanCoordinator:
    """Blocking scan coordinator.

    Args:
        session: An open transport session, exclusively owned from now on.
        size_limit: Optional cap on the total bytes fed.

    Example::

        coordinator = ScanCoordinator(TransportSession.open(descriptor))
        coordinator.start()
        for chunk in chunks:
            coordinator.feed(chunk)
        verdict = coordinator.finish()
    """

    def __init__(self, session: TransportSession, size_limit: int | None = None) -> None:
        self._session = session
        self._scan = ScanState(size_limit)

    @property
    def state(self) -> SessionState:
        return self._scan.state

    @property
    def verdict(self) -> Verdict | None:
        return self._scan.verdict

    @property
    def bytes_fed(self) -> int:
        return self._scan.bytes_fed

    def start(self) -> None:
        self._scan.require(SessionState.IDLE, "start")
        self._send(encode_header())
        self._scan.advance(SessionState.STREAMING)

    def feed(self, chunk: bytes) -> None:
        """Encode and send one chunk.

        Raises:
            SizeLimitExceededError: If the chunk would push the stream past
                the size limit; the session is abandoned without a terminator.
            ClamdError: On transport failure; the session is resolved first.
        """
        self._scan.require(SessionState.STREAMING, "feed")
        try:
            self._scan.check_size(len(chunk))
            frames = encode_chunk(chunk)
        except ClamdError as exc:
            self._fail(exc)
            raise
        for frame in frames:
            self._send(frame)
        self._scan.bytes_fed += len(chunk)

    def finish(self) -> Verdict:
        """Send the terminator and wait for the verdict.

        Transport failures at this point are returned as an ``ERROR`` verdict.
        """
        self._scan.require(SessionState.STREAMING, "finish")
        self._scan.advance(SessionState.FINALIZING)
        try:
            self._session.send(encode_terminator())
            self._scan.advance(SessionState.AWAITING_VERDICT)
            verdict = self._session.receive_verdict()
        except ClamdError as exc:
            verdict = _verdict_for(exc)
        finally:
            self._session.close()
        return self._scan.resolve(verdict)

    def abort(self, reason: BaseException | str = "Scan aborted") -> Verdict:
        """Close the transport and resolve with an error if still pending."""
        if self._scan.resolved:
            return self._scan.verdict  # type: ignore[return-value]
        self._session.close()
        if isinstance(reason, BaseException):
            return self._scan.resolve(Verdict.from_exception(reason))
        return self._scan.resolve(Verdict.error("Aborted", reason))

    def __enter__(self) -> ScanCoordinator:
        return self

    def __exit__(self, exc_type: object, exc: BaseException | None, tb: object) -> None:
        self.abort(exc if exc is not None else "Scan session left unfinished")

    def _send(self, frame: bytes) -> None:
        try:
            self._session.send(frame)
        except ClamdError as exc:
            self._fail(exc)
            raise

    def _fail(self, exc: ClamdError) -> None:
        self._session.close()
        self._scan.resolve(_verdict_for(exc))


class AsyncScanCoordinator:
    """Asynchronous scan coordinator; same contract as :class:`ScanCoordinator`."""

    def __init__(self, session: AsyncTransportSession, size_limit: int | None = None) -> None:
        self._session = session
        self._scan = ScanState(size_limit)

    @property
    def state(self) -> SessionState:
        return self._scan.state

    @property
    def verdict(self) -> Verdict | None:
        return self._scan.verdict

    @property
    def bytes_fed(self) -> int:
        return self._scan.bytes_fed

    async def start(self) -> None:
        self._scan.require(SessionState.IDLE, "start")
        await self._send(encode_header())
        self._scan.advance(SessionState.STREAMING)

    async def feed(self, chunk: bytes) -> None:
        self._scan.require(SessionState.STREAMING, "feed")
        try:
            self._scan.check_size(len(chunk))
            frames = encode_chunk(chunk)
        except ClamdError as exc:
            await self._fail(exc)
            raise
        for frame in frames:
            await self._send(frame)
        self._scan.bytes_fed += len(chunk)

    async def finish(self) -> Verdict:
        self._scan.require(SessionState.STREAMING, "finish")
        self._scan.advance(SessionState.FINALIZING)
        try:
            await self._session.send(encode_terminator())
            self._scan.advance(SessionState.AWAITING_VERDICT)
            verdict = await self._session.receive_verdict()
        except ClamdError as exc:
            verdict = _verdict_for(exc)
        finally:
            # Also reached when the waiting task is cancelled.
            await self._session.close()
        return self._scan.resolve(verdict)

    async def abort(self, reason: BaseException | str = "Scan aborted") -> Verdict:
        if self._scan.resolved:
            return self._scan.verdict  # type: ignore[return-value]
        await self._session.close()
        if isinstance(reason, BaseException):
            return self._scan.resolve(Verdict.from_exception(reason))
        return self._scan.resolve(Verdict.error("Aborted", reason))

    async def __aenter__(self) -> AsyncScanCoordinator:
        return self

    async def __aexit__(self, exc_type: object, exc: BaseException | None, tb: object) -> None:
        await self.abort(exc if exc is not None else "Scan session left unfinished")

    async def _send(self, frame: bytes) -> None:
        try:
            await self._session.send(frame)
        except ClamdError as exc:
            await self._fail(exc)
            raise

    async def _fail(self, exc: ClamdError) -> None:
        await self._session.close()
        self._scan.resolve(_verdict_for(exc))


def _verdict_for(exc: ClamdError) -> Verdict:
    return exc.verdict if exc.verdict is not None else Verdict.from_exception(exc)
