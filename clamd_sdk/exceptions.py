"""Exception hierarchy for the clamd SDK."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from clamd_sdk.models import Verdict


class ClamdError(Exception):
    """Base exception for all clamd SDK errors.

    Attributes:
        kind: Stable name of the failure, echoed in ``Verdict.error_kind``.
        verdict: The daemon's own verdict when it replied before the
            connection failed, otherwise *None*.
    """

    kind = "Error"
    verdict: Verdict | None = None


class ClamdConnectionError(ClamdError):
    """Raised when the SDK cannot reach the clamd daemon.

    Covers refused connections, missing socket files and connect timeouts.
    """

    kind = "ConnectionError"


class ClamdWriteError(ClamdError):
    """Raised when the transport fails mid-stream (broken pipe, reset)."""

    kind = "WriteError"


class ClamdTimeoutError(ClamdError):
    """Raised when waiting for the daemon's verdict exceeds the read timeout."""

    kind = "TimeoutError"


class ClamdProtocolError(ClamdError):
    """Raised when the daemon answers with bytes that cannot be interpreted."""

    kind = "ProtocolError"


class ChunkTooLargeError(ClamdProtocolError):
    """Raised when a chunk cannot be described by a 32-bit length prefix."""

    kind = "ChunkTooLarge"


class EmptyResponseError(ClamdProtocolError):
    """Raised when the daemon closed the connection without a reply."""

    kind = "EmptyResponse"


class SizeLimitExceededError(ClamdError):
    """Raised when a stream grows past the configured size limit.

    Also used when clamd itself reports ``INSTREAM size limit exceeded``.
    """

    kind = "SizeLimitExceeded"


class InvalidStateError(ClamdError):
    """Raised when a scan session is driven out of order."""

    kind = "InvalidState"


class SessionClosedError(InvalidStateError):
    """Raised for any operation on a session that has already resolved."""

    kind = "SessionClosed"


_BY_KIND: dict[str, type[ClamdError]] = {
    cls.kind: cls
    for cls in (
        ClamdError,
        ClamdConnectionError,
        ClamdWriteError,
        ClamdTimeoutError,
        ClamdProtocolError,
        ChunkTooLargeError,
        EmptyResponseError,
        SizeLimitExceededError,
        InvalidStateError,
        SessionClosedError,
    )
}


def error_for_kind(kind: str, detail: str = "") -> ClamdError:
    """Build the exception matching *kind*, falling back to :class:`ClamdError`."""
    return _BY_KIND.get(kind, ClamdError)(detail)
