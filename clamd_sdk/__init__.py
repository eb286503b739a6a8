"""clamd SDK — Python client for clamd's streaming (INSTREAM) scan protocol."""

from clamd_sdk.client import ClamdClient
from clamd_sdk.coordinator import ScanCoordinator, SessionState
from clamd_sdk.exceptions import (
    ChunkTooLargeError,
    ClamdConnectionError,
    ClamdError,
    ClamdProtocolError,
    ClamdTimeoutError,
    ClamdWriteError,
    EmptyResponseError,
    InvalidStateError,
    SessionClosedError,
    SizeLimitExceededError,
)
from clamd_sdk.models import BackendDescriptor, TransportKind, Verdict, VerdictStatus, VersionInfo
from clamd_sdk.transport import TransportSession

__all__ = [
    "ClamdClient",
    "AsyncClamdClient",
    "PassThrough",
    "ScanCoordinator",
    "SessionState",
    "TransportSession",
    "BackendDescriptor",
    "TransportKind",
    "Verdict",
    "VerdictStatus",
    "VersionInfo",
    "ClamdError",
    "ClamdConnectionError",
    "ClamdWriteError",
    "ClamdTimeoutError",
    "ClamdProtocolError",
    "ChunkTooLargeError",
    "EmptyResponseError",
    "SizeLimitExceededError",
    "InvalidStateError",
    "SessionClosedError",
]


def __getattr__(name: str) -> object:
    """Lazy-import the asyncio client and pass-through."""
    if name == "AsyncClamdClient":
        from clamd_sdk.async_client import AsyncClamdClient

        return AsyncClamdClient
    if name == "PassThrough":
        from clamd_sdk.passthrough import PassThrough

        return PassThrough
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
