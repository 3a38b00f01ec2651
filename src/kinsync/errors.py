"""Error taxonomy for provider access, identity resolution and operations.

- AuthenticationError: fatal, aborts the active operation
- ExtractionError: recorded per unit of work, traversal continues
- NetworkTransientError: retried with bounded backoff
- PermanentProviderError: 4xx style failures, never retried
- ConflictError: identity merge conflict, requires an explicit decision
- CancellationSignal: cooperative stop, not a failure
"""
from __future__ import annotations

import errno
import socket
from dataclasses import dataclass

import httpx
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

# Transport failures worth retrying: timeouts, resets, refused connections,
# name resolution failures, unreachable host/network, broken pipe.
TRANSIENT_ERRNOS: frozenset[int] = frozenset(
    {
        errno.ETIMEDOUT,
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.EPIPE,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)

TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

# Substrings Chromium/Playwright put in navigation error messages
TRANSIENT_NET_MARKERS: tuple[str, ...] = (
    "net::ERR_TIMED_OUT",
    "net::ERR_CONNECTION_RESET",
    "net::ERR_CONNECTION_REFUSED",
    "net::ERR_CONNECTION_CLOSED",
    "net::ERR_NAME_NOT_RESOLVED",
    "net::ERR_NAME_RESOLUTION_FAILED",
    "net::ERR_INTERNET_DISCONNECTED",
    "net::ERR_NETWORK_CHANGED",
    "net::ERR_ADDRESS_UNREACHABLE",
)


class KinsyncError(Exception):
    """Base class for kinsync errors."""


class AuthenticationError(KinsyncError):
    """The provider session is not authenticated and could not be restored."""

    reauth_required = True

    def __init__(self, provider: str, message: str | None = None) -> None:
        self.provider = provider
        super().__init__(message or f"Not authenticated with {provider}; please re-authenticate")


class ExtractionError(KinsyncError):
    """A page loaded but the expected data could not be extracted."""

    def __init__(self, external_id: str, message: str) -> None:
        self.external_id = external_id
        super().__init__(f"{external_id}: {message}")


class NetworkTransientError(KinsyncError):
    """Timeout, reset or other failure that may succeed when retried."""


class PermanentProviderError(KinsyncError):
    """Provider rejected the request in a way retrying will not fix."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass
class ConflictError(KinsyncError):
    """An external identity is already bound to a different canonical person."""

    source: str
    external_id: str
    existing_canonical_id: str
    requested_canonical_id: str
    existing_external_id: str | None = None

    def __str__(self) -> str:
        if self.existing_external_id is not None:
            return (
                f"{self.existing_canonical_id} already has {self.source} identity "
                f"{self.existing_external_id}, refusing to add {self.external_id}"
            )
        return (
            f"{self.source}:{self.external_id} is linked to {self.existing_canonical_id}, "
            f"refusing to relink to {self.requested_canonical_id}"
        )


class CancellationSignal(Exception):
    """Raised inside a job to unwind after a cooperative cancel request.

    Deliberately not a :class:`KinsyncError`.
    """

    def __init__(self, operation_id: str) -> None:
        self.operation_id = operation_id
        super().__init__(f"operation {operation_id} cancelled")


class OperationAlreadyRunning(KinsyncError):
    def __init__(self, active_id: str) -> None:
        self.active_id = active_id
        super().__init__(f"operation {active_id} is still running")


class InvalidTransition(KinsyncError):
    """Operation state change not permitted by the lifecycle."""


class CrawlHalted(KinsyncError):
    """A crawl stopped early after too many consecutive extraction failures."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        super().__init__(f"crawl halted after {failures} consecutive failures")


def classify_error(exc: BaseException) -> BaseException:
    """Map a low-level exception onto the taxonomy.

    Already-classified errors are returned unchanged. Anything unrecognised is
    returned as-is so the caller can decide.
    """
    if isinstance(exc, (KinsyncError, CancellationSignal)):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in TRANSIENT_STATUS_CODES:
            return NetworkTransientError(f"HTTP {status} from {exc.request.url}")
        return PermanentProviderError(f"HTTP {status} from {exc.request.url}", status)
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return NetworkTransientError(str(exc) or type(exc).__name__)

    if isinstance(exc, PlaywrightTimeoutError):
        return NetworkTransientError(str(exc).splitlines()[0] if str(exc) else "timeout")
    message = str(exc)
    if any(marker in message for marker in TRANSIENT_NET_MARKERS):
        return NetworkTransientError(message.splitlines()[0])

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return NetworkTransientError(message or type(exc).__name__)
    if isinstance(exc, socket.gaierror):
        return NetworkTransientError(f"name resolution failed: {message}")
    if isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS:
        return NetworkTransientError(message)

    return exc


def is_transient(exc: BaseException) -> bool:
    return isinstance(classify_error(exc), NetworkTransientError)


# Abort the whole operation; every other provider failure only fails its unit
FATAL_PROVIDER_ERRORS: tuple[type[KinsyncError], ...] = (AuthenticationError, PermanentProviderError)


def describe_failure(exc: BaseException) -> str:
    """Message recorded against a failed unit of work."""
    if isinstance(exc, KinsyncError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
