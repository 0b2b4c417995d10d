"""Structured transport failures and their classification."""

from __future__ import annotations

import email.utils
import time
from collections.abc import Iterator
from typing import Any, ClassVar

import httpx

__all__ = [
    "AuthenticationError",
    "FatalTransportError",
    "RateLimitedError",
    "TransientTransportError",
    "TransportError",
    "classify_exception",
    "classify_status",
    "describe_failure",
    "parse_retry_after",
]

_GENERIC_NETWORK_ERRORS: tuple[type[BaseException], ...] = (ConnectionError, TimeoutError)
_TRANSIENT_STATUS = frozenset({408, 425, 500, 502, 503, 504})


class TransportError(Exception):
    """Base class for failures reported by an agent transport."""

    retryable: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
        }


class AuthenticationError(TransportError):
    """The service rejected the configured credentials."""


class RateLimitedError(TransportError):
    """The service throttled the request; ``retry_after`` may hint a delay."""


class TransientTransportError(TransportError):
    """Network blip or server-side failure worth retrying."""

    retryable = True


class FatalTransportError(TransportError):
    """Any other failure; retrying will not help."""


# ----------------------------------------------------------------------
def parse_retry_after(value: str | None) -> float | None:
    """Return seconds encoded in a ``Retry-After`` header value."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        try:
            parsed = email.utils.parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
        if parsed is None:  # pragma: no cover - older interpreters
            return None
        seconds = parsed.timestamp() - time.time()
    return max(seconds, 0.0)


def classify_status(
    status_code: int,
    message: str | None = None,
    *,
    retry_after: float | None = None,
) -> TransportError:
    """Map an HTTP status code to the matching :class:`TransportError`."""
    text = message or f"HTTP {status_code}"
    if status_code in (401, 403):
        return AuthenticationError(text, status_code=status_code)
    if status_code == 429:
        return RateLimitedError(text, status_code=status_code, retry_after=retry_after)
    if status_code in _TRANSIENT_STATUS or status_code >= 500:
        return TransientTransportError(
            text, status_code=status_code, retry_after=retry_after
        )
    return FatalTransportError(text, status_code=status_code)


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify_exception(exc: BaseException) -> TransportError:
    """Convert arbitrary exceptions into the transport error taxonomy.

    Status errors raised by :mod:`httpx` are classified by their status code;
    connection, timeout and protocol errors are treated as transient.  Any
    other exception becomes :class:`FatalTransportError`.
    """
    for err in _exception_chain(exc):
        if isinstance(err, TransportError):
            return err
        if isinstance(err, httpx.HTTPStatusError):
            response = err.response
            return classify_status(
                response.status_code,
                str(err),
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if isinstance(err, (httpx.TransportError, httpx.StreamError)):
            return TransientTransportError(str(err) or type(err).__name__)
        if isinstance(err, _GENERIC_NETWORK_ERRORS):
            return TransientTransportError(str(err) or type(err).__name__)
    return FatalTransportError(str(exc) or type(exc).__name__)


def describe_failure(exc: BaseException) -> str:
    """Return a user-facing message with a suggested next action."""
    error = classify_exception(exc)
    if isinstance(error, AuthenticationError):
        return (
            "Bad credentials: the agent service rejected the API key. "
            "Check the key in your settings and reconnect."
        )
    if isinstance(error, RateLimitedError):
        if error.retry_after:
            wait = f"Wait about {int(round(error.retry_after))} seconds"
        else:
            wait = "Wait a moment"
        return f"Rate limited: the agent service is throttling requests. {wait} and send again."
    if isinstance(error, TransientTransportError):
        return (
            "Can't reach the agent service. "
            "Check your network connection and try again."
        )
    return f"Request failed: {error.message}. Try again or refresh the conversation."
