"""Transport layer talking to the remote agent service."""

from .base import AgentTransport, check_page_bounds
from .errors import (
    AuthenticationError,
    FatalTransportError,
    RateLimitedError,
    TransientTransportError,
    TransportError,
    classify_exception,
    classify_status,
    describe_failure,
)
from .http import HttpAgentTransport

__all__ = [
    "AgentTransport",
    "AuthenticationError",
    "FatalTransportError",
    "HttpAgentTransport",
    "RateLimitedError",
    "TransientTransportError",
    "TransportError",
    "check_page_bounds",
    "classify_exception",
    "classify_status",
    "describe_failure",
]
