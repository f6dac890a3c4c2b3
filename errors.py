"""Error taxonomy for the proxy.

Recoverable errors are rendered as a normal ``done: true`` frame with HTTP 200,
because many Ollama clients treat any non-200 status as fatal. Fatal errors
surface as plain-text HTTP errors.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for all proxy errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RecoverableProxyError(ProxyError):
    """Failure reported to the client as an advisory frame."""


class BlockedBySpamGuard(RecoverableProxyError):
    """Automated meta-request (title/next-question prediction) rejected before forwarding."""


class TooLong(RecoverableProxyError):
    """Prompt exceeds the route's character limit and was not trimmed."""

    def __init__(self, message: str, limit: int, actual: int) -> None:
        super().__init__(message)
        self.limit = limit
        self.actual = actual


class UpstreamBlocked(RecoverableProxyError):
    """Upstream answered with an HTML (challenge/block) page."""


class RateLimited(RecoverableProxyError):
    """Upstream answered 429 or with its rate-limit marker."""


class FatalProxyError(ProxyError):
    """Failure that surfaces as an HTTP error status."""

    status_code = 500


class MalformedRequest(FatalProxyError):
    status_code = 400

    def __init__(self, message: str = "invalid json") -> None:
        super().__init__(message)


class UpstreamUnavailable(FatalProxyError):
    """Transport failure or timeout talking to the upstream."""

    def __init__(self, message: str = "[ERROR] forwarding request...") -> None:
        super().__init__(message)


class UpstreamSchemaViolation(FatalProxyError):
    """Upstream body did not match the shape expected for the route."""
