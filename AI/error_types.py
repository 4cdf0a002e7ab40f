"""
Relay Error Types - Structured Error Handling

Every stage of the relay raises one of these exceptions. Each stage resolves
its own class of error locally (synthesized answer, recovery retry, fallback
send) or narrows it before the pipeline routes the message to its failed state.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class InvalidInput(RelayError):
    """Missing identifiers or text in an inbound message. Dropped without reply."""


class InvalidIdentifier(InvalidInput):
    """A user identifier is missing or is not the expected numeric type."""


class RateLimited(RelayError):
    """The sender exceeded the admission window."""


class UpstreamError(RelayError):
    """
    The AI backend returned a non-success answer or could not be reached.

    Attributes:
        status: HTTP status of the backend answer, None for network failures
        transient: Whether retrying the same request can succeed
    """

    def __init__(self, message: str, status: Optional[int] = None, transient: bool = True):
        super().__init__(message)
        self.status = status
        self.transient = transient


class UpstreamTimeout(UpstreamError):
    """The AI backend did not answer before the deadline. Never retried."""

    def __init__(self, message: str = "AI backend timed out"):
        super().__init__(message, status=None, transient=False)


class DeliveryError(RelayError):
    """
    A chat platform call failed.

    Attributes:
        method: Bot API method that failed
        code: Error code reported by the platform, None for network failures
        description: Description reported by the platform
        retryable: Whether repeating the identical call can succeed
    """

    def __init__(
        self,
        message: str,
        method: str = "",
        code: Optional[int] = None,
        description: str = "",
        retryable: bool = False
    ):
        super().__init__(message)
        self.method = method
        self.code = code
        self.description = description
        self.retryable = retryable


class DeliveryMarkupError(DeliveryError):
    """The platform rejected the rich markup of the message."""


class DeliveryReferenceStaleError(DeliveryError):
    """The message being replied to no longer exists."""


class DeliveryFatal(DeliveryError):
    """The platform refused the call and no recovery applies."""


class DeliveryFailed(RelayError):
    """Every delivery branch, including the fixed fallback message, failed."""
