"""Exception hierarchy for the spanlog SDK."""

from typing import Optional


class SpanLogError(Exception):
    """Base exception for all spanlog errors."""
    pass


class InvalidStateError(SpanLogError):
    """Instrumentation calls were made in an order that breaks the span tree.

    Raised for adding a span with no open trace, starting a second trace while
    one is open, concluding with nothing open, or popping a nested span off an
    otherwise empty stack.
    """
    pass


class TransportError(SpanLogError):
    """Hand-off to the collection service failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
