"""Error types for the transaction stream."""

from typing import Optional


class StreamError(Exception):
    """Base class for all transaction stream errors."""


class ConfigurationError(StreamError):
    """
    Invalid stream configuration.

    Raised before any connection attempt and never retried.
    """


class TransportError(StreamError):
    """Dialing the feed or reading from an open connection failed."""


class SubscriptionError(StreamError):
    """The subscribe handshake failed or was rejected by the feed."""


class DecodeError(StreamError):
    """An inbound message could not be decoded into an envelope."""


class MissingTransactionError(StreamError):
    """An envelope arrived without a nested transaction."""


class TransactionValidationError(StreamError):
    """A decoded transaction is missing a required field."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"tx validation failed: {field} is unset")
