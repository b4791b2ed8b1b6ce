"""Core building blocks shared by the stream client."""

from .backoff import Backoff
from .errors import (
    ConfigurationError,
    DecodeError,
    MissingTransactionError,
    StreamError,
    SubscriptionError,
    TransactionValidationError,
    TransportError,
)
from .ttl_cache import TTLCache

__all__ = [
    "Backoff",
    "ConfigurationError",
    "DecodeError",
    "MissingTransactionError",
    "StreamError",
    "SubscriptionError",
    "TransactionValidationError",
    "TransportError",
    "TTLCache",
]
