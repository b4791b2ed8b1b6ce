"""Stream module for the pending transaction websocket feed."""

from .client import (
    SUBSCRIBE_REQUEST,
    StreamListener,
    TransactionFeed,
    TransactionStream,
)
from .config import (
    AccountCredentials,
    AuthMode,
    ClientCertificate,
    StreamConfig,
)
from .dedup import DedupFilter

__all__ = [
    "SUBSCRIBE_REQUEST",
    "StreamListener",
    "TransactionFeed",
    "TransactionStream",
    "AccountCredentials",
    "AuthMode",
    "ClientCertificate",
    "StreamConfig",
    "DedupFilter",
]
