"""Data models for txstream."""

from .transaction import (
    REQUIRED_FIELDS,
    Transaction,
)
from .envelope import (
    Envelope,
    Params,
    Result,
    decode_envelope,
)

__all__ = [
    "REQUIRED_FIELDS",
    "Transaction",
    "Envelope",
    "Params",
    "Result",
    "decode_envelope",
]
