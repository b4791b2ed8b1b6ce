"""JSON-RPC notification envelope wrapping one transaction.

Example notification::

    {"jsonrpc": "2.0", "id": null, "method": "subscribe",
     "params": {"subscription": "c294f047-ec21-43f2-b9da-13e867365f42",
                "result": {"txContents": {"hash": "0xeef7...", "from": "0x50d6...",
                                          "to": "0xd286...", "gas": "0x7a120",
                                          "gasPrice": "0x17bfac7c00", "nonce": "0xd0e2",
                                          "value": "0x0", "input": "0x202e...",
                                          "v": "0x25", "r": "0x33b2...", "s": "0x2628..."}}}}
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors import DecodeError, MissingTransactionError
from .transaction import Transaction


class Result(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    transaction: Optional[Transaction] = Field(default=None, alias="txContents")


class Params(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    subscription: Optional[str] = None
    result: Optional[Result] = None


class Envelope(BaseModel):
    """Outer notification. Only ``params.result.txContents`` is used downstream."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    version: Optional[str] = Field(default=None, alias="jsonrpc")
    id: Any = None
    method: Optional[str] = None
    params: Optional[Params] = None

    @property
    def subscription(self) -> Optional[str]:
        return self.params.subscription if self.params else None

    def unwrap(self) -> Transaction:
        """
        Return the nested transaction.

        Raises:
            MissingTransactionError: if any level of the nesting is absent
        """
        if self.params is None or self.params.result is None or self.params.result.transaction is None:
            raise MissingTransactionError("unexpected message format: no txContents in notification")
        return self.params.result.transaction


def decode_envelope(raw: Union[str, bytes]) -> Envelope:
    """
    Strictly decode one wire message.

    Raises:
        DecodeError: on invalid JSON, a non-object document, or a nesting
            level of the wrong type
    """
    try:
        return Envelope.model_validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"malformed notification: {e.error_count()} error(s), first: {e.errors()[0]['msg']}") from e
