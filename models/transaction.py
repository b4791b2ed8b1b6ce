"""Transaction record delivered by the feed."""

from typing import Any, Dict, Optional, Tuple

import msgpack
from pydantic import BaseModel, ConfigDict, Field

from core.errors import TransactionValidationError

# (attribute, wire name) in the order they are checked
REQUIRED_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("hash", "hash"),
    ("from_address", "from"),
    ("to", "to"),
    ("gas", "gas"),
    ("gas_price", "gasPrice"),
    ("nonce", "nonce"),
)


class Transaction(BaseModel):
    """
    A pending transaction as carried in ``txContents``.

    All values are hex strings exactly as the feed sends them. ``value`` and
    ``input`` are not required: the feed omits them for some transactions and
    a record without them is still forwarded.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    hash: Optional[str] = None
    from_address: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    gas: Optional[str] = None
    gas_price: Optional[str] = Field(default=None, alias="gasPrice")
    input: Optional[str] = None
    value: Optional[str] = None
    nonce: Optional[str] = None

    def missing_field(self) -> Optional[str]:
        """Wire name of the first unset required field, or None if complete."""
        for attr, wire_name in REQUIRED_FIELDS:
            if not getattr(self, attr):
                return wire_name
        return None

    def check(self) -> None:
        """Raise TransactionValidationError if a required field is unset."""
        field = self.missing_field()
        if field is not None:
            raise TransactionValidationError(field)

    def is_valid(self) -> bool:
        return self.missing_field() is None

    def to_dict(self) -> Dict[str, Any]:
        """Wire-named dict."""
        return self.model_dump(by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def to_msgpack(self) -> bytes:
        """Serialize to msgpack for storage."""
        return msgpack.packb(self.to_dict())

    @classmethod
    def from_msgpack(cls, data: bytes) -> "Transaction":
        """Deserialize from msgpack."""
        return cls.model_validate(msgpack.unpackb(data))
