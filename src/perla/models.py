"""Domain models: sale records, conversation turns and normalization candidates."""

from dataclasses import dataclass, field, fields, replace
from typing import Any

DEFAULT_CLIENT = "Cliente"
DEFAULT_PAYMENT_METHOD = "Efectivo"

# Python attribute name -> wire (JSON) key used by the assistant and the stores
WIRE_KEYS = {
    "id": "id",
    "product": "product",
    "amount": "amount",
    "unit_price": "price",
    "total_price": "totalPrice",
    "client": "client",
    "payment_method": "paymentMethod",
    "date": "date",
    "normalized_product": "normalizedProduct",
    "normalized_client": "normalizedClient",
    "transaction_id": "transactionId",
}

# Fields the user can edit through the assistant
EDITABLE_FIELDS = (
    "product",
    "amount",
    "unit_price",
    "total_price",
    "client",
    "payment_method",
    "date",
)


@dataclass
class SaleRecord:
    """One commercial transaction line item."""

    id: str
    product: str
    amount: float
    unit_price: float
    total_price: float
    date: str
    client: str = DEFAULT_CLIENT
    payment_method: str = DEFAULT_PAYMENT_METHOD
    normalized_product: str | None = None
    normalized_client: str | None = None
    transaction_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the camelCase keys of the JSON contract."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            data[WIRE_KEYS[f.name]] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SaleRecord":
        """Build a record from an already well-formed wire dict."""
        kwargs = {
            attr: data[key] for attr, key in WIRE_KEYS.items() if data.get(key) is not None
        }
        return cls(**kwargs)

    def copy(self, **changes: Any) -> "SaleRecord":
        return replace(self, **changes)

    def summary(self) -> str:
        """One-line description used in prompts and chat output."""
        return (
            f"ID={self.id}, Product={self.product}, Amount={_fmt(self.amount)}, "
            f"Price={_fmt(self.unit_price)}, TotalPrice={_fmt(self.total_price)}, "
            f"Client={self.client or DEFAULT_CLIENT}"
        )


@dataclass
class ConversationTurn:
    """A message exchanged between the user and the assistant."""

    role: str  # "user" or "assistant"
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class EntityCandidate:
    """A proposed normalization of a freshly entered name to a known spelling."""

    field: str  # "product", "client" or "payment_method"
    value: str
    canonical: str
    similarity: float | None = None
    record_ids: list[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return {
            "product": "Producto",
            "client": "Cliente",
            "payment_method": "Método de pago",
        }.get(self.field, self.field)


def _fmt(value: float) -> str:
    """Render whole numbers without a trailing .0."""
    if float(value).is_integer():
        return str(int(value))
    return str(value)
