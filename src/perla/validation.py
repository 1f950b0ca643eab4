"""Validation of raw sale objects returned by the assistant."""

import math
import random
import string
import time
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any

import structlog

from perla.errors import ValidationError
from perla.models import DEFAULT_CLIENT, DEFAULT_PAYMENT_METHOD, SaleRecord

logger = structlog.get_logger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _generate_id(prefix: str) -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def generate_sale_id() -> str:
    """Opaque id: creation time in ms plus a random base36 suffix."""
    return _generate_id("sale")


def generate_transaction_id() -> str:
    """Groups the sales registered from one message."""
    return _generate_id("txn")


def today_iso() -> str:
    return date.today().isoformat()


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def coerce_number(value: Any, field: str) -> float:
    """Convert a JSON value to a finite float.

    Accepts ints, floats and numeric strings (a decimal comma is allowed).

    Raises:
        ValidationError: If the value is not numeric, NaN or infinite.
    """
    if isinstance(value, bool):
        raise ValidationError(
            ValidationError.INVALID_NUMBER, f"{field} is not a number", field=field
        )
    if isinstance(value, str):
        value = value.strip().replace("$", "")
        if "," in value and "." not in value:
            value = value.replace(",", ".")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            ValidationError.INVALID_NUMBER, f"{field} is not a number: {value!r}", field=field
        ) from exc
    if not math.isfinite(number):
        raise ValidationError(
            ValidationError.INVALID_NUMBER, f"{field} is not finite: {value!r}", field=field
        )
    return number


def coerce_amount(value: Any, field: str = "amount") -> float:
    """Like ``coerce_number``, but a sale quantity must also be positive."""
    amount = coerce_number(value, field)
    if amount <= 0:
        raise ValidationError(
            ValidationError.INVALID_NUMBER, f"{field} must be positive: {value!r}", field=field
        )
    return amount


def validate_sale(raw: Any) -> SaleRecord:
    """Turn a raw assistant sale object into a fully populated SaleRecord.

    Accepts ``name`` for ``product``, ``quantity`` for ``amount`` and
    ``unitPrice`` for ``price`` when the canonical key is absent. Fills in
    ``totalPrice``, ``id``, ``client``, ``paymentMethod`` and ``date``.
    The input mapping is never modified.

    Raises:
        ValidationError: With ``kind`` set to ``not_an_object``,
            ``missing_field`` or ``invalid_number`` (which also covers a zero or
            negative amount).
    """
    if not isinstance(raw, Mapping):
        raise ValidationError(
            ValidationError.NOT_AN_OBJECT, "Sale is not an object", raw=raw
        )

    data = dict(raw)
    if _is_blank(data.get("product")) and not _is_blank(data.get("name")):
        data["product"] = data["name"]
    if data.get("amount") is None and data.get("quantity") is not None:
        data["amount"] = data["quantity"]
    if data.get("price") is None and data.get("unitPrice") is not None:
        data["price"] = data["unitPrice"]

    for required in ("product", "amount", "price"):
        if _is_blank(data.get(required)):
            raise ValidationError(
                ValidationError.MISSING_FIELD,
                f"Sale is missing required field {required!r}",
                field=required,
                raw=raw,
            )

    try:
        amount = coerce_amount(data["amount"])
        unit_price = coerce_number(data["price"], "price")
        if data.get("totalPrice") is not None:
            total_price = coerce_number(data["totalPrice"], "totalPrice")
        else:
            total_price = amount * unit_price
    except ValidationError as exc:
        exc.raw = raw
        raise

    return SaleRecord(
        id=str(data.get("id") or generate_sale_id()),
        product=str(data["product"]).strip(),
        amount=amount,
        unit_price=unit_price,
        total_price=total_price,
        client=str(data.get("client") or DEFAULT_CLIENT),
        payment_method=str(data.get("paymentMethod") or DEFAULT_PAYMENT_METHOD),
        date=str(data.get("date") or today_iso()),
        normalized_product=data.get("normalizedProduct") or None,
        normalized_client=data.get("normalizedClient") or None,
        transaction_id=data.get("transactionId") or None,
    )


def validate_sales(raws: Iterable[Any]) -> list[SaleRecord]:
    """Validate each raw sale, logging and skipping the invalid ones."""
    valid: list[SaleRecord] = []
    for index, raw in enumerate(raws):
        try:
            valid.append(validate_sale(raw))
        except ValidationError as exc:
            logger.warning(
                "sale_validation_failed",
                index=index,
                kind=exc.kind,
                field=exc.field,
                error=str(exc),
            )
    return valid
