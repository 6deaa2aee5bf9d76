from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


# Maximum price: 9,999,999,999.99 fits Numeric(12, 2)
MAX_MONEY = Decimal("9999999999.99")
MONEY_QUANT = Decimal("0.01")

PAYMENT_METHODS = ("CASH", "CARD", "MOBILE_MONEY", "BANK_TRANSFER", "CREDIT")
ORDER_STATUSES = ("PENDING", "PROCESSING", "COMPLETED", "CANCELLED")


class ValidationError(ValueError):
    """400-level input problem or business-rule violation."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConflictError(ValidationError):
    """409-level business rule conflict (e.g., duplicate stock row)."""


class NotFoundError(LookupError):
    """404-level: referenced record does not exist."""


def to_money(value: Any) -> Decimal:
    """Exact decimal, quantized to cents (half-up)."""
    if isinstance(value, Decimal):
        dec = value
    elif isinstance(value, bool):
        raise ValidationError("amount must be a number")
    elif isinstance(value, int):
        dec = Decimal(value)
    elif isinstance(value, (float, str)):
        # str() keeps 19.99 as 19.99 instead of its binary expansion
        try:
            dec = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError("amount must be a number")
    else:
        raise ValidationError("amount must be a number")

    if not dec.is_finite():
        raise ValidationError("amount must be a finite number")
    return dec.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


# =============================================================================
# FIELD COERCION
# =============================================================================

def _coerce_int(key: str, value: Any) -> int:
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        # Reject scientific notation (e.g., "1e15") and decimals (e.g., "12.5")
        if "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{key} must be a plain integer")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def require_int(payload: dict, key: str, *, minimum: int | None = None) -> int:
    if payload.get(key) is None:
        raise ValidationError(f"{key} is required")
    value = _coerce_int(key, payload[key])
    if minimum is not None and value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    return value


def optional_int(payload: dict, key: str) -> int | None:
    if payload.get(key) is None:
        return None
    return _coerce_int(key, payload[key])


def require_money(payload: dict, key: str) -> Decimal:
    if payload.get(key) is None:
        raise ValidationError(f"{key} is required")
    amount = to_money(payload[key])
    if amount < 0:
        raise ValidationError(f"{key} cannot be negative")
    if amount > MAX_MONEY:
        raise ValidationError(f"{key} exceeds maximum allowed ({MAX_MONEY})")
    return amount


def optional_str(payload: dict, key: str, *, max_length: int = 255) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(f"{key} exceeds max length {max_length}")
    return value or None


def require_choice(value: Any, key: str, choices: tuple[str, ...]) -> str:
    if not isinstance(value, str) or value.strip().upper() not in choices:
        raise ValidationError(f"{key} must be one of: {', '.join(choices)}")
    return value.strip().upper()


def _require_list(payload: dict, key: str, *, allow_empty: bool) -> list:
    value = payload.get(key)
    if value is None:
        value = []
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list")
    if not allow_empty and not value:
        raise ValidationError(f"{key} must contain at least one item")
    for entry in value:
        if not isinstance(entry, dict):
            raise ValidationError(f"{key} entries must be objects")
    return value


# =============================================================================
# REQUEST PAYLOADS
# =============================================================================

def validate_create_stock(payload: dict) -> dict:
    return {
        "product_id": require_int(payload, "product_id"),
        "branch_id": require_int(payload, "branch_id"),
        "quantity": require_int(payload, "quantity", minimum=1),
    }


def validate_adjust_stock(payload: dict) -> dict:
    quantity_change = require_int(payload, "quantity_change")
    if quantity_change == 0:
        raise ValidationError("quantity_change must not be zero")
    return {
        "product_id": require_int(payload, "product_id"),
        "branch_id": require_int(payload, "branch_id"),
        "quantity_change": quantity_change,
        "reason": optional_str(payload, "reason"),
    }


def _priced_items(payload: dict, key: str, *, allow_empty: bool) -> list[dict]:
    return [
        {
            "product_id": require_int(entry, "product_id"),
            "quantity": require_int(entry, "quantity", minimum=1),
            "price": require_money(entry, "price"),
        }
        for entry in _require_list(payload, key, allow_empty=allow_empty)
    ]


def _unpriced_items(payload: dict, key: str, *, allow_empty: bool) -> list[dict]:
    return [
        {
            "product_id": require_int(entry, "product_id"),
            "quantity": require_int(entry, "quantity", minimum=1),
        }
        for entry in _require_list(payload, key, allow_empty=allow_empty)
    ]


def validate_create_sale(payload: dict) -> dict:
    return {
        "branch_id": require_int(payload, "branch_id"),
        "customer_id": optional_int(payload, "customer_id"),
        "payment_method": require_choice(payload.get("payment_method"), "payment_method", PAYMENT_METHODS),
        "items": _priced_items(payload, "items", allow_empty=False),
    }


def validate_exchange(payload: dict) -> dict:
    returned = _unpriced_items(payload, "returned_items", allow_empty=True)
    exchanged = _priced_items(payload, "exchanged_items", allow_empty=True)
    if not returned and not exchanged:
        raise ValidationError("returned_items or exchanged_items is required")
    return {
        "branch_id": require_int(payload, "branch_id"),
        "customer_id": optional_int(payload, "customer_id"),
        "returned_items": returned,
        "exchanged_items": exchanged,
    }


def validate_create_order(payload: dict) -> dict:
    payment_method = payload.get("payment_method")
    return {
        "items": _unpriced_items(payload, "items", allow_empty=False),
        "payment_method": (
            require_choice(payment_method, "payment_method", PAYMENT_METHODS)
            if payment_method is not None
            else None
        ),
    }


def validate_order_status(payload: dict) -> str:
    return require_choice(payload.get("status"), "status", ORDER_STATUSES)
