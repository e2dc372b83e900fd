"""
Inbound command validation.

Validators return a ValidationResult instead of raising, so the dispatcher
can reply before building any upstream request.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

PLACE_ORDER_FIELDS = ("instrument_name", "amount", "type", "direction")
MODIFY_ORDER_FIELDS = ("order_id", "amount")
CANCEL_ORDER_FIELDS = ("order_id",)
INSTRUMENTS_FIELDS = ("currency", "kind")

DIRECTIONS = ("buy", "sell")


@dataclass(frozen=True)
class ValidationResult:
    missing: Tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


VALID = ValidationResult()


def missing_fields(data: Dict[str, Any], required: Iterable[str]) -> Tuple[str, ...]:
    """Required fields absent from data (null counts as absent), in order"""
    return tuple(f for f in required if data.get(f) is None)


def validate_fields(data: Dict[str, Any], required: Iterable[str]) -> ValidationResult:
    missing = missing_fields(data, required)
    if not missing:
        return VALID
    if len(missing) == 1:
        return ValidationResult(missing, f"Missing required field: {missing[0]}")
    return ValidationResult(missing, f"Missing required fields: {', '.join(missing)}")


def _data_object(message: Dict[str, Any], label: str) -> Tuple[Optional[Dict], ValidationResult]:
    data = message.get("data")
    if not isinstance(data, dict):
        return None, ValidationResult(("data",), f"Invalid {label} format: 'data' field missing")
    return data, VALID


def validate_place_order(message: Dict[str, Any]) -> ValidationResult:
    data, result = _data_object(message, "order")
    if data is None:
        return result

    result = validate_fields(data, PLACE_ORDER_FIELDS)
    if not result.ok:
        return result

    if data["type"] == "limit" and data.get("price") is None:
        return ValidationResult(("price",), "Price is required for limit orders")

    if data["direction"] not in DIRECTIONS:
        return ValidationResult(
            error=f"Invalid direction: {data['direction']!r} (expected 'buy' or 'sell')"
        )
    return VALID


def validate_modify_order(message: Dict[str, Any]) -> ValidationResult:
    data, result = _data_object(message, "request")
    if data is None:
        return result
    return validate_fields(data, MODIFY_ORDER_FIELDS)


def validate_cancel_order(message: Dict[str, Any]) -> ValidationResult:
    data, result = _data_object(message, "request")
    if data is None:
        return result
    return validate_fields(data, CANCEL_ORDER_FIELDS)


def validate_get_instruments(message: Dict[str, Any]) -> ValidationResult:
    result = validate_fields(message, INSTRUMENTS_FIELDS)
    if not result.ok:
        return result
    for field in INSTRUMENTS_FIELDS:
        if not isinstance(message[field], str):
            return ValidationResult(error=f"Field '{field}' must be a string")
    return VALID
