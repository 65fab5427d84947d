"""Order parameter validation, applied before any order reaches a broker."""

from typing import Any, Mapping

from core.utils.exceptions import InvalidArgumentError

REQUIRED_ORDER_FIELDS = (
    "variety",
    "exchange",
    "tradingsymbol",
    "transaction_type",
    "quantity",
    "product",
    "order_type",
)

VALID_VARIETIES = frozenset({"regular", "bo", "co", "iceberg", "auction"})
VALID_TRANSACTION_TYPES = frozenset({"BUY", "SELL"})
VALID_PRODUCTS = frozenset({"CNC", "MIS", "NRML"})
VALID_ORDER_TYPES = frozenset({"MARKET", "LIMIT", "SL", "SL-M"})


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def validate_order_params(params: Mapping[str, Any]) -> None:
    """
    Validate order parameters, raising InvalidArgumentError on the first violation.

    Required fields are checked in a fixed order so the reported field is
    deterministic. Unknown extra fields (price, trigger_price, validity, tag...)
    are passed through untouched.
    """
    if not isinstance(params, Mapping):
        raise InvalidArgumentError("Order parameters must be a mapping", field="params", value=params)

    for field_name in REQUIRED_ORDER_FIELDS:
        if _is_missing(params.get(field_name)):
            raise InvalidArgumentError(f"Missing required field: {field_name}", field=field_name)

    checks = (
        ("variety", VALID_VARIETIES),
        ("transaction_type", VALID_TRANSACTION_TYPES),
        ("product", VALID_PRODUCTS),
        ("order_type", VALID_ORDER_TYPES),
    )
    for field_name, allowed in checks:
        value = params[field_name]
        if value not in allowed:
            raise InvalidArgumentError(
                f"Invalid {field_name}: {value!r}. Allowed: {sorted(allowed)}",
                field=field_name,
                value=value,
            )

    quantity = params["quantity"]
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidArgumentError(
            f"quantity must be a positive integer, got {quantity!r}",
            field="quantity",
            value=quantity,
        )
