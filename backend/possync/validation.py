from __future__ import annotations
from datetime import datetime
import re

from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from possync.money import to_cents, MAX_AMOUNT_CENTS, MoneyFormatError
from possync.schema import EntitySchema, FieldSpec, MONEY, ITEMS, TAGS, BOOKKEEPING_FIELDS
from possync.time_utils import parse_iso_datetime

PIN_RE = re.compile(r"^\d{4}$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

# Keys the client may send alongside fields; they never reach a model column
CONTROL_FIELDS = BOOKKEEPING_FIELDS | {"baseVersion", "originalData", "serverId", "localId"}


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate natural key)."""


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(name: str, spec: FieldSpec, col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if spec.kind == MONEY:
        try:
            cents = to_cents(value)
        except MoneyFormatError as e:
            raise ValidationError(f"{name}: {e}")
        if cents < 0:
            raise ValidationError(f"{name} must be >= 0")
        if cents > MAX_AMOUNT_CENTS:
            raise ValidationError(f"{name} cannot exceed {MAX_AMOUNT_CENTS / 100:,.2f}")
        return cents

    if spec.kind == TAGS:
        if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
            raise ValidationError(f"{name} must be a list of strings")
        # order-preserving dedupe
        return list(dict.fromkeys(t.strip() for t in value if t.strip()))

    if spec.kind == ITEMS:
        return _coerce_items(name, value)

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        # Already an int (but not bool which is a subclass of int)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped or 'e' in stripped.lower() or '.' in stripped:
                raise ValidationError(f"{name} must be a plain integer")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{name} must be an integer")
        raise ValidationError(f"{name} must be an integer")

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{name} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{name} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{name} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{name} must be a datetime")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        if isinstance(value, (dict, list)):
            raise ValidationError(f"{name} must be a string")
        return str(value).strip()

    return value


def _coerce_items(name: str, value: Any) -> list[dict]:
    if not isinstance(value, list) or not value:
        raise ValidationError(f"{name} must be a non-empty list")
    items = []
    for idx, raw in enumerate(value):
        if not isinstance(raw, dict):
            raise ValidationError(f"{name}[{idx}] must be an object")
        product_id = raw.get("productId")
        if not isinstance(product_id, str) or not product_id.strip():
            raise ValidationError(f"{name}[{idx}].productId is required")
        qty = raw.get("qty")
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise ValidationError(f"{name}[{idx}].qty must be an integer >= 1")
        try:
            price_cents = to_cents(raw.get("price"))
        except MoneyFormatError as e:
            raise ValidationError(f"{name}[{idx}].price: {e}")
        if price_cents < 0:
            raise ValidationError(f"{name}[{idx}].price must be >= 0")
        item = dict(raw)
        item["productId"] = product_id.strip()
        items.append(item)
    return items


def validate_payload(
    *,
    schema: EntitySchema,
    model: DeclarativeMeta,
    payload: dict,
    partial: bool,
) -> dict:
    """
    Validates + normalizes an incoming wire document against:
    - the entity schema (writable wire fields, kinds, enums, required)
    - SQLAlchemy column metadata (nullable, String length)
    Returns a patch keyed by model attribute.

    partial=False: create semantics (enforce required fields)
    partial=True: update semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = [f for f, spec in schema.fields.items() if spec.required and payload.get(f) is None]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(sorted(missing))}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k in CONTROL_FIELDS:
            continue
        if k not in schema.fields:
            raise ValidationError(f"Field not allowed: {k}")

    patch: dict = {}

    for name, raw in payload.items():
        spec = schema.fields.get(name)
        if spec is None:
            continue
        col = cols[spec.attr]

        if raw is None:
            if not col.nullable or spec.required:
                raise ValidationError(f"{name} cannot be null")
            patch[spec.attr] = None
            continue

        val = _coerce_value(name, spec, col, raw)

        if isinstance(col.type, (String, Text)) and (not col.nullable or spec.required):
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{name} cannot be blank")

        max_length = spec.max_length or (col.type.length if isinstance(col.type, String) else None)
        if max_length and isinstance(val, str) and len(val) > max_length:
            raise ValidationError(f"{name} exceeds max length {max_length}")

        if spec.choices and val not in spec.choices:
            raise ValidationError(f"{name} must be one of: {', '.join(spec.choices)}")

        patch[spec.attr] = val

    return patch


def _merged(patch: dict, current, attr: str, default=None):
    if attr in patch:
        return patch[attr]
    if current is not None:
        return getattr(current, attr)
    return default


def enforce_entity_rules(schema: EntitySchema, patch: dict, current=None) -> None:
    """
    Business rules that are not captured by column metadata alone.

    `current` is the stored row for updates (None on create); rules that span
    fields look at the stored value when the patch omits a field.
    """
    rule = _RULES.get(schema.name)
    if rule is not None:
        rule(patch, current)


def _rules_product(patch: dict, current) -> None:
    for attr in ("quantity", "low_stock_threshold"):
        value = patch.get(attr)
        if value is not None and value < 0:
            raise ValidationError(f"{attr} must be >= 0")


def _rules_customer(patch: dict, current) -> None:
    if patch.get("total_orders") is not None and patch["total_orders"] < 0:
        raise ValidationError("totalOrders must be >= 0")


def _rules_employee(patch: dict, current) -> None:
    pin = patch.get("pin")
    if pin is not None and not PIN_RE.match(pin):
        raise ValidationError("pin must be exactly 4 digits")


def _rules_credit(patch: dict, current) -> None:
    amount = _merged(patch, current, "amount_cents")
    paid = _merged(patch, current, "amount_paid_cents", 0) or 0
    if amount is not None and amount <= 0:
        raise ValidationError("amount must be > 0")
    if amount is not None and paid > amount:
        raise ValidationError("amountPaid cannot exceed amount")


def _rules_sale(patch: dict, current) -> None:
    if current is not None and current.status == "completed" and "items" in patch:
        if patch["items"] != current.items:
            raise ValidationError("items of a completed sale are immutable")

    subtotal = _merged(patch, current, "subtotal_cents")
    discount = _merged(patch, current, "discount_cents", 0) or 0
    tax = _merged(patch, current, "tax_cents", 0) or 0
    total = _merged(patch, current, "total_cents")
    if subtotal is not None and total is not None and total != subtotal - discount + tax:
        raise ValidationError("total must equal subtotal - discount + tax")


def _rules_shift(patch: dict, current) -> None:
    if patch.get("date") is not None and not DATE_RE.match(patch["date"]):
        raise ValidationError("date must be YYYY-MM-DD")
    for attr in ("start_time", "end_time"):
        if patch.get(attr) is not None and not TIME_RE.match(patch[attr]):
            raise ValidationError(f"{attr} must be HH:MM")


def _rules_stock_movement(patch: dict, current) -> None:
    if patch.get("quantity") == 0:
        raise ValidationError("quantity must be non-zero")


_RULES = {
    "product": _rules_product,
    "customer": _rules_customer,
    "employee": _rules_employee,
    "credit": _rules_credit,
    "sale": _rules_sale,
    "shift": _rules_shift,
    "stockMovement": _rules_stock_movement,
}
