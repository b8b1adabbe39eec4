# Overview: Synchronizable entity registry shared by the server models, the
# conflict resolver and the client store.

"""
Entity schemas for the sync core.

Every synchronizable collection is described once here: its wire field names,
the model attribute each one maps to, the field kind (drives coercion and
money conversion) and the merge policy the resolver applies when both sides
changed a field divergently.

Bookkeeping fields (_id, storeId, syncVersion, lastSyncedAt, createdAt,
updatedAt, deleted) are not listed per entity; they are the same everywhere.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .money import to_cents, MoneyFormatError
from .time_utils import parse_iso_datetime

# Field kinds
STRING = "string"
TEXT = "text"
INTEGER = "integer"
BOOLEAN = "boolean"
MONEY = "money"
DATETIME = "datetime"
ITEMS = "items"
TAGS = "tags"

# Merge policies for divergent edits
SCALAR = "scalar"
COUNTER = "counter"
MONETARY = "monetary"
SET = "set"

BOOKKEEPING_FIELDS = frozenset({
    "_id", "storeId", "syncVersion", "lastSyncedAt", "createdAt", "updatedAt", "deleted",
})

# Fields a client may never rewrite through the resolver
OWNERSHIP_FIELDS = frozenset({"_id", "storeId"})


@dataclass(frozen=True)
class FieldSpec:
    attr: str
    kind: str = STRING
    required: bool = False
    merge: str = SCALAR
    choices: tuple[str, ...] | None = None
    max_length: int | None = None
    # Conflict strategy for this field alone; None follows the entity default
    strategy: str | None = None


@dataclass(frozen=True)
class EntitySchema:
    """Wire contract and merge policy of one synchronizable collection."""
    name: str
    collection: str
    fields: dict[str, FieldSpec]
    natural_key: str | None = None
    default_strategy: str = "last-write-wins"
    normalize: Callable[[dict], dict] | None = field(default=None, compare=False)

    def project(self, data: dict) -> dict:
        """Keep only schema fields (never invents or forwards unknown keys)."""
        return {k: v for k, v in (data or {}).items() if k in self.fields}

    def apply_normalize(self, data: dict) -> dict:
        if self.normalize is None:
            return data
        return self.normalize(dict(data))

    @property
    def field_strategies(self) -> dict[str, str]:
        return {name: spec.strategy for name, spec in self.fields.items() if spec.strategy}

    @property
    def reference_fields(self) -> list[str]:
        """Fields pointing at another synchronizable row (see REFERENCES)."""
        return [name for name in self.fields if name in REFERENCES]


def _cents_or_zero(value) -> int:
    if value is None:
        return 0
    try:
        return to_cents(value)
    except MoneyFormatError:
        return 0


def normalize_credit(data: dict) -> dict:
    """
    Keep Credit.status consistent with amountPaid.

    status=paid iff amountPaid == amount. "overdue" is a stored value only when
    the payer has not paid in full; it is otherwise re-derived on read.
    """
    if "amount" not in data:
        return data
    amount = _cents_or_zero(data.get("amount"))
    paid = _cents_or_zero(data.get("amountPaid"))
    status = data.get("status") or "pending"
    if amount > 0 and paid >= amount:
        status = "paid"
    elif status == "paid":
        status = "partial" if paid > 0 else "pending"
    elif paid > 0 and status == "pending":
        status = "partial"
    data["status"] = status
    return data


def effective_credit_status(data: dict, now: datetime) -> str:
    """Status as the UI should show it: overdue when past due and unpaid."""
    status = data.get("status") or "pending"
    if status == "paid":
        return status
    due = data.get("dueDate")
    due_dt = parse_iso_datetime(due) if isinstance(due, str) else due
    if due_dt is not None and now > due_dt:
        return "overdue"
    return status


PRODUCT = EntitySchema(
    name="product",
    collection="products",
    natural_key="sku",
    # Descriptive fields follow the newer edit; stock counts follow the server
    default_strategy="last-write-wins-by-mtime",
    fields={
        "name": FieldSpec("name", required=True, max_length=255),
        "sku": FieldSpec("sku", max_length=64),
        "barcode": FieldSpec("barcode", max_length=64),
        "categoryId": FieldSpec("category_id", max_length=32),
        "price": FieldSpec("price_cents", MONEY, required=True),
        "costPrice": FieldSpec("cost_price_cents", MONEY),
        "quantity": FieldSpec("quantity", INTEGER, strategy="server-wins"),
        "lowStockThreshold": FieldSpec("low_stock_threshold", INTEGER),
        "isActive": FieldSpec("is_active", BOOLEAN),
    },
)

CATEGORY = EntitySchema(
    name="category",
    collection="categories",
    natural_key="name",
    fields={
        "name": FieldSpec("name", required=True, max_length=120),
        "color": FieldSpec("color", max_length=16),
        "icon": FieldSpec("icon", max_length=64),
        "sortOrder": FieldSpec("sort_order", INTEGER),
    },
)

CUSTOMER = EntitySchema(
    name="customer",
    collection="customers",
    default_strategy="merge-fields",
    fields={
        "name": FieldSpec("name", required=True, max_length=255),
        "phone": FieldSpec("phone", max_length=32),
        "email": FieldSpec("email", max_length=255),
        "address": FieldSpec("address", TEXT),
        "notes": FieldSpec("notes", TEXT),
        "tags": FieldSpec("tags", TAGS, merge=SET),
        "totalOrders": FieldSpec("total_orders", INTEGER, merge=COUNTER),
        "totalSpent": FieldSpec("total_spent_cents", MONEY, merge=MONETARY),
        "lastOrderDate": FieldSpec("last_order_date", DATETIME),
    },
)

EMPLOYEE = EntitySchema(
    name="employee",
    collection="employees",
    natural_key="pin",
    fields={
        "name": FieldSpec("name", required=True, max_length=255),
        "email": FieldSpec("email", max_length=255),
        "phone": FieldSpec("phone", max_length=32),
        "role": FieldSpec("role", choices=("owner", "manager", "cashier", "staff")),
        "pin": FieldSpec("pin", max_length=4),
        "hourlyRate": FieldSpec("hourly_rate_cents", MONEY),
        "isActive": FieldSpec("is_active", BOOLEAN),
    },
)

CREDIT = EntitySchema(
    name="credit",
    collection="credits",
    natural_key="saleId",
    default_strategy="server-wins",
    normalize=normalize_credit,
    fields={
        "customerId": FieldSpec("customer_id", required=True, max_length=32),
        "saleId": FieldSpec("sale_id", required=True, max_length=32),
        "amount": FieldSpec("amount_cents", MONEY, required=True),
        "amountPaid": FieldSpec("amount_paid_cents", MONEY, merge=MONETARY),
        "dueDate": FieldSpec("due_date", DATETIME, required=True),
        "status": FieldSpec("status", choices=("pending", "partial", "paid", "overdue")),
        "notes": FieldSpec("notes", TEXT),
        "paidAt": FieldSpec("paid_at", DATETIME),
    },
)

SALE = EntitySchema(
    name="sale",
    collection="sales",
    default_strategy="server-wins",
    fields={
        "items": FieldSpec("items", ITEMS, required=True),
        "subtotal": FieldSpec("subtotal_cents", MONEY, required=True),
        "discount": FieldSpec("discount_cents", MONEY),
        "tax": FieldSpec("tax_cents", MONEY),
        "total": FieldSpec("total_cents", MONEY, required=True),
        "paymentMethod": FieldSpec("payment_method", required=True, choices=("cash", "card", "credit")),
        "status": FieldSpec("status", choices=("completed", "voided", "refunded")),
        "employeeId": FieldSpec("employee_id", max_length=32),
        "customerId": FieldSpec("customer_id", max_length=32),
        "shiftId": FieldSpec("shift_id", max_length=32),
    },
)

SHIFT = EntitySchema(
    name="shift",
    collection="shifts",
    fields={
        "employeeId": FieldSpec("employee_id", required=True, max_length=32),
        "date": FieldSpec("date", required=True, max_length=10),
        "startTime": FieldSpec("start_time", required=True, max_length=5),
        "endTime": FieldSpec("end_time", required=True, max_length=5),
        "status": FieldSpec("status", choices=("scheduled", "in_progress", "completed", "cancelled")),
        "notes": FieldSpec("notes", TEXT),
    },
)

STOCK_MOVEMENT = EntitySchema(
    name="stockMovement",
    collection="stockMovements",
    default_strategy="server-wins",
    fields={
        "productId": FieldSpec("product_id", required=True, max_length=32),
        "type": FieldSpec("movement_type", required=True, choices=(
            "purchase", "sale", "adjustment", "transfer_out", "transfer_in",
            "return_from_customer", "return_to_supplier", "shrinkage", "promotion",
        )),
        "quantity": FieldSpec("quantity", INTEGER, required=True),
        "reason": FieldSpec("reason", required=True, max_length=255),
        "referenceType": FieldSpec("reference_type", choices=("Sale", "PurchaseOrder", "Transfer", "Adjustment", "Return")),
        "referenceId": FieldSpec("reference_id", max_length=32),
    },
)

ENTITIES: dict[str, EntitySchema] = {
    s.name: s for s in (PRODUCT, CATEGORY, CUSTOMER, EMPLOYEE, CREDIT, SALE, SHIFT, STOCK_MOVEMENT)
}
COLLECTIONS: dict[str, EntitySchema] = {s.collection: s for s in ENTITIES.values()}


class UnknownEntityError(KeyError):
    pass


def get_schema(name: str) -> EntitySchema:
    """Look up a schema by entity type ("product") or collection ("products")."""
    schema = ENTITIES.get(name) or COLLECTIONS.get(name)
    if schema is None:
        raise UnknownEntityError(name)
    return schema


# Wire fields that point at another synchronizable row. A row created offline
# may hold the referenced row's localId until that row is uploaded.
REFERENCES: dict[str, str] = {
    "categoryId": "category",
    "customerId": "customer",
    "employeeId": "employee",
    "productId": "product",
    "saleId": "sale",
    "shiftId": "shift",
}
