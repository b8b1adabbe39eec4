from __future__ import annotations

from sqlalchemy.orm import declared_attr

from ..extensions import db
from ..money import from_cents
from ..schema import (
    EntitySchema, PRODUCT, CATEGORY, CUSTOMER, EMPLOYEE, CREDIT, SALE, SHIFT, STOCK_MOVEMENT,
    MONEY, DATETIME, get_schema,
)
from .tenancy import new_id
from possync.time_utils import to_utc_z, utcnow


class SyncRecordMixin:
    """
    Bookkeeping shared by every synchronizable collection.

    MULTI-TENANT: store_id is NOT NULL and every service query filters on it.

    SYNC:
    - sync_version is the mapper's version_id_col: every flushed UPDATE runs as
      "... WHERE id = ? AND sync_version = ?" and increments it. A concurrent
      writer that got there first turns our flush into StaleDataError.
    - last_synced_at moves on every accepted write; pull cursors follow it.
    - deleted marks a tombstone so other clients learn about deletes.

    Each model declares its own sync_version column and __mapper_args__.
    """
    __schema__: EntitySchema

    id = db.Column(db.String(32), primary_key=True, default=new_id)

    @declared_attr
    def store_id(cls):
        return db.Column(db.String(32), db.ForeignKey("stores.id"), nullable=False, index=True)

    last_synced_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    deleted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def touch(self, now=None) -> None:
        now = now or utcnow()
        self.updated_at = now
        self.last_synced_at = now

    def to_wire(self) -> dict:
        schema = self.__schema__
        out = {"_id": self.id, "storeId": self.store_id}
        for name, spec in schema.fields.items():
            value = getattr(self, spec.attr)
            if spec.kind == MONEY:
                value = from_cents(value)
            elif spec.kind == DATETIME:
                value = to_utc_z(value)
            out[name] = value
        out.update({
            "syncVersion": self.sync_version,
            "lastSyncedAt": to_utc_z(self.last_synced_at, precise=True),
            "createdAt": to_utc_z(self.created_at, precise=True),
            "updatedAt": to_utc_z(self.updated_at, precise=True),
            "deleted": bool(self.deleted),
        })
        return out

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id} store_id={self.store_id} v={self.sync_version}>"


def _pull_index(table: str):
    return db.Index(f"ix_{table}_store_pull", "store_id", "last_synced_at", "id")


class Product(SyncRecordMixin, db.Model):
    __tablename__ = "products"
    __table_args__ = (
        _pull_index("products"),
        db.Index("ix_products_store_sku", "store_id", "sku"),
    )
    __schema__ = PRODUCT

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    barcode = db.Column(db.String(64), nullable=True)
    category_id = db.Column(db.String(32), nullable=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False)
    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=5)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    sync_version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": sync_version}


class Category(SyncRecordMixin, db.Model):
    __tablename__ = "categories"
    __table_args__ = (
        _pull_index("categories"),
        db.Index("ix_categories_store_name", "store_id", "name"),
    )
    __schema__ = CATEGORY

    name = db.Column(db.String(120), nullable=False)
    color = db.Column(db.String(16), nullable=True, default="#6b7280")
    icon = db.Column(db.String(64), nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    sync_version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": sync_version}


class Customer(SyncRecordMixin, db.Model):
    __tablename__ = "customers"
    __table_args__ = (_pull_index("customers"),)
    __schema__ = CUSTOMER

    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    tags = db.Column(db.JSON, nullable=True)

    total_orders = db.Column(db.Integer, nullable=False, default=0)
    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    last_order_date = db.Column(db.DateTime, nullable=True)

    sync_version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": sync_version}


class Employee(SyncRecordMixin, db.Model):
    __tablename__ = "employees"
    __table_args__ = (
        _pull_index("employees"),
        db.Index("ix_employees_store_pin", "store_id", "pin"),
    )
    __schema__ = EMPLOYEE

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    role = db.Column(db.String(16), nullable=False, default="cashier")
    pin = db.Column(db.String(4), nullable=True)
    hourly_rate_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    sync_version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": sync_version}


class Credit(SyncRecordMixin, db.Model):
    __tablename__ = "credits"
    __table_args__ = (
        _pull_index("credits"),
        db.Index("ix_credits_store_sale", "store_id", "sale_id"),
        db.Index("ix_credits_store_status_due", "store_id", "status", "due_date"),
    )
    __schema__ = CREDIT

    customer_id = db.Column(db.String(32), nullable=False)
    sale_id = db.Column(db.String(32), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    due_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")
    notes = db.Column(db.Text, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    sync_version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": sync_version}


class Sale(SyncRecordMixin, db.Model):
    __tablename__ = "sales"
    __table_args__ = (
        _pull_index("sales"),
        db.Index("ix_sales_store_customer", "store_id", "customer_id"),
    )
    __schema__ = SALE

    # [{"productId": str, "qty": int, "price": decimal}]
    items = db.Column(db.JSON, nullable=False)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="completed")
    employee_id = db.Column(db.String(32), nullable=True)
    customer_id = db.Column(db.String(32), nullable=True)
    shift_id = db.Column(db.String(32), nullable=True)

    sync_version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": sync_version}


class Shift(SyncRecordMixin, db.Model):
    __tablename__ = "shifts"
    __table_args__ = (_pull_index("shifts"),)
    __schema__ = SHIFT

    employee_id = db.Column(db.String(32), nullable=False)
    date = db.Column(db.String(10), nullable=False)  # YYYY-MM-DD
    start_time = db.Column(db.String(5), nullable=False)  # HH:MM
    end_time = db.Column(db.String(5), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="scheduled")
    notes = db.Column(db.Text, nullable=True, default="")

    sync_version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": sync_version}


class StockMovement(SyncRecordMixin, db.Model):
    __tablename__ = "stock_movements"
    __table_args__ = (
        _pull_index("stock_movements"),
        db.Index("ix_stock_movements_store_product", "store_id", "product_id"),
    )
    __schema__ = STOCK_MOVEMENT

    product_id = db.Column(db.String(32), nullable=False)
    movement_type = db.Column(db.String(32), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)  # signed
    reason = db.Column(db.String(255), nullable=False)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(32), nullable=True)

    sync_version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": sync_version}


MODEL_BY_ENTITY = {
    m.__schema__.name: m
    for m in (Product, Category, Customer, Employee, Credit, Sale, Shift, StockMovement)
}


def model_for(name: str):
    """Model class for an entity type or collection name."""
    return MODEL_BY_ENTITY[get_schema(name).name]
