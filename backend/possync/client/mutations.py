"""
Local write API used by the POS UI.

Every call updates the LDS row(s) and appends the matching journal entries in
one SQLite transaction, so a crash never leaves a dirty row without its
journal entry or the other way round.

    writer = LocalWriter(store, journal, store_id)
    product = writer.create("product", {"name": "Tea", "price": 3.5, "quantity": 10})
    writer.update("product", product.local_id, {"price": 3.75})
    writer.record_sale({"items": [{"productId": product.local_id, "qty": 2, "price": 3.75}],
                        "paymentMethod": "cash"})
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from ..money import to_cents, from_cents, MoneyFormatError
from ..schema import get_schema
from ..time_utils import utcnow, to_utc_z
from .errors import ErrorKind, SyncError
from .journal import MutationJournal, OP_CREATE, OP_UPDATE, OP_DELETE
from .local_store import LocalStore, LocalRow, new_local_id, now_iso

logger = logging.getLogger(__name__)

DEFAULT_CREDIT_TERM = timedelta(days=30)


def _invalid(message: str, entity: str | None = None, local_id: str | None = None) -> SyncError:
    return SyncError(ErrorKind.VALIDATION, message, entity=entity, local_id=local_id)


def _cents(value, name: str) -> int:
    try:
        return to_cents(value if value is not None else 0)
    except MoneyFormatError as e:
        raise _invalid(f"{name}: {e}")


class LocalWriter:
    def __init__(self, store: LocalStore, journal: MutationJournal, store_id: str) -> None:
        self.store = store
        self.journal = journal
        self.store_id = store_id

    # ------------------------------------------------------------------
    # Generic mutations
    # ------------------------------------------------------------------

    def create(self, entity: str, data: dict[str, Any]) -> LocalRow:
        """New row: serverId=None, dirty, baseVersion=0."""
        schema = get_schema(entity)
        doc = schema.apply_normalize(schema.project(data))
        missing = [f for f, spec in schema.fields.items() if spec.required and doc.get(f) is None]
        if missing:
            raise _invalid(f"Missing required fields: {', '.join(sorted(missing))}", schema.name)

        row = LocalRow(
            entity=schema.name,
            local_id=new_local_id(),
            store_id=self.store_id,
            data=doc,
            dirty=True,
            revision=1,
            updated_at=now_iso(),
        )
        with self.store.transaction():
            self.store.put(row)
            self.journal.append(self.store_id, schema.name, OP_CREATE, row.local_id, doc, 0)
        return row

    def update(self, entity: str, local_id: str, changes: dict[str, Any]) -> LocalRow:
        """
        Apply field changes.

        On the clean->dirty transition the pre-mutation document is kept as
        originalData (the common ancestor for merge-fields).
        """
        schema = get_schema(entity)
        patch = schema.project(changes)
        with self.store.transaction():
            row = self._require(schema.name, local_id)
            data = schema.apply_normalize({**row.data, **patch})
            updated = row.copy(
                data=data,
                dirty=True,
                original_data=self._ancestor(row),
                revision=row.revision + 1,
                updated_at=now_iso(),
            )
            self.store.put(updated)
            self.journal.append(self.store_id, schema.name, OP_UPDATE, local_id, patch, row.base_version)
        return updated

    def delete(self, entity: str, local_id: str) -> LocalRow | None:
        """
        Flag a row deleted; it is purged once the server acknowledges.

        A row that never reached the server is purged right away together
        with its journal entries, without any request.
        """
        schema = get_schema(entity)
        with self.store.transaction():
            row = self._require(schema.name, local_id)
            if row.is_new:
                self.store.purge(schema.name, local_id)
                self.journal.retire(self.store_id, schema.name, local_id)
                logger.debug("Purged never-uploaded %s %s", schema.name, local_id)
                return None
            updated = row.copy(
                deleted=True,
                dirty=True,
                original_data=self._ancestor(row),
                revision=row.revision + 1,
                updated_at=now_iso(),
            )
            self.store.put(updated)
            self.journal.append(self.store_id, schema.name, OP_DELETE, local_id, None, row.base_version)
        return updated

    def _require(self, entity: str, local_id: str) -> LocalRow:
        row = self.store.get(entity, local_id)
        if row is None or row.store_id != self.store_id or row.deleted:
            raise _invalid(f"{entity} {local_id} not found", entity, local_id)
        return row

    @staticmethod
    def _ancestor(row: LocalRow) -> dict[str, Any] | None:
        if row.dirty:
            return row.original_data
        if row.is_new:
            return None
        return dict(row.data)

    # ------------------------------------------------------------------
    # POS operations
    # ------------------------------------------------------------------

    def record_sale(
        self,
        sale: dict[str, Any],
        *,
        credit_due_date: datetime | None = None,
    ) -> LocalRow:
        """
        Record a completed sale with its side effects in one transaction:
        product quantities, stock movements, customer aggregates, and a
        credit when paid on credit.
        """
        items = sale.get("items") or []
        if not items:
            raise _invalid("items must be a non-empty list", "sale")

        subtotal = 0
        for idx, item in enumerate(items):
            qty = item.get("qty")
            if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
                raise _invalid(f"items[{idx}].qty must be an integer >= 1", "sale")
            subtotal += _cents(item.get("price"), f"items[{idx}].price") * qty

        discount = _cents(sale.get("discount"), "discount")
        tax = _cents(sale.get("tax"), "tax")
        doc = dict(sale)
        doc.setdefault("subtotal", from_cents(subtotal))
        doc.setdefault("discount", from_cents(discount))
        doc.setdefault("tax", from_cents(tax))
        doc.setdefault("total", from_cents(_cents(doc["subtotal"], "subtotal") - discount + tax))
        doc.setdefault("status", "completed")
        total = _cents(doc["total"], "total")
        if total != _cents(doc["subtotal"], "subtotal") - discount + tax:
            raise _invalid("total must equal subtotal - discount + tax", "sale")

        customer = None
        if doc.get("customerId"):
            customer = self.store.resolve_reference("customer", self.store_id, doc["customerId"])
            if customer is None:
                raise _invalid(f"customer {doc['customerId']} not found", "sale")
        if doc.get("paymentMethod") == "credit" and customer is None:
            raise _invalid("credit sales require a customer", "sale")

        with self.store.transaction():
            created = self.create("sale", doc)

            for item in items:
                product = self.store.resolve_reference("product", self.store_id, item["productId"])
                if product is None:
                    logger.warning("Sale %s references unknown product %s", created.local_id, item["productId"])
                    continue
                self._move_stock(product, -item["qty"], "sale", "Sale", reference=("Sale", created.local_id))

            if customer is not None:
                spent = _cents(customer.data.get("totalSpent"), "totalSpent") + total
                self.update("customer", customer.local_id, {
                    "totalOrders": int(customer.data.get("totalOrders") or 0) + 1,
                    "totalSpent": from_cents(spent),
                    "lastOrderDate": to_utc_z(utcnow()),
                })

            if doc.get("paymentMethod") == "credit":
                due = credit_due_date or (utcnow() + DEFAULT_CREDIT_TERM)
                self.create("credit", {
                    "customerId": customer.server_id or customer.local_id,
                    "saleId": created.local_id,
                    "amount": doc["total"],
                    "amountPaid": 0,
                    "dueDate": to_utc_z(due),
                    "status": "pending",
                })
        return created

    def adjust_stock(
        self,
        product_local_id: str,
        delta: int,
        reason: str,
        movement_type: str = "adjustment",
    ) -> LocalRow:
        """Explicit stock change; returns the stock movement row."""
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise _invalid("delta must be a non-zero integer", "stockMovement")
        with self.store.transaction():
            product = self._require("product", product_local_id)
            return self._move_stock(product, delta, movement_type, reason, reference=("Adjustment", None))

    def _move_stock(self, product: LocalRow, delta: int, movement_type: str, reason: str, *, reference) -> LocalRow:
        quantity = int(product.data.get("quantity") or 0) + delta
        if quantity < 0:
            raise _invalid(
                f"insufficient stock for {product.data.get('name')}: {quantity - delta} on hand",
                "product", product.local_id,
            )
        self.update("product", product.local_id, {"quantity": quantity})
        ref_type, ref_id = reference
        movement = {
            "productId": product.server_id or product.local_id,
            "type": movement_type,
            "quantity": delta,
            "reason": reason,
            "referenceType": ref_type,
        }
        if ref_id:
            movement["referenceId"] = ref_id
        return self.create("stockMovement", movement)

    def record_credit_payment(self, credit_local_id: str, amount) -> LocalRow:
        """Add a payment to a credit; status and paidAt follow amountPaid."""
        paid = _cents(amount, "amount")
        if paid <= 0:
            raise _invalid("payment amount must be > 0", "credit", credit_local_id)
        with self.store.transaction():
            credit = self._require("credit", credit_local_id)
            total = _cents(credit.data.get("amount"), "amount")
            new_paid = _cents(credit.data.get("amountPaid"), "amountPaid") + paid
            if new_paid > total:
                raise _invalid("payment exceeds the remaining balance", "credit", credit_local_id)
            changes = {"amountPaid": from_cents(new_paid)}
            if new_paid == total:
                changes["paidAt"] = to_utc_z(utcnow())
            return self.update("credit", credit_local_id, changes)

