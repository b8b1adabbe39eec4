# Overview: Pytest coverage for local (offline) writes made by the POS UI.

import pytest

from possync.client.errors import ErrorKind, SyncError
from possync.client.journal import OP_CREATE, OP_UPDATE, OP_DELETE
from possync.client.local_store import LocalRow
from possync.schema import get_schema


@pytest.fixture
def tea(writer):
    return writer.create("product", {"name": "Tea", "price": 3.5, "quantity": 10, "lowStockThreshold": 2})


@pytest.fixture
def synced_customer(local_store):
    row = LocalRow(
        "customer", "cust-1", "store-a",
        data={"name": "Ana", "totalSpent": 100.0, "totalOrders": 4},
        server_id="srv-cust-1", base_version=2, sync_version=2,
    )
    local_store.put(row)
    return row


class TestGenericMutations:

    def test_create_is_dirty_without_server_id(self, writer, journal, tea):
        assert tea.is_new
        assert tea.dirty
        assert tea.base_version == 0
        [entry] = journal.pending("store-a")
        assert entry.op == OP_CREATE
        assert entry.local_id == tea.local_id

    def test_create_requires_fields(self, writer):
        with pytest.raises(SyncError) as exc:
            writer.create("product", {"name": "Tea"})
        assert exc.value.kind == ErrorKind.VALIDATION

    def test_create_drops_unknown_fields(self, writer):
        row = writer.create("category", {"name": "Drinks", "secret": 1})
        assert row.data == {"name": "Drinks"}

    def test_update_keeps_ancestor_from_first_edit(self, writer, local_store, synced_customer):
        writer.update("customer", "cust-1", {"phone": "1"})
        writer.update("customer", "cust-1", {"phone": "2"})
        row = local_store.get("customer", "cust-1")
        assert row.data["phone"] == "2"
        assert row.original_data == synced_customer.data
        assert row.revision == 2

    def test_update_journals_patch_with_base_version(self, writer, journal, synced_customer):
        writer.update("customer", "cust-1", {"phone": "1"})
        [entry] = journal.pending("store-a")
        assert entry.op == OP_UPDATE
        assert entry.payload == {"phone": "1"}
        assert entry.base_version == 2

    def test_delete_of_never_synced_row_purges(self, writer, local_store, journal, tea):
        assert writer.delete("product", tea.local_id) is None
        assert local_store.get("product", tea.local_id) is None
        assert journal.pending("store-a") == []

    def test_delete_of_synced_row_flags_it(self, writer, journal, synced_customer):
        row = writer.delete("customer", "cust-1")
        assert row.deleted and row.dirty
        assert journal.pending("store-a")[-1].op == OP_DELETE

    def test_update_of_unknown_row(self, writer):
        with pytest.raises(SyncError):
            writer.update("customer", "nope", {"phone": "1"})

    def test_reference_fields(self):
        assert get_schema("sale").reference_fields == ["employeeId", "customerId", "shiftId"]
        assert get_schema("category").reference_fields == []


class TestSale:

    def test_sale_side_effects(self, writer, local_store, tea, synced_customer):
        sale = writer.record_sale({
            "items": [{"productId": tea.local_id, "qty": 2, "price": 3.5}],
            "paymentMethod": "cash",
            "customerId": "srv-cust-1",
        })
        assert sale.data["subtotal"] == 7.0
        assert sale.data["total"] == 7.0
        assert sale.data["status"] == "completed"

        assert local_store.get("product", tea.local_id).data["quantity"] == 8
        movements = local_store.list_rows("stockMovement", "store-a")
        assert len(movements) == 1
        assert movements[0].data["quantity"] == -2
        assert movements[0].data["referenceId"] == sale.local_id

        customer = local_store.get("customer", "cust-1")
        assert customer.data["totalSpent"] == 107.0
        assert customer.data["totalOrders"] == 5
        assert customer.original_data["totalSpent"] == 100.0

    def test_credit_sale_creates_credit(self, writer, local_store, tea, synced_customer):
        sale = writer.record_sale({
            "items": [{"productId": tea.local_id, "qty": 1, "price": 3.5}],
            "paymentMethod": "credit",
            "customerId": "cust-1",
        })
        [credit] = local_store.list_rows("credit", "store-a")
        assert credit.data["saleId"] == sale.local_id
        assert credit.data["customerId"] == "srv-cust-1"
        assert credit.data["amount"] == 3.5
        assert credit.data["status"] == "pending"

    def test_credit_sale_requires_customer(self, writer, tea):
        with pytest.raises(SyncError):
            writer.record_sale({
                "items": [{"productId": tea.local_id, "qty": 1, "price": 3.5}],
                "paymentMethod": "credit",
            })

    def test_insufficient_stock_rolls_back_everything(self, writer, local_store, journal, tea):
        before = journal.count("store-a")
        with pytest.raises(SyncError):
            writer.record_sale({
                "items": [{"productId": tea.local_id, "qty": 11, "price": 3.5}],
                "paymentMethod": "cash",
            })
        assert local_store.list_rows("sale", "store-a") == []
        assert local_store.get("product", tea.local_id).data["quantity"] == 10
        assert journal.count("store-a") == before

    def test_total_equation_checked(self, writer, tea):
        with pytest.raises(SyncError):
            writer.record_sale({
                "items": [{"productId": tea.local_id, "qty": 1, "price": 3.5}],
                "paymentMethod": "cash",
                "total": 99,
            })


class TestStockAndCredit:

    def test_adjust_stock(self, writer, local_store, tea):
        movement = writer.adjust_stock(tea.local_id, 5, "delivery", "purchase")
        assert movement.data["type"] == "purchase"
        assert local_store.get("product", tea.local_id).data["quantity"] == 15

    def test_adjust_stock_rejects_zero(self, writer, tea):
        with pytest.raises(SyncError):
            writer.adjust_stock(tea.local_id, 0, "noop")

    def test_credit_payment_to_paid(self, writer, local_store):
        credit = writer.create("credit", {
            "customerId": "c", "saleId": "s", "amount": 50, "amountPaid": 0,
            "dueDate": "2026-12-01T00:00:00Z",
        })
        writer.record_credit_payment(credit.local_id, 20)
        assert local_store.get("credit", credit.local_id).data["status"] == "partial"
        writer.record_credit_payment(credit.local_id, 30)
        row = local_store.get("credit", credit.local_id)
        assert row.data["status"] == "paid"
        assert row.data["paidAt"] is not None

    def test_overpayment_refused(self, writer):
        credit = writer.create("credit", {
            "customerId": "c", "saleId": "s", "amount": 50, "dueDate": "2026-12-01T00:00:00Z",
        })
        with pytest.raises(SyncError):
            writer.record_credit_payment(credit.local_id, 60)
