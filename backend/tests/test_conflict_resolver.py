# Overview: Pytest coverage for the shared conflict resolver.

"""
Conflict Resolver Tests

The resolver is pure: these tests build wire documents by hand and check
the merged result of each strategy.
"""

import pytest

from possync.conflict_resolver import (
    resolve, fields_equal, canonical_strategy, ResolverRefusal, InvalidStrategyError,
    SERVER_WINS, CLIENT_WINS, LAST_WRITE_WINS, LAST_WRITE_WINS_BY_MTIME, MERGE_FIELDS, MANUAL,
)
from possync.schema import PRODUCT, CUSTOMER, CREDIT


def product(**overrides):
    doc = {
        "_id": "srv-1",
        "storeId": "store-a",
        "name": "Tea",
        "sku": "TEA-1",
        "price": 3.5,
        "quantity": 10,
        "syncVersion": 3,
        "updatedAt": "2026-10-01T10:00:00.000000Z",
        "deleted": False,
    }
    doc.update(overrides)
    return doc


def customer(**overrides):
    doc = {
        "_id": "cust-1",
        "storeId": "store-a",
        "name": "Ana",
        "tags": ["vip"],
        "totalOrders": 4,
        "totalSpent": 100.0,
        "syncVersion": 2,
        "deleted": False,
    }
    doc.update(overrides)
    return doc


class TestStrategyNames:

    def test_mtime_alias_is_last_write_wins(self):
        assert canonical_strategy(LAST_WRITE_WINS_BY_MTIME) == LAST_WRITE_WINS

    def test_unknown_strategy_rejected(self):
        with pytest.raises(InvalidStrategyError):
            resolve("coin-flip", product(), product(), schema=PRODUCT)


class TestServerAndClientWins:

    def test_server_wins_returns_server_fields(self):
        merged = resolve(SERVER_WINS, product(quantity=7, syncVersion=4), product(quantity=8), schema=PRODUCT)
        assert merged["quantity"] == 7
        assert merged["syncVersion"] == 4

    def test_client_wins_keeps_server_identity(self):
        client = product(_id="forged", storeId="store-b", quantity=8, syncVersion=1)
        merged = resolve(CLIENT_WINS, product(quantity=7, syncVersion=4), client, schema=PRODUCT)
        assert merged["quantity"] == 8
        assert merged["_id"] == "srv-1"
        assert merged["storeId"] == "store-a"
        assert merged["syncVersion"] == 4

    def test_unknown_client_fields_dropped(self):
        merged = resolve(CLIENT_WINS, product(), product(secret="x"), schema=PRODUCT)
        assert "secret" not in merged


class TestLastWriteWins:

    def test_newer_client_wins(self):
        client = product(price=4.0, updatedAt="2026-10-01T11:00:00.000000Z")
        merged = resolve(LAST_WRITE_WINS, product(), client, schema=PRODUCT)
        assert merged["price"] == 4.0

    def test_older_client_loses(self):
        client = product(price=4.0, updatedAt="2026-10-01T09:00:00.000000Z")
        merged = resolve(LAST_WRITE_WINS, product(), client, schema=PRODUCT)
        assert merged["price"] == 3.5

    def test_client_without_timestamp_loses(self):
        client = product(price=4.0, updatedAt=None)
        merged = resolve(LAST_WRITE_WINS, product(), client, schema=PRODUCT)
        assert merged["price"] == 3.5


class TestPerFieldStrategies:
    """Products: descriptive fields by mtime, quantity server-wins."""

    def resolve_product(self, server, client, original=None):
        return resolve(
            PRODUCT.default_strategy, server, client, original,
            schema=PRODUCT, field_strategies=PRODUCT.field_strategies,
        )

    def test_product_policy(self):
        assert canonical_strategy(PRODUCT.default_strategy) == LAST_WRITE_WINS
        assert PRODUCT.field_strategies == {"quantity": SERVER_WINS}

    def test_rename_kept_beside_newer_stock_edit(self):
        server = product(quantity=7, syncVersion=4, updatedAt="2026-10-01T12:00:00.000000Z")
        client = product(name="Green Tea", updatedAt="2026-10-01T11:00:00.000000Z")
        merged = self.resolve_product(server, client, original=product())
        assert merged["name"] == "Green Tea"
        assert merged["quantity"] == 7
        assert merged["syncVersion"] == 4

    def test_both_changed_quantity_server_wins(self):
        server = product(quantity=7, updatedAt="2026-10-01T09:00:00.000000Z")
        client = product(quantity=8, updatedAt="2026-10-01T11:00:00.000000Z")
        merged = self.resolve_product(server, client, original=product())
        assert merged["quantity"] == 7

    def test_client_only_stock_change_kept(self):
        server = product(price=3.75, updatedAt="2026-10-01T12:00:00.000000Z")
        client = product(quantity=8)
        merged = self.resolve_product(server, client, original=product())
        assert (merged["price"], merged["quantity"]) == (3.75, 8)

    @pytest.mark.parametrize("client_time,expected", [
        ("2026-10-01T11:00:00.000000Z", "Green Tea"),
        ("2026-10-01T09:00:00.000000Z", "Black Tea"),
    ])
    def test_both_renamed_newer_wins(self, client_time, expected):
        server = product(name="Black Tea", updatedAt="2026-10-01T10:00:00.000000Z")
        client = product(name="Green Tea", updatedAt=client_time)
        merged = self.resolve_product(server, client, original=product())
        assert merged["name"] == expected

    def test_without_ancestor_quantity_follows_server(self):
        server = product(quantity=7)
        client = product(name="Green Tea", quantity=9, updatedAt="2026-10-01T11:00:00.000000Z")
        merged = self.resolve_product(server, client)
        assert (merged["name"], merged["quantity"]) == ("Green Tea", 7)

    def test_server_delete_still_refused(self):
        with pytest.raises(ResolverRefusal):
            self.resolve_product(product(deleted=True), product(name="Green Tea"), original=product())


class TestMergeFields:

    def test_monetary_deltas_are_added(self):
        """Server 100->130, client 100->120: both sales count (150)."""
        server = customer(totalSpent=130.0, totalOrders=5, syncVersion=3)
        client = customer(totalSpent=120.0, totalOrders=5)
        original = customer(totalSpent=100.0, totalOrders=4)
        merged = resolve(MERGE_FIELDS, server, client, original, schema=CUSTOMER)
        assert merged["totalSpent"] == 150.0
        assert merged["syncVersion"] == 3

    def test_counter_takes_max(self):
        merged = resolve(
            MERGE_FIELDS, customer(totalOrders=6), customer(totalOrders=5), customer(totalOrders=4),
            schema=CUSTOMER,
        )
        assert merged["totalOrders"] == 6

    def test_sets_union_and_removal(self):
        server = customer(tags=["vip", "wholesale"])
        client = customer(tags=["late-payer"])
        original = customer(tags=["vip"])
        merged = resolve(MERGE_FIELDS, server, client, original, schema=CUSTOMER)
        assert merged["tags"] == ["wholesale", "late-payer"]

    def test_one_sided_change_applied(self):
        server = customer(phone="111")
        client = customer(phone="111", notes="prefers email")
        original = customer(phone="111")
        merged = resolve(MERGE_FIELDS, server, client, original, schema=CUSTOMER)
        assert merged["notes"] == "prefers email"

    def test_scalar_divergence_keeps_server(self):
        server = customer(phone="222")
        client = customer(phone="333")
        original = customer(phone="111")
        merged = resolve(MERGE_FIELDS, server, client, original, schema=CUSTOMER)
        assert merged["phone"] == "222"

    def test_money_without_ancestor_keeps_server(self):
        merged = resolve(
            MERGE_FIELDS, customer(totalSpent=130.0), customer(totalSpent=120.0), None,
            schema=CUSTOMER,
        )
        assert merged["totalSpent"] == 130.0

    def test_merge_is_deterministic(self):
        args = (customer(totalSpent=130.0), customer(totalSpent=120.0), customer())
        assert resolve(MERGE_FIELDS, *args, schema=CUSTOMER) == resolve(MERGE_FIELDS, *args, schema=CUSTOMER)


class TestRefusals:

    def test_manual_always_refuses(self):
        with pytest.raises(ResolverRefusal) as exc:
            resolve(MANUAL, product(), product(), schema=PRODUCT)
        assert exc.value.server["_id"] == "srv-1"

    def test_server_delete_refused_unless_server_wins(self):
        with pytest.raises(ResolverRefusal):
            resolve(MERGE_FIELDS, product(deleted=True), product(quantity=2), schema=PRODUCT)

    def test_server_delete_accepted_by_server_wins(self):
        merged = resolve(SERVER_WINS, product(deleted=True), product(quantity=2), schema=PRODUCT)
        assert merged["deleted"] is True

    def test_client_delete_never_inferred(self):
        with pytest.raises(ResolverRefusal):
            resolve(LAST_WRITE_WINS, product(), product(deleted=True), schema=PRODUCT)

    def test_client_delete_under_client_wins(self):
        merged = resolve(CLIENT_WINS, product(), product(deleted=True), schema=PRODUCT)
        assert merged["deleted"] is True


class TestFieldsEqual:

    def test_money_compared_in_cents(self):
        assert fields_equal(PRODUCT, product(price=3.5), product(price="3.50"))

    def test_bookkeeping_ignored(self):
        assert fields_equal(PRODUCT, product(syncVersion=1), product(syncVersion=9))

    def test_deleted_flag_counts(self):
        assert not fields_equal(PRODUCT, product(), product(deleted=True))

    def test_credit_status_normalized_on_merge(self):
        server = {
            "_id": "c1", "storeId": "s", "customerId": "cust", "saleId": "sale",
            "amount": 50.0, "amountPaid": 20.0, "dueDate": "2026-11-01T00:00:00Z",
            "status": "partial", "syncVersion": 2,
        }
        client = dict(server, amountPaid=50.0)
        merged = resolve(CLIENT_WINS, server, client, schema=CREDIT)
        assert merged["status"] == "paid"
