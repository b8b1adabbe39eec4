# Overview: Pytest coverage for tenant isolation behavior.

"""
Multi-Tenant Isolation Tests

SECURITY TESTS: Prove that cross-tenant access is denied for every collection.

These tests create two stores with their own tokens, then verify that:
1. Store X cannot read/write/delete rows of store Y (403, row not returned)
2. Passing a foreign storeId is rejected
3. Pulls only ever return the caller's rows
4. Security events are logged for cross-tenant access attempts
"""

import pytest
from flask import g

from possync.extensions import db
from possync.models import SecurityEvent, Product
from possync.services.tenant_service import (
    TenantAccessError, RecordNotFound, get_current_store_id, get_owned_record,
    require_same_store, scoped_query,
)


def violations():
    return db.session.query(SecurityEvent).filter_by(event_type="TENANT_VIOLATION").count()


@pytest.fixture(scope='function')
def product_b(client, headers_b):
    resp = client.post("/api/products", json={"name": "Harbour Tea", "sku": "HB-1", "price": 2}, headers=headers_b)
    assert resp.status_code == 201
    return resp.json


class TestTenantServiceHelpers:
    """Test tenant_service helper functions."""

    def test_require_same_store_accepts_own_and_missing(self, app, store_a):
        require_same_store(None, store_a.id)
        require_same_store(store_a.id, store_a.id)

    def test_require_same_store_cross_tenant(self, app, store_a, store_b):
        with app.test_request_context():
            with pytest.raises(TenantAccessError):
                require_same_store(store_b.id, store_a.id)
        assert violations() == 1

    def test_get_current_store_id_requires_context(self, app):
        with app.test_request_context():
            with pytest.raises(TenantAccessError):
                get_current_store_id()
            g.store_id = "abc"
            assert get_current_store_id() == "abc"

    def test_get_owned_record_foreign_vs_missing(self, app, store_a, product_b):
        with app.test_request_context():
            with pytest.raises(TenantAccessError):
                get_owned_record(Product, product_b["_id"], store_a.id)
            with pytest.raises(RecordNotFound):
                get_owned_record(Product, "does-not-exist", store_a.id)

    def test_scoped_query_filters(self, app, store_a, store_b, product_b):
        assert scoped_query(Product, store_a.id).count() == 0
        assert scoped_query(Product, store_b.id).count() == 1


class TestCrossTenantRoutes:
    """Store A's token against store B's rows."""

    def test_read_foreign_row_is_403(self, client, headers_a, product_b):
        before = violations()
        resp = client.get(f"/api/products/{product_b['_id']}", headers=headers_a)
        assert resp.status_code == 403
        assert "name" not in resp.json
        assert violations() == before + 1

    def test_update_foreign_row_is_403(self, client, headers_a, product_b):
        resp = client.put(
            f"/api/products/{product_b['_id']}",
            json={"price": 0.01, "baseVersion": 1},
            headers=headers_a,
        )
        assert resp.status_code == 403
        assert db.session.get(Product, product_b["_id"]).price_cents == 200

    def test_delete_foreign_row_is_403(self, client, headers_a, product_b):
        resp = client.delete(f"/api/products/{product_b['_id']}?baseVersion=1", headers=headers_a)
        assert resp.status_code == 403
        assert db.session.get(Product, product_b["_id"]).deleted is False

    def test_resolve_foreign_row_is_403(self, client, headers_a, product_b):
        resp = client.post("/api/conflicts/resolve", json={
            "entityType": "product",
            "entityId": product_b["_id"],
            "strategy": "client-wins",
            "clientData": {"price": 0.01},
        }, headers=headers_a)
        assert resp.status_code == 403

    def test_foreign_store_id_in_pull(self, client, headers_a, store_b):
        resp = client.get(f"/api/products?storeId={store_b.id}", headers=headers_a)
        assert resp.status_code == 403

    def test_pull_never_returns_foreign_rows(self, client, headers_a, product_b):
        resp = client.get("/api/products", headers=headers_a)
        assert resp.status_code == 200
        assert resp.json["items"] == []

    def test_violation_event_carries_context(self, client, headers_a, store_a, product_b):
        client.get(f"/api/products/{product_b['_id']}", headers=headers_a)
        event = db.session.query(SecurityEvent).filter_by(event_type="TENANT_VIOLATION").one()
        assert event.store_id == store_a.id
        assert event.user_id == "user-a"
        assert event.action == "GET"
        assert product_b["_id"] in event.reason

    @pytest.mark.parametrize("collection", [
        "products", "categories", "customers", "employees", "credits", "sales", "shifts", "stockMovements",
    ])
    def test_every_collection_scoped(self, client, headers_a, collection):
        resp = client.get(f"/api/{collection}", headers=headers_a)
        assert resp.status_code == 200
        assert resp.json["items"] == []
