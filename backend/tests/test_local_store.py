# Overview: Pytest coverage for the terminal's local durable store.

"""
Local Durable Store Tests

Verifies:
- Rows survive reopening the SQLite file
- Secondary indexes (serverId, dirty, baseVersion)
- apply_server_row: insert / update / conflict / purge, idempotent
- mark_synced: clean on success, rebased when edited mid-upload
- Schema version guard
"""

import pytest

from possync.client.errors import StorageError
from possync.client.local_store import (
    LocalStore, LocalRow, ApplyOutcome, SCHEMA_VERSION,
    STATUS_OK, STATUS_NEEDS_ATTENTION,
)


def server_product(**overrides):
    row = {
        "_id": "srv-1",
        "storeId": "store-a",
        "name": "Tea",
        "price": 3.5,
        "quantity": 10,
        "syncVersion": 3,
        "lastSyncedAt": "2026-10-01T10:00:00.000000Z",
        "updatedAt": "2026-10-01T10:00:00.000000Z",
        "deleted": False,
    }
    row.update(overrides)
    return row


class TestRows:

    def test_put_and_get_round_trip(self, local_store):
        row = LocalRow("product", "l1", "store-a", data={"name": "Tea", "price": 3.5}, dirty=True, revision=1)
        local_store.put(row)
        loaded = local_store.get("product", "l1")
        assert loaded == row

    def test_rows_survive_reopen(self, tmp_path):
        path = str(tmp_path / "reopen.sqlite3")
        store = LocalStore(path)
        store.put(LocalRow("customer", "c1", "store-a", data={"name": "Ana"}, dirty=True))
        store.close()

        reopened = LocalStore(path)
        try:
            assert reopened.get("customer", "c1").data == {"name": "Ana"}
        finally:
            reopened.close()

    def test_collection_name_lookup(self, local_store):
        local_store.put(LocalRow("stockMovement", "m1", "store-a", data={"quantity": -1}))
        assert local_store.get("stockMovements", "m1").entity == "stockMovement"

    def test_find_by_indexes(self, local_store):
        local_store.put(LocalRow("product", "l1", "store-a", server_id="s1", base_version=2))
        local_store.put(LocalRow("product", "l2", "store-a", dirty=True))
        local_store.put(LocalRow("product", "l3", "store-b", dirty=True))

        assert [r.local_id for r in local_store.find_by("product", "serverId", ("store-a", "s1"))] == ["l1"]
        assert [r.local_id for r in local_store.find_by("product", "dirty", ("store-a", True))] == ["l2"]
        assert [r.local_id for r in local_store.find_by("product", "baseVersion", ("store-a", 2))] == ["l1"]

    def test_unknown_index(self, local_store):
        with pytest.raises(KeyError):
            local_store.find_by("product", "name", ("store-a", "Tea"))

    def test_resolve_reference_by_local_or_server_id(self, local_store):
        local_store.put(LocalRow("customer", "c1", "store-a", server_id="srv-c1"))
        assert local_store.resolve_reference("customer", "store-a", "c1").local_id == "c1"
        assert local_store.resolve_reference("customer", "store-a", "srv-c1").local_id == "c1"
        assert local_store.resolve_reference("customer", "store-b", "c1") is None

    def test_list_dirty_follows_entity_order(self, local_store):
        local_store.put(LocalRow("sale", "s1", "store-a", dirty=True))
        local_store.put(LocalRow("product", "p1", "store-a", dirty=True))
        rows = local_store.list_dirty("store-a", ("product", "sale"))
        assert [r.entity for r in rows] == ["product", "sale"]

    def test_nested_transaction_rolls_back_together(self, local_store):
        with pytest.raises(RuntimeError):
            with local_store.transaction():
                local_store.put(LocalRow("product", "l1", "store-a"))
                with local_store.transaction():
                    local_store.set_meta("k", 1)
                raise RuntimeError("crash")
        assert local_store.get("product", "l1") is None
        assert local_store.get_meta("k") is None


class TestApplyServerRow:

    def test_unknown_row_inserted_clean(self, local_store):
        result = local_store.apply_server_row("product", "store-a", server_product())
        assert result.outcome == ApplyOutcome.INSERTED
        row = result.row
        assert row.server_id == "srv-1"
        assert row.dirty is False
        assert row.base_version == 3
        assert row.data["quantity"] == 10
        assert "storeId" not in row.data

    def test_applying_twice_is_a_no_op(self, local_store):
        local_store.apply_server_row("product", "store-a", server_product())
        before = local_store.find_by_server_id("product", "store-a", "srv-1")
        result = local_store.apply_server_row("product", "store-a", server_product())
        assert result.outcome == ApplyOutcome.UNCHANGED
        assert local_store.find_by_server_id("product", "store-a", "srv-1") == before
        assert len(local_store.list_rows("product", "store-a")) == 1

    def test_clean_row_updated_by_newer_version(self, local_store):
        local_store.apply_server_row("product", "store-a", server_product())
        result = local_store.apply_server_row("product", "store-a", server_product(quantity=7, syncVersion=4))
        assert result.outcome == ApplyOutcome.UPDATED
        assert result.row.data["quantity"] == 7
        assert result.row.base_version == 4

    def test_older_version_ignored(self, local_store):
        local_store.apply_server_row("product", "store-a", server_product(syncVersion=5))
        result = local_store.apply_server_row("product", "store-a", server_product(quantity=1, syncVersion=4))
        assert result.outcome == ApplyOutcome.UNCHANGED

    def test_dirty_row_is_conflict_and_untouched(self, local_store):
        inserted = local_store.apply_server_row("product", "store-a", server_product()).row
        local_store.put(inserted.copy(dirty=True, data={**inserted.data, "quantity": 8}))
        result = local_store.apply_server_row("product", "store-a", server_product(quantity=7, syncVersion=4))
        assert result.outcome == ApplyOutcome.CONFLICT
        assert local_store.get("product", inserted.local_id).data["quantity"] == 8

    def test_needs_attention_row_is_conflict(self, local_store):
        inserted = local_store.apply_server_row("product", "store-a", server_product()).row
        local_store.put(inserted.copy(status=STATUS_NEEDS_ATTENTION))
        result = local_store.apply_server_row("product", "store-a", server_product(syncVersion=4))
        assert result.outcome == ApplyOutcome.CONFLICT

    def test_tombstone_purges_clean_row(self, local_store):
        inserted = local_store.apply_server_row("product", "store-a", server_product()).row
        result = local_store.apply_server_row("product", "store-a", server_product(deleted=True, syncVersion=4))
        assert result.outcome == ApplyOutcome.PURGED
        assert local_store.get("product", inserted.local_id) is None

    def test_unknown_tombstone_skipped(self, local_store):
        result = local_store.apply_server_row("product", "store-a", server_product(deleted=True))
        assert result.outcome == ApplyOutcome.UNCHANGED
        assert local_store.list_rows("product", "store-a", include_deleted=True) == []


class TestMarkSynced:

    def test_clean_after_accept(self, local_store):
        local_store.put(LocalRow("product", "l1", "store-a", data={"name": "Tea"}, dirty=True, revision=1,
                                 original_data={"name": "Te"}))
        assert local_store.mark_synced("product", "l1", server_product(_id="s9", syncVersion=1), 1) is True
        row = local_store.get("product", "l1")
        assert row.dirty is False
        assert row.server_id == "s9"
        assert row.base_version == row.sync_version == 1
        assert row.original_data is None
        assert row.status == STATUS_OK

    def test_edit_during_upload_stays_dirty(self, local_store):
        local_store.put(LocalRow("product", "l1", "store-a", data={"name": "Tea 2"}, dirty=True, revision=2))
        assert local_store.mark_synced("product", "l1", server_product(_id="s9", syncVersion=1), 1) is False
        row = local_store.get("product", "l1")
        assert row.dirty is True
        assert row.server_id == "s9"
        assert row.base_version == 1
        assert row.data["name"] == "Tea 2"

    def test_tombstone_ack_purges(self, local_store):
        local_store.put(LocalRow("product", "l1", "store-a", server_id="s9", deleted=True, dirty=True, revision=3))
        local_store.mark_synced("product", "l1", server_product(_id="s9", deleted=True, syncVersion=4), 3)
        assert local_store.get("product", "l1") is None


class TestMetaAndSchema:

    def test_meta_round_trip(self, local_store):
        local_store.set_meta("cursor:store-a:product", {"ts": "2026-10-01T10:00:00Z", "id": "x"})
        assert local_store.get_meta("cursor:store-a:product")["id"] == "x"
        assert local_store.get_meta("missing", default=0) == 0

    def test_schema_version_recorded(self, local_store):
        assert local_store.get_meta("schemaVersion") == SCHEMA_VERSION

    def test_newer_file_refused(self, tmp_path):
        path = str(tmp_path / "future.sqlite3")
        store = LocalStore(path)
        store.set_meta("schemaVersion", SCHEMA_VERSION + 1)
        store.close()
        with pytest.raises(StorageError):
            LocalStore(path)

    def test_audit_log(self, local_store):
        local_store.audit("store-a", "customer", "c1", "resolved", server_id="s1", strategy="merge-fields",
                          detail={"serverVersion": 3})
        entries = local_store.list_audit("store-a")
        assert entries[0]["strategy"] == "merge-fields"
        assert entries[0]["detail"] == {"serverVersion": 3}
