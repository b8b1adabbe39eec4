"""
Local Durable Store: on-device rows for every synchronizable collection.

One SQLite file per installation. Each collection gets a table keyed by
localId with the sync bookkeeping next to the document:

    local_id | store_id | server_id | dirty | base_version | sync_version |
    last_synced_at | status | deleted | revision | data | original_data |
    conflict_data | resolution_hint | derived | updated_at

plus three shared tables: _meta (cursors, schema version), _journal (pending
mutations, see journal.py) and _audit (local conflict decisions).

Every public write runs in one transaction with synchronous=FULL, so it is on
disk before the call returns. Database failures surface as StorageError.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterator
from uuid import uuid4

from sqlalchemy import (
    MetaData, Table, Column, String, Integer, Boolean, JSON, Text, Index,
    create_engine, event, select, delete, update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..schema import ENTITIES, get_schema
from ..time_utils import utcnow, to_utc_z
from .errors import StorageError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

STATUS_OK = "ok"
STATUS_INVALID = "invalid"
STATUS_NEEDS_ATTENTION = "needs-attention"

metadata = MetaData()


def _entity_table(entity: str) -> Table:
    name = get_schema(entity).collection
    return Table(
        name,
        metadata,
        Column("local_id", String(32), primary_key=True),
        Column("store_id", String(32), nullable=False),
        Column("server_id", String(32), nullable=True),
        Column("dirty", Boolean, nullable=False, default=False),
        Column("base_version", Integer, nullable=False, default=0),
        Column("sync_version", Integer, nullable=False, default=0),
        Column("last_synced_at", String(40), nullable=True),
        Column("status", String(16), nullable=False, default=STATUS_OK),
        Column("deleted", Boolean, nullable=False, default=False),
        Column("revision", Integer, nullable=False, default=0),
        Column("data", JSON, nullable=False),
        Column("original_data", JSON, nullable=True),
        Column("conflict_data", JSON, nullable=True),
        Column("resolution_hint", String(32), nullable=True),
        Column("derived", JSON, nullable=True),
        Column("updated_at", String(40), nullable=True),
        Index(f"ix_{name}_store_server", "store_id", "server_id"),
        Index(f"ix_{name}_store_dirty", "store_id", "dirty"),
        Index(f"ix_{name}_store_base", "store_id", "base_version"),
    )


ENTITY_TABLES: dict[str, Table] = {name: _entity_table(name) for name in ENTITIES}

meta_table = Table(
    "_meta",
    metadata,
    Column("key", String(128), primary_key=True),
    Column("value", JSON, nullable=True),
)

journal_table = Table(
    "_journal",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("store_id", String(32), nullable=False),
    Column("entity", String(32), nullable=False),
    Column("op", String(8), nullable=False),
    Column("local_id", String(32), nullable=False),
    Column("payload", JSON, nullable=True),
    Column("base_version", Integer, nullable=False, default=0),
    Column("created_at", String(40), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text, nullable=True),
    Index("ix_journal_store_row", "store_id", "entity", "local_id", "seq"),
    sqlite_autoincrement=True,
)

audit_table = Table(
    "_audit",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("store_id", String(32), nullable=False),
    Column("entity", String(32), nullable=False),
    Column("local_id", String(32), nullable=False),
    Column("server_id", String(32), nullable=True),
    Column("action", String(32), nullable=False),
    Column("strategy", String(32), nullable=True),
    Column("detail", JSON, nullable=True),
    Column("occurred_at", String(40), nullable=False),
    sqlite_autoincrement=True,
)

# find_by index names -> column
INDEXES = {
    "serverId": "server_id",
    "dirty": "dirty",
    "baseVersion": "base_version",
}


def new_local_id() -> str:
    return uuid4().hex


def now_iso() -> str:
    return to_utc_z(utcnow(), precise=True)


@dataclass
class LocalRow:
    """One LDS row: the document plus its sync bookkeeping."""
    entity: str
    local_id: str
    store_id: str
    data: dict[str, Any] = field(default_factory=dict)
    server_id: str | None = None
    dirty: bool = False
    base_version: int = 0
    sync_version: int = 0
    last_synced_at: str | None = None
    status: str = STATUS_OK
    deleted: bool = False
    revision: int = 0
    original_data: dict[str, Any] | None = None
    conflict_data: dict[str, Any] | None = None
    resolution_hint: str | None = None
    derived: dict[str, Any] | None = None
    updated_at: str | None = None

    @property
    def is_new(self) -> bool:
        return self.server_id is None

    def document(self) -> dict[str, Any]:
        """Wire-shaped view of the row as the resolver sees the client side."""
        doc = dict(self.data)
        doc.update({
            "_id": self.server_id,
            "localId": self.local_id,
            "storeId": self.store_id,
            "syncVersion": self.base_version,
            "updatedAt": self.updated_at,
            "deleted": self.deleted,
        })
        return doc

    def copy(self, **changes) -> "LocalRow":
        return replace(self, **changes)


class ApplyOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    PURGED = "purged"
    CONFLICT = "conflict"


@dataclass
class ApplyResult:
    outcome: ApplyOutcome
    row: LocalRow | None = None


def _set_sqlite_pragmas(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.close()


class LocalStore:
    """Crash-safe per-tenant rows keyed by localId."""

    def __init__(self, path: str, *, engine: Engine | None = None) -> None:
        self.path = path
        self.engine = engine or create_engine(f"sqlite:///{path}")
        event.listen(self.engine, "connect", _set_sqlite_pragmas)
        self._conn: Connection | None = None
        self.migrate()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """
        One SQLite transaction; nested calls join the outer one.

        The body must not await: the connection is shared by every store
        call made inside it.
        """
        if self._conn is not None:
            yield self._conn
            return
        try:
            with self.engine.begin() as conn:
                self._conn = conn
                try:
                    yield conn
                finally:
                    self._conn = None
        except SQLAlchemyError as e:
            logger.error("Local store transaction failed: %s", e)
            raise StorageError(f"local store write failed: {e}") from e

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def migrate(self) -> int:
        """
        Create missing tables and run forward migrations.

        A file written by newer code (schemaVersion > SCHEMA_VERSION) is
        refused rather than downgraded.
        """
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"cannot open local store {self.path}: {e}") from e

        with self.transaction():
            version = self.get_meta("schemaVersion")
            if version is None:
                self.set_meta("schemaVersion", SCHEMA_VERSION)
                return SCHEMA_VERSION
            if version > SCHEMA_VERSION:
                raise StorageError(
                    f"local store schema v{version} is newer than this client (v{SCHEMA_VERSION})"
                )
            for target in range(version + 1, SCHEMA_VERSION + 1):
                logger.info("Migrating local store to schema v%d", target)
                _MIGRATIONS[target](self._conn)
                self.set_meta("schemaVersion", target)
        return SCHEMA_VERSION

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    @staticmethod
    def _table(entity: str) -> Table:
        return ENTITY_TABLES[get_schema(entity).name]

    @staticmethod
    def _to_row(entity: str, record) -> LocalRow:
        m = record._mapping
        return LocalRow(
            entity=get_schema(entity).name,
            local_id=m["local_id"],
            store_id=m["store_id"],
            data=dict(m["data"] or {}),
            server_id=m["server_id"],
            dirty=bool(m["dirty"]),
            base_version=m["base_version"],
            sync_version=m["sync_version"],
            last_synced_at=m["last_synced_at"],
            status=m["status"],
            deleted=bool(m["deleted"]),
            revision=m["revision"],
            original_data=m["original_data"],
            conflict_data=m["conflict_data"],
            resolution_hint=m["resolution_hint"],
            derived=m["derived"],
            updated_at=m["updated_at"],
        )

    @staticmethod
    def _values(row: LocalRow) -> dict[str, Any]:
        return {
            "local_id": row.local_id,
            "store_id": row.store_id,
            "server_id": row.server_id,
            "dirty": row.dirty,
            "base_version": row.base_version,
            "sync_version": row.sync_version,
            "last_synced_at": row.last_synced_at,
            "status": row.status,
            "deleted": row.deleted,
            "revision": row.revision,
            "data": row.data,
            "original_data": row.original_data,
            "conflict_data": row.conflict_data,
            "resolution_hint": row.resolution_hint,
            "derived": row.derived,
            "updated_at": row.updated_at,
        }

    def get(self, entity: str, local_id: str) -> LocalRow | None:
        table = self._table(entity)
        with self.transaction() as conn:
            record = conn.execute(select(table).where(table.c.local_id == local_id)).first()
        return self._to_row(entity, record) if record is not None else None

    def put(self, row: LocalRow) -> LocalRow:
        """Insert or replace a row; durable before returning."""
        table = self._table(row.entity)
        values = self._values(row)
        stmt = sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.local_id],
            set_={k: stmt.excluded[k] for k in values if k != "local_id"},
        )
        with self.transaction() as conn:
            conn.execute(stmt)
        return row

    def find_by(self, entity: str, index: str, key: tuple) -> list[LocalRow]:
        """
        Rows matching a secondary index.

        index is one of "serverId", "dirty", "baseVersion"; key is
        (storeId, value).
        """
        if index not in INDEXES:
            raise KeyError(f"unknown index: {index}")
        store_id, value = key
        table = self._table(entity)
        column = table.c[INDEXES[index]]
        with self.transaction() as conn:
            records = conn.execute(
                select(table)
                .where(table.c.store_id == store_id, column == value)
                .order_by(table.c.updated_at, table.c.local_id)
            ).all()
        return [self._to_row(entity, r) for r in records]

    def find_by_server_id(self, entity: str, store_id: str, server_id: str) -> LocalRow | None:
        rows = self.find_by(entity, "serverId", (store_id, server_id))
        return rows[0] if rows else None

    def resolve_reference(self, entity: str, store_id: str, ref: str) -> LocalRow | None:
        """Row a reference field points at, by localId or serverId."""
        row = self.get(entity, ref)
        if row is not None and row.store_id == store_id:
            return row
        return self.find_by_server_id(entity, store_id, ref)

    def list_dirty(self, store_id: str, entities: tuple[str, ...] | None = None) -> list[LocalRow]:
        """Dirty rows of a tenant, entity by entity in the given order."""
        rows: list[LocalRow] = []
        for entity in entities or tuple(ENTITIES):
            rows.extend(self.find_by(entity, "dirty", (store_id, True)))
        return rows

    def list_rows(self, entity: str, store_id: str, *, include_deleted: bool = False) -> list[LocalRow]:
        table = self._table(entity)
        query = select(table).where(table.c.store_id == store_id)
        if not include_deleted:
            query = query.where(table.c.deleted.is_(False))
        with self.transaction() as conn:
            records = conn.execute(query.order_by(table.c.local_id)).all()
        return [self._to_row(entity, r) for r in records]

    def list_by_status(self, store_id: str, status: str) -> list[LocalRow]:
        rows: list[LocalRow] = []
        for entity, table in ENTITY_TABLES.items():
            with self.transaction() as conn:
                records = conn.execute(
                    select(table).where(table.c.store_id == store_id, table.c.status == status)
                ).all()
            rows.extend(self._to_row(entity, r) for r in records)
        return rows

    def purge(self, entity: str, local_id: str) -> None:
        table = self._table(entity)
        with self.transaction() as conn:
            conn.execute(delete(table).where(table.c.local_id == local_id))

    def set_derived(
        self,
        entity: str,
        local_id: str,
        derived: dict[str, Any],
        *,
        data: dict[str, Any] | None = None,
    ) -> None:
        """
        Store reconcile results. `data`, when given, replaces the document
        with recomputed aggregates; dirty and revision are left as they are.
        """
        values: dict[str, Any] = {"derived": derived}
        if data is not None:
            values["data"] = data
        table = self._table(entity)
        with self.transaction() as conn:
            conn.execute(update(table).where(table.c.local_id == local_id).values(**values))

    def set_status(
        self,
        entity: str,
        local_id: str,
        status: str,
        *,
        conflict_data: dict[str, Any] | None = None,
    ) -> None:
        table = self._table(entity)
        with self.transaction() as conn:
            conn.execute(
                update(table)
                .where(table.c.local_id == local_id)
                .values(status=status, conflict_data=conflict_data)
            )

    # ------------------------------------------------------------------
    # Server rows
    # ------------------------------------------------------------------

    def apply_server_row(self, entity: str, store_id: str, server_row: dict[str, Any]) -> ApplyResult:
        """
        Upsert a pulled server row keyed by serverId.

        - unknown row: inserted clean (tombstones are skipped)
        - clean row at a lower version: overwritten, or purged for a tombstone
        - dirty/invalid/needs-attention row at a lower version: CONFLICT, row untouched
        - row already at or above the server version: UNCHANGED

        Applying the same server row twice is a no-op the second time.
        """
        schema = get_schema(entity)
        server_id = server_row["_id"]
        version = int(server_row.get("syncVersion") or 0)

        with self.transaction():
            local = self.find_by_server_id(schema.name, store_id, server_id)

            if local is None:
                if server_row.get("deleted"):
                    return ApplyResult(ApplyOutcome.UNCHANGED)
                row = LocalRow(
                    entity=schema.name,
                    local_id=new_local_id(),
                    store_id=store_id,
                    data=schema.project(server_row),
                    server_id=server_id,
                    base_version=version,
                    sync_version=version,
                    last_synced_at=server_row.get("lastSyncedAt"),
                    updated_at=server_row.get("updatedAt"),
                )
                self.put(row)
                return ApplyResult(ApplyOutcome.INSERTED, row)

            if local.base_version >= version:
                return ApplyResult(ApplyOutcome.UNCHANGED, local)

            if local.dirty or local.status != STATUS_OK:
                return ApplyResult(ApplyOutcome.CONFLICT, local)

            if server_row.get("deleted"):
                self.purge(schema.name, local.local_id)
                return ApplyResult(ApplyOutcome.PURGED, local)

            row = local.copy(
                data=schema.project(server_row),
                base_version=version,
                sync_version=version,
                last_synced_at=server_row.get("lastSyncedAt"),
                updated_at=server_row.get("updatedAt"),
            )
            self.put(row)
            return ApplyResult(ApplyOutcome.UPDATED, row)

    def mark_synced(
        self,
        entity: str,
        local_id: str,
        server_row: dict[str, Any],
        expected_revision: int,
    ) -> bool:
        """
        Record server acceptance of an upload.

        Returns True when the row is clean afterwards. If the UI mutated the
        row while the upload was in flight (revision moved), the newer local
        data is kept dirty but rebased on the accepted server version.
        """
        schema = get_schema(entity)
        version = int(server_row.get("syncVersion") or 0)
        with self.transaction():
            local = self.get(schema.name, local_id)
            if local is None:
                return True

            if local.revision != expected_revision:
                self.put(local.copy(
                    server_id=server_row.get("_id") or local.server_id,
                    base_version=version,
                    sync_version=version,
                    last_synced_at=server_row.get("lastSyncedAt"),
                ))
                return False

            if server_row.get("deleted"):
                self.purge(schema.name, local_id)
                return True

            self.put(local.copy(
                data=schema.project(server_row),
                server_id=server_row.get("_id"),
                dirty=False,
                base_version=version,
                sync_version=version,
                last_synced_at=server_row.get("lastSyncedAt"),
                updated_at=server_row.get("updatedAt"),
                status=STATUS_OK,
                original_data=None,
                conflict_data=None,
                resolution_hint=None,
            ))
            return True

    # ------------------------------------------------------------------
    # Meta and audit
    # ------------------------------------------------------------------

    def get_meta(self, key: str, default: Any = None) -> Any:
        with self.transaction() as conn:
            record = conn.execute(select(meta_table.c.value).where(meta_table.c.key == key)).first()
        return record[0] if record is not None else default

    def set_meta(self, key: str, value: Any) -> None:
        stmt = sqlite_insert(meta_table).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(index_elements=[meta_table.c.key], set_={"value": stmt.excluded.value})
        with self.transaction() as conn:
            conn.execute(stmt)

    def audit(
        self,
        store_id: str,
        entity: str,
        local_id: str,
        action: str,
        *,
        server_id: str | None = None,
        strategy: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(audit_table.insert().values(
                store_id=store_id,
                entity=entity,
                local_id=local_id,
                server_id=server_id,
                action=action,
                strategy=strategy,
                detail=detail,
                occurred_at=now_iso(),
            ))

    def list_audit(self, store_id: str, entity: str | None = None) -> list[dict[str, Any]]:
        query = select(audit_table).where(audit_table.c.store_id == store_id)
        if entity is not None:
            query = query.where(audit_table.c.entity == entity)
        with self.transaction() as conn:
            records = conn.execute(query.order_by(audit_table.c.id)).all()
        return [dict(r._mapping) for r in records]


# schemaVersion -> step that upgrades the previous version to it
_MIGRATIONS: dict[int, Any] = {}
