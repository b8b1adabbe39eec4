"""
Mutation Journal: ordered log of local mutations not yet accepted by the server.

Rows are appended by LocalWriter in the same transaction as the LDS write.
The engine retires entries for a row only after the server accepted an upload
that carried them: it reads the row's max seq when the upload starts and
retires entries <= that seq on success, so an edit made during the upload
stays pending.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, delete, update, func

from .errors import ErrorKind, ErrorStream, SyncError
from .local_store import LocalStore, journal_table, now_iso

logger = logging.getLogger(__name__)

OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"
OPS = (OP_CREATE, OP_UPDATE, OP_DELETE)


@dataclass(frozen=True)
class JournalEntry:
    seq: int
    store_id: str
    entity: str
    op: str
    local_id: str
    payload: dict[str, Any] | None
    base_version: int
    created_at: str
    attempts: int = 0
    last_error: str | None = None


def _entry(record) -> JournalEntry:
    m = record._mapping
    return JournalEntry(
        seq=m["seq"],
        store_id=m["store_id"],
        entity=m["entity"],
        op=m["op"],
        local_id=m["local_id"],
        payload=m["payload"],
        base_version=m["base_version"],
        created_at=m["created_at"],
        attempts=m["attempts"],
        last_error=m["last_error"],
    )


class MutationJournal:
    def __init__(
        self,
        store: LocalStore,
        *,
        soft_cap: int = 10_000,
        errors: ErrorStream | None = None,
    ) -> None:
        self.store = store
        self.soft_cap = soft_cap
        self.errors = errors
        self._over_cap: set[str] = set()

    def append(
        self,
        store_id: str,
        entity: str,
        op: str,
        local_id: str,
        payload: dict[str, Any] | None,
        base_version: int,
    ) -> int:
        """Append an entry; returns its seq. Past the soft cap a notice is emitted, never a refusal."""
        if op not in OPS:
            raise ValueError(f"unknown journal op: {op}")
        with self.store.transaction() as conn:
            result = conn.execute(journal_table.insert().values(
                store_id=store_id,
                entity=entity,
                op=op,
                local_id=local_id,
                payload=payload,
                base_version=base_version,
                created_at=now_iso(),
            ))
            seq = result.inserted_primary_key[0]
        self._check_soft_cap(store_id)
        return seq

    def _check_soft_cap(self, store_id: str) -> None:
        size = self.count(store_id)
        if size <= self.soft_cap:
            self._over_cap.discard(store_id)
            return
        if store_id in self._over_cap:
            return
        self._over_cap.add(store_id)
        logger.warning("Mutation journal for store %s holds %d entries (soft cap %d)", store_id, size, self.soft_cap)
        if self.errors is not None:
            self.errors.emit(SyncError(
                ErrorKind.JOURNAL_SOFT_CAP,
                f"{size} local changes are waiting to sync",
            ))

    def pending(
        self,
        store_id: str,
        entity: str | None = None,
        local_id: str | None = None,
    ) -> list[JournalEntry]:
        query = select(journal_table).where(journal_table.c.store_id == store_id)
        if entity is not None:
            query = query.where(journal_table.c.entity == entity)
        if local_id is not None:
            query = query.where(journal_table.c.local_id == local_id)
        with self.store.transaction() as conn:
            records = conn.execute(query.order_by(journal_table.c.seq)).all()
        return [_entry(r) for r in records]

    def max_seq(self, store_id: str, entity: str, local_id: str) -> int:
        with self.store.transaction() as conn:
            value = conn.execute(
                select(func.max(journal_table.c.seq)).where(
                    journal_table.c.store_id == store_id,
                    journal_table.c.entity == entity,
                    journal_table.c.local_id == local_id,
                )
            ).scalar()
        return value or 0

    def retire(self, store_id: str, entity: str, local_id: str, up_to_seq: int | None = None) -> int:
        """Drop a row's entries with seq <= up_to_seq (all of them when None)."""
        stmt = delete(journal_table).where(
            journal_table.c.store_id == store_id,
            journal_table.c.entity == entity,
            journal_table.c.local_id == local_id,
        )
        if up_to_seq is not None:
            stmt = stmt.where(journal_table.c.seq <= up_to_seq)
        with self.store.transaction() as conn:
            retired = conn.execute(stmt).rowcount
        if retired and store_id in self._over_cap:
            self._check_soft_cap(store_id)
        return retired

    def record_failure(self, store_id: str, entity: str, local_id: str, error: str) -> None:
        with self.store.transaction() as conn:
            conn.execute(
                update(journal_table)
                .where(
                    journal_table.c.store_id == store_id,
                    journal_table.c.entity == entity,
                    journal_table.c.local_id == local_id,
                )
                .values(attempts=journal_table.c.attempts + 1, last_error=error[:1000])
            )

    def count(self, store_id: str) -> int:
        with self.store.transaction() as conn:
            return conn.execute(
                select(func.count()).select_from(journal_table).where(journal_table.c.store_id == store_id)
            ).scalar() or 0
