"""
Sync Engine: client-side reconciler between the local store and the server.

One pass runs four phases in order:

    P1 PUSHING      upload dirty rows (one request per row, latest state)
    P2 PULLING      page through rows changed on the server since the cursor
    P3 RESOLVING    run the conflict resolver on rows that diverged
    P4 RECONCILING  recompute cross-row aggregates of the rows touched

State machine: IDLE -> PUSHING -> PULLING -> RESOLVING -> RECONCILING -> IDLE.

At most one pass per tenant runs at a time. A trigger arriving during a pass
is coalesced into a single follow-up pass. Merged rows produced by P3 are
uploaded by the next pass, never by the current one.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ..conflict_resolver import (
    resolve, fields_equal, canonical_strategy, ResolverRefusal,
    SERVER_WINS, CLIENT_WINS, MANUAL,
)
from ..money import to_cents, from_cents, MoneyFormatError
from ..schema import REFERENCES, get_schema, effective_credit_status
from ..time_utils import utcnow, to_utc_z
from .backoff import Backoff
from .config import ClientConfig
from .errors import ErrorKind, ErrorStream, SyncError, StorageError
from .journal import MutationJournal, OP_CREATE, OP_UPDATE, OP_DELETE
from .local_store import (
    LocalStore, LocalRow, ApplyOutcome, now_iso,
    STATUS_OK, STATUS_INVALID, STATUS_NEEDS_ATTENTION,
)
from .transport import SyncApi, Accepted, VersionConflict, Rejected, TransientFailure

logger = logging.getLogger(__name__)

# Referenced rows are uploaded before the rows that point at them
PUSH_ORDER = ("category", "product", "customer", "employee", "shift", "sale", "credit", "stockMovement")

MANUAL_CHOICES = ("server", "client", "custom")


class SyncEngineState(str, Enum):
    IDLE = "IDLE"
    PUSHING = "PUSHING"
    PULLING = "PULLING"
    RESOLVING = "RESOLVING"
    RECONCILING = "RECONCILING"


@dataclass
class StrategyConfig:
    """Conflict strategy per entity type; entity defaults come from the schema."""
    overrides: dict[str, str] = field(default_factory=dict)

    def for_entity(self, entity: str) -> str:
        schema = get_schema(entity)
        return canonical_strategy(self.overrides.get(schema.name) or schema.default_strategy)

    def field_strategies(self, entity: str) -> dict[str, str]:
        """Per-field strategies of the schema; an entity override replaces them all."""
        schema = get_schema(entity)
        if schema.name in self.overrides:
            return {}
        return schema.field_strategies


@dataclass
class PendingConflict:
    entity: str
    local_id: str
    server: dict[str, Any]


@dataclass
class PassReport:
    store_id: str
    reason: str = "manual"
    started_at: str = field(default_factory=now_iso)
    finished_at: str | None = None
    pushed: int = 0
    pulled: int = 0
    conflicts: int = 0
    resolved: int = 0
    refused: int = 0
    invalid: int = 0
    deferred: int = 0
    errors: list[SyncError] = field(default_factory=list)
    aborted: str | None = None
    coalesced: bool = False
    retry_in: float | None = None

    @property
    def ok(self) -> bool:
        return self.aborted is None and not self.coalesced

    def to_dict(self) -> dict[str, Any]:
        return {
            "storeId": self.store_id,
            "reason": self.reason,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "conflicts": self.conflicts,
            "resolved": self.resolved,
            "refused": self.refused,
            "invalid": self.invalid,
            "deferred": self.deferred,
            "errors": [e.to_dict() for e in self.errors],
            "aborted": self.aborted,
            "coalesced": self.coalesced,
            "retryIn": self.retry_in,
        }


class PassAborted(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UnsyncedReference(Exception):
    """A row points at a local row that has not reached the server yet."""

    def __init__(self, entity: str, local_id: str) -> None:
        super().__init__(f"{entity} {local_id} has no server id")
        self.entity = entity
        self.local_id = local_id


class SyncEngine:
    """Orchestrates P1..P4 for one authenticated session."""

    def __init__(
        self,
        store: LocalStore,
        journal: MutationJournal,
        api: SyncApi,
        store_id: str,
        *,
        config: ClientConfig | None = None,
        strategies: StrategyConfig | None = None,
        errors: ErrorStream | None = None,
        backoff: Backoff | None = None,
        on_unauthenticated: Callable[[], None] | None = None,
    ) -> None:
        cfg = config or ClientConfig()
        self.store = store
        self.journal = journal
        self.api = api
        self.store_id = store_id
        self.entities = tuple(e for e in PUSH_ORDER if e in cfg.entities)
        self.page_limit = cfg.pull_page_limit
        self.strategies = strategies or StrategyConfig()
        self.errors = errors or ErrorStream()
        self.backoff = backoff or Backoff(
            base=cfg.backoff_base, factor=cfg.backoff_factor,
            cap=cfg.backoff_cap, jitter=cfg.backoff_jitter,
        )
        self.on_unauthenticated = on_unauthenticated

        self.state = SyncEngineState.IDLE
        self.last_report: PassReport | None = None
        self._latches: dict[str, asyncio.Lock] = {}
        self._follow_up = False
        self._cancel_reason: str | None = None
        self._state_listeners: list[Callable[[SyncEngineState], None]] = []

    # ------------------------------------------------------------------
    # Triggers and cancellation
    # ------------------------------------------------------------------

    def _latch(self) -> asyncio.Lock:
        latch = self._latches.get(self.store_id)
        if latch is None:
            latch = self._latches[self.store_id] = asyncio.Lock()
        return latch

    @property
    def running(self) -> bool:
        latch = self._latches.get(self.store_id)
        return latch is not None and latch.locked()

    def on_state_change(self, callback: Callable[[SyncEngineState], None]) -> None:
        self._state_listeners.append(callback)

    def _set_state(self, state: SyncEngineState) -> None:
        if state == self.state:
            return
        self.state = state
        for cb in list(self._state_listeners):
            try:
                cb(state)
            except Exception:
                logger.exception("Engine state listener failed")

    def cancel(self, reason: str = "offline") -> None:
        """Stop the running pass after its in-flight request is applied."""
        self._cancel_reason = reason

    def resume(self) -> None:
        self._cancel_reason = None

    def _checkpoint(self) -> None:
        if self._cancel_reason is not None:
            raise PassAborted(self._cancel_reason)

    async def sync(self, reason: str = "manual") -> PassReport:
        """
        Run one pass for this session's tenant.

        If a pass is already running the trigger is coalesced: the running
        pass is followed by exactly one more, and this call returns at once.
        """
        latch = self._latch()
        if latch.locked():
            self._follow_up = True
            logger.debug("Sync trigger (%s) coalesced into the running pass", reason)
            return PassReport(self.store_id, reason=reason, coalesced=True)

        async with latch:
            report = await self._run_pass(reason)
            while self._follow_up and report.aborted is None:
                self._follow_up = False
                report = await self._run_pass("follow-up")
            self._follow_up = False
        return report

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def _run_pass(self, reason: str) -> PassReport:
        report = PassReport(self.store_id, reason=reason)
        conflicts: dict[tuple[str, str], PendingConflict] = {}
        touched: dict[str, set[str]] = defaultdict(set)
        logger.info("Sync pass started for store %s (%s)", self.store_id, reason)

        try:
            self._checkpoint()
            self._set_state(SyncEngineState.PUSHING)
            await self._push(report, conflicts, touched)

            self._set_state(SyncEngineState.PULLING)
            await self._pull(report, conflicts, touched)

            self._set_state(SyncEngineState.RESOLVING)
            self._resolve_conflicts(report, conflicts.values(), touched)

            self._set_state(SyncEngineState.RECONCILING)
            self.reconcile(touched)

            self.backoff.reset()
            self.store.set_meta(f"lastSyncAt:{self.store_id}", now_iso())
        except PassAborted as e:
            report.aborted = e.reason
            logger.info("Sync pass aborted: %s", e.reason)
        except StorageError as e:
            report.aborted = "storage"
            self._report_error(report, e)
        finally:
            self._set_state(SyncEngineState.IDLE)
            report.finished_at = now_iso()
            self.last_report = report

        logger.info(
            "Sync pass finished: pushed=%d pulled=%d conflicts=%d resolved=%d refused=%d aborted=%s",
            report.pushed, report.pulled, report.conflicts, report.resolved, report.refused, report.aborted,
        )
        return report

    def _report_error(self, report: PassReport, error: SyncError) -> None:
        report.errors.append(error)
        self.errors.emit(error)

    def _transient(self, report: PassReport, message: str) -> None:
        delay = self.backoff.next_delay()
        report.retry_in = delay
        logger.warning("Transient sync failure (%s); retrying in %.1fs", message, delay)
        raise PassAborted("transient-network")

    def _unauthenticated(self, report: PassReport, rejected: Rejected) -> None:
        self._report_error(report, SyncError(ErrorKind.UNAUTHENTICATED, rejected.message, status=rejected.status))
        if self.on_unauthenticated is not None:
            self.on_unauthenticated()
        raise PassAborted("unauthenticated")

    # ------------------------------------------------------------------
    # P1 push
    # ------------------------------------------------------------------

    async def _push(self, report, conflicts, touched) -> None:
        for row in self.store.list_dirty(self.store_id, self.entities):
            self._checkpoint()
            if row.status != STATUS_OK:
                continue
            if row.deleted and row.is_new:
                self.store.purge(row.entity, row.local_id)
                self.journal.retire(self.store_id, row.entity, row.local_id)
                continue

            payload = None
            if not row.deleted:
                try:
                    payload = self._outbound(row)
                except UnsyncedReference as e:
                    # Stays dirty; the next pass retries once the target has a server id
                    logger.info(
                        "%s %s waits for %s %s to reach the server",
                        row.entity, row.local_id, e.entity, e.local_id,
                    )
                    report.deferred += 1
                    continue

            up_to_seq = self.journal.max_seq(self.store_id, row.entity, row.local_id)
            result = await self._upload(row, payload)

            if isinstance(result, Accepted):
                with self.store.transaction():
                    self.store.mark_synced(row.entity, row.local_id, result.row, row.revision)
                    self.journal.retire(self.store_id, row.entity, row.local_id, up_to_seq)
                report.pushed += 1
                touched[row.entity].add(row.local_id)

            elif isinstance(result, VersionConflict):
                conflicts[(row.entity, row.local_id)] = PendingConflict(row.entity, row.local_id, result.current)
                report.conflicts += 1

            elif isinstance(result, TransientFailure):
                self.journal.record_failure(self.store_id, row.entity, row.local_id, result.message)
                self._transient(report, result.message)

            elif isinstance(result, Rejected):
                self._handle_rejected(report, row, result)

    async def _upload(self, row: LocalRow, payload: dict[str, Any] | None):
        if row.deleted:
            return await self.api.delete(row.entity, row.server_id, row.base_version)
        if row.is_new:
            return await self.api.create(row.entity, payload)
        return await self.api.update(row.entity, row.server_id, payload, row.base_version)

    def _outbound(self, row: LocalRow) -> dict[str, Any]:
        """
        Row document with every reference rewritten to a server id.

        Raises UnsyncedReference when a referenced local row has no server
        id yet. A reference that matches no local row is sent as is.
        """
        schema = get_schema(row.entity)
        doc = schema.project(row.data)
        for name in schema.reference_fields:
            if doc.get(name):
                doc[name] = self._server_ref(REFERENCES[name], doc[name])
        if isinstance(doc.get("items"), list):
            doc["items"] = [
                {**item, "productId": self._server_ref("product", item.get("productId"))}
                for item in doc["items"]
            ]
        if doc.get("referenceType") == "Sale" and doc.get("referenceId"):
            doc["referenceId"] = self._server_ref("sale", doc["referenceId"])
        return doc

    def _server_ref(self, entity: str, ref):
        if not ref:
            return ref
        target = self.store.get(entity, ref)
        if target is None or target.store_id != self.store_id:
            return ref
        if not target.server_id:
            raise UnsyncedReference(entity, ref)
        return target.server_id

    def _handle_rejected(self, report: PassReport, row: LocalRow, rejected: Rejected) -> None:
        if rejected.kind == ErrorKind.UNAUTHENTICATED:
            self._unauthenticated(report, rejected)

        if row.deleted and rejected.status == 404:
            # Already gone on the server
            with self.store.transaction():
                self.store.purge(row.entity, row.local_id)
                self.journal.retire(self.store_id, row.entity, row.local_id)
            report.pushed += 1
            return

        self.store.set_status(row.entity, row.local_id, STATUS_INVALID)
        self.journal.record_failure(self.store_id, row.entity, row.local_id, rejected.message)
        report.invalid += 1
        self._report_error(report, SyncError(
            rejected.kind, rejected.message,
            entity=row.entity, local_id=row.local_id, status=rejected.status,
        ))

    # ------------------------------------------------------------------
    # P2 pull
    # ------------------------------------------------------------------

    def cursor_key(self, entity: str) -> str:
        return f"cursor:{self.store_id}:{entity}"

    async def _pull(self, report, conflicts, touched) -> None:
        for entity in self.entities:
            key = self.cursor_key(entity)
            while True:
                self._checkpoint()
                cursor = self.store.get_meta(key) or {}
                page = await self.api.pull(entity, cursor.get("ts"), cursor.get("id"), self.page_limit)

                if isinstance(page, TransientFailure):
                    self._transient(report, page.message)
                if isinstance(page, Rejected):
                    if page.kind == ErrorKind.UNAUTHENTICATED:
                        self._unauthenticated(report, page)
                    self._report_error(report, SyncError(page.kind, page.message, entity=entity, status=page.status))
                    break

                for item in page.items:
                    with self.store.transaction():
                        applied = self.store.apply_server_row(entity, self.store_id, item)
                        self.store.set_meta(key, {"ts": item.get("lastSyncedAt"), "id": item["_id"]})
                    if applied.outcome == ApplyOutcome.CONFLICT:
                        conflicts[(entity, applied.row.local_id)] = PendingConflict(entity, applied.row.local_id, item)
                        report.conflicts += 1
                    elif applied.outcome in (ApplyOutcome.INSERTED, ApplyOutcome.UPDATED):
                        touched[entity].add(applied.row.local_id)
                        report.pulled += 1
                    elif applied.outcome == ApplyOutcome.PURGED:
                        if applied.row is not None:
                            self._touch_parents(touched, entity, applied.row)
                        report.pulled += 1

                if len(page.items) < self.page_limit:
                    break

    # ------------------------------------------------------------------
    # P3 resolve
    # ------------------------------------------------------------------

    def _resolve_conflicts(self, report, pending, touched) -> None:
        for conflict in pending:
            local = self.store.get(conflict.entity, conflict.local_id)
            if local is None:
                continue
            strategy = self._strategy_for(local)
            field_strategies = None if local.resolution_hint else self.strategies.field_strategies(local.entity)
            schema = get_schema(local.entity)
            try:
                merged = resolve(
                    strategy, conflict.server, local.document(), local.original_data,
                    schema=schema, field_strategies=field_strategies,
                )
            except ResolverRefusal as e:
                self._park(local, conflict.server)
                report.refused += 1
                self._report_error(report, SyncError(
                    ErrorKind.RESOLVER_REFUSAL, str(e), entity=local.entity, local_id=local.local_id,
                ))
                continue
            self._apply_resolution(local, conflict.server, merged, strategy)
            report.resolved += 1
            touched[local.entity].add(local.local_id)

    def _strategy_for(self, row: LocalRow) -> str:
        if row.resolution_hint:
            return canonical_strategy(row.resolution_hint)
        return self.strategies.for_entity(row.entity)

    def _park(self, local: LocalRow, server: dict[str, Any]) -> None:
        """Row waits for a person: keeps its data, dirty, with the server snapshot alongside."""
        self.store.put(local.copy(status=STATUS_NEEDS_ATTENTION, conflict_data=server))
        logger.info("%s %s needs manual resolution", local.entity, local.local_id)

    def _apply_resolution(
        self,
        local: LocalRow,
        server: dict[str, Any],
        merged: dict[str, Any],
        strategy: str,
        *,
        action: str = "resolved",
    ) -> LocalRow | None:
        """
        Store a resolver result.

        merged == server: the row becomes clean at the server version and
        its journal entries are retired. Otherwise the merged document is
        written dirty at the server version with a fresh journal entry for
        the next pass to upload.
        """
        schema = get_schema(local.entity)
        version = int(server.get("syncVersion") or 0)
        result: LocalRow | None

        with self.store.transaction():
            self._adopt_server_id(local, server)
            self.journal.retire(self.store_id, local.entity, local.local_id)

            if fields_equal(schema, merged, server):
                if server.get("deleted"):
                    self.store.purge(local.entity, local.local_id)
                    result = None
                else:
                    result = local.copy(
                        data=schema.project(server),
                        server_id=server.get("_id"),
                        dirty=False,
                        deleted=False,
                        base_version=version,
                        sync_version=version,
                        last_synced_at=server.get("lastSyncedAt"),
                        updated_at=server.get("updatedAt"),
                        status=STATUS_OK,
                        original_data=None,
                        conflict_data=None,
                        resolution_hint=None,
                    )
                    self.store.put(result)
                if not fields_equal(schema, local.document(), server):
                    logger.info(
                        "Local edit of %s %s discarded in favour of server v%d (%s)",
                        local.entity, local.local_id, version, strategy,
                    )
            else:
                deleted = bool(merged.get("deleted"))
                status = STATUS_OK if local.status == STATUS_NEEDS_ATTENTION else local.status
                result = local.copy(
                    data=schema.project(merged),
                    server_id=server.get("_id"),
                    dirty=True,
                    deleted=deleted,
                    base_version=version,
                    sync_version=version,
                    last_synced_at=server.get("lastSyncedAt"),
                    status=status,
                    original_data=schema.project(server),
                    conflict_data=None,
                    revision=local.revision + 1,
                    updated_at=now_iso(),
                )
                self.store.put(result)
                op = OP_DELETE if deleted else OP_UPDATE
                self.journal.append(
                    self.store_id, local.entity, op, local.local_id,
                    None if deleted else result.data, version,
                )

            if strategy != SERVER_WINS or action != "resolved":
                self.store.audit(
                    self.store_id, local.entity, local.local_id, action,
                    server_id=server.get("_id"),
                    strategy=strategy,
                    detail={"serverVersion": version, "dirty": bool(result and result.dirty)},
                )
        return result

    def _adopt_server_id(self, local: LocalRow, server: dict[str, Any]) -> None:
        """
        A duplicate create resolves onto an existing server row; a clean local
        copy of that row (from an earlier pull) is dropped so the server id
        maps to one local row.
        """
        if local.server_id or not server.get("_id"):
            return
        other = self.store.find_by_server_id(local.entity, self.store_id, server["_id"])
        if other is not None and other.local_id != local.local_id and not other.dirty:
            self.store.purge(other.entity, other.local_id)

    # ------------------------------------------------------------------
    # UI-driven resolution
    # ------------------------------------------------------------------

    def conflicts(self) -> list[LocalRow]:
        """Rows waiting for a person (needs-attention)."""
        return self.store.list_by_status(self.store_id, STATUS_NEEDS_ATTENTION)

    def resolve_manually(
        self,
        entity: str,
        local_id: str,
        choice: str,
        data: dict[str, Any] | None = None,
    ) -> LocalRow | None:
        """
        Settle a needs-attention row.

        choice: "server" keeps the server snapshot, "client" keeps the local
        document, "custom" applies `data` on top of the server snapshot.
        """
        if choice not in MANUAL_CHOICES:
            raise ValueError(f"choice must be one of: {', '.join(MANUAL_CHOICES)}")
        schema = get_schema(entity)
        local = self.store.get(schema.name, local_id)
        if local is None or local.status != STATUS_NEEDS_ATTENTION or not local.conflict_data:
            raise ValueError(f"{entity} {local_id} has no pending conflict")
        server = local.conflict_data

        if choice == "server":
            return self._apply_resolution(local, server, dict(server), SERVER_WINS, action="manual:server")

        if choice == "client":
            doc = local.document()
        else:
            doc = {**schema.project(server), **schema.project(data or {})}

        if server.get("deleted"):
            return self._recreate(local, schema.apply_normalize(schema.project(doc)), choice)

        merged = resolve(CLIENT_WINS, server, doc, None, schema=schema)
        row = self._apply_resolution(local, server, merged, MANUAL, action=f"manual:{choice}")
        if row is not None and row.dirty and choice == "client":
            # A later conflict on this row keeps the person's decision
            self.store.put(row.copy(resolution_hint=CLIENT_WINS))
            row = self.store.get(schema.name, local_id)
        return row

    def _recreate(self, local: LocalRow, data: dict[str, Any], choice: str) -> LocalRow:
        """Server deleted the row but the person keeps it: upload it as a new row."""
        row = local.copy(
            data=data,
            server_id=None,
            deleted=False,
            dirty=True,
            base_version=0,
            sync_version=0,
            status=STATUS_OK,
            original_data=None,
            conflict_data=None,
            revision=local.revision + 1,
            updated_at=now_iso(),
        )
        with self.store.transaction():
            self.store.put(row)
            self.journal.retire(self.store_id, local.entity, local.local_id)
            self.journal.append(self.store_id, local.entity, OP_CREATE, local.local_id, data, 0)
            self.store.audit(
                self.store_id, local.entity, local.local_id, f"manual:{choice}",
                server_id=local.conflict_data.get("_id") if local.conflict_data else None,
                strategy=MANUAL,
                detail={"recreated": True},
            )
        return row

    def override(self, entity: str, local_id: str, strategy: str) -> LocalRow | None:
        """
        Record the UI's explicit strategy for one row.

        A row already waiting in needs-attention is resolved right away
        against its kept server snapshot.
        """
        strategy = canonical_strategy(strategy)
        schema = get_schema(entity)
        local = self.store.get(schema.name, local_id)
        if local is None:
            raise ValueError(f"{entity} {local_id} not found")
        local = local.copy(resolution_hint=strategy)
        self.store.put(local)

        if local.status != STATUS_NEEDS_ATTENTION or not local.conflict_data or strategy == MANUAL:
            return local
        try:
            merged = resolve(strategy, local.conflict_data, local.document(), local.original_data, schema=schema)
        except ResolverRefusal as e:
            self.errors.emit(SyncError(ErrorKind.RESOLVER_REFUSAL, str(e), entity=schema.name, local_id=local_id))
            return local
        return self._apply_resolution(local, local.conflict_data, merged, strategy, action="override")

    def retry_invalid(self, entity: str, local_id: str) -> LocalRow:
        """Put an invalid row back in the upload queue (after the UI fixed it)."""
        schema = get_schema(entity)
        local = self.store.get(schema.name, local_id)
        if local is None or local.status != STATUS_INVALID:
            raise ValueError(f"{entity} {local_id} is not invalid")
        row = local.copy(status=STATUS_OK)
        self.store.put(row)
        return row

    # ------------------------------------------------------------------
    # P4 reconcile
    # ------------------------------------------------------------------

    def reconcile(self, touched: dict[str, set[str]] | None = None) -> None:
        """
        Recompute aggregates that span rows: customer totals from its
        non-voided sales, product quantity from its stock movements, credit
        status from its due date. With touched=None every row of the tenant
        is recomputed. Never marks anything dirty.
        """
        full = touched is None
        touched = touched or {}

        parents: dict[str, set[str]] = defaultdict(set)
        for entity in ("sale", "stockMovement"):
            for local_id in touched.get(entity, ()):
                row = self.store.get(entity, local_id)
                if row is not None:
                    self._touch_parents(parents, entity, row)

        customers = set(touched.get("customer", ())) | parents["customer"]
        products = set(touched.get("product", ())) | parents["product"]
        credits = set(touched.get("credit", ()))

        if full or customers:
            self._reconcile_customers(None if full else customers)
        if full or products:
            self._reconcile_products(None if full else products)
        if full or credits:
            self._reconcile_credits(None if full else credits)

    @staticmethod
    def _touch_parents(touched: dict[str, set[str]], entity: str, row: LocalRow) -> None:
        """Mark the customer and products a sale or stock movement counts towards."""
        if entity == "sale":
            if row.data.get("customerId"):
                touched["customer"].add(row.data["customerId"])
            for item in row.data.get("items") or []:
                if item.get("productId"):
                    touched["product"].add(item["productId"])
        elif entity == "stockMovement" and row.data.get("productId"):
            touched["product"].add(row.data["productId"])

    @staticmethod
    def _matches(row: LocalRow, keys: set[str] | None) -> bool:
        return keys is None or row.local_id in keys or (row.server_id is not None and row.server_id in keys)

    def _set_derived(self, row: LocalRow, derived: dict[str, Any], changes: dict[str, Any] | None = None) -> None:
        data = {**row.data, **changes} if changes else None
        if row.derived != derived or data is not None:
            self.store.set_derived(row.entity, row.local_id, derived, data=data)

    @staticmethod
    def _recompute(row: LocalRow, current: dict[str, int], contributed: dict[str, int]):
        """
        Aggregates as the local rows explain them, on top of an opening part
        no local row explains.

        The opening part is kept from the last reconcile while the row still
        holds the values written then, and re-taken whenever anything else
        (a pull, a merge, a local edit) changed them. Dirty rows only re-take
        it; their next upload carries whatever they hold.
        """
        prev = row.derived or {}
        if not row.dirty and prev.get("applied") == current and prev.get("opening") is not None:
            opening = prev["opening"]
        else:
            opening = {name: current[name] - contributed[name] for name in current}
        values = {name: max(opening[name] + contributed[name], 0) for name in current}
        return {"opening": opening, "applied": values}, values

    def _reconcile_customers(self, keys: set[str] | None) -> None:
        sales = [s for s in self.store.list_rows("sale", self.store_id) if s.data.get("status") != "voided"]
        for customer in self.store.list_rows("customer", self.store_id):
            if not self._matches(customer, keys):
                continue
            ids = {customer.local_id, customer.server_id}
            own = [s for s in sales if s.data.get("customerId") in ids]
            total = 0
            for sale in own:
                try:
                    total += to_cents(sale.data.get("total") or 0)
                except MoneyFormatError:
                    logger.warning("Sale %s has a malformed total", sale.local_id)
            try:
                spent = to_cents(customer.data.get("totalSpent") or 0)
            except MoneyFormatError:
                logger.warning("Customer %s has a malformed totalSpent", customer.local_id)
                continue
            current = {"totalSpent": spent, "totalOrders": int(customer.data.get("totalOrders") or 0)}
            bookkeeping, values = self._recompute(customer, current, {"totalSpent": total, "totalOrders": len(own)})

            changes = {}
            if values != current:
                changes = {"totalSpent": from_cents(values["totalSpent"]), "totalOrders": values["totalOrders"]}
                logger.info(
                    "Customer %s totals recomputed from sales: %s -> %s",
                    customer.local_id, from_cents(spent), changes["totalSpent"],
                )
            last = max((s.updated_at for s in own if s.updated_at), default=None)
            self._set_derived(customer, {
                **bookkeeping,
                "salesCount": len(own),
                "salesTotal": from_cents(total),
                "lastOrderDate": last,
            }, changes)

    def _reconcile_products(self, keys: set[str] | None) -> None:
        movements = self.store.list_rows("stockMovement", self.store_id)
        for product in self.store.list_rows("product", self.store_id):
            if not self._matches(product, keys):
                continue
            ids = {product.local_id, product.server_id}
            balance = sum(int(m.data.get("quantity") or 0) for m in movements if m.data.get("productId") in ids)
            current = {"quantity": int(product.data.get("quantity") or 0)}
            bookkeeping, values = self._recompute(product, current, {"quantity": balance})

            changes = {}
            if values != current:
                changes = {"quantity": values["quantity"]}
                logger.info(
                    "Product %s quantity recomputed from stock movements: %d -> %d",
                    product.local_id, current["quantity"], values["quantity"],
                )
            threshold = int(product.data.get("lowStockThreshold") or 0)
            self._set_derived(product, {
                **bookkeeping,
                "movementBalance": balance,
                "lowStock": values["quantity"] <= threshold,
            }, changes)

    def _reconcile_credits(self, keys: set[str] | None) -> None:
        now = utcnow()
        for credit in self.store.list_rows("credit", self.store_id):
            if not self._matches(credit, keys):
                continue
            try:
                remaining = to_cents(credit.data.get("amount") or 0) - to_cents(credit.data.get("amountPaid") or 0)
            except MoneyFormatError:
                logger.warning("Credit %s has a malformed amount", credit.local_id)
                continue
            self._set_derived(credit, {
                "status": effective_credit_status(credit.data, now),
                "remaining": from_cents(max(remaining, 0)),
                "checkedAt": to_utc_z(now),
            })

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "storeId": self.store_id,
            "state": self.state.value,
            "pending": self.journal.count(self.store_id),
            "dirty": len(self.store.list_dirty(self.store_id, self.entities)),
            "needsAttention": len(self.conflicts()),
            "lastSyncAt": self.store.get_meta(f"lastSyncAt:{self.store_id}"),
            "lastReport": self.last_report.to_dict() if self.last_report else None,
        }
