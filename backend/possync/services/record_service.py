# Overview: Server Record Store; tenant-scoped compare-and-set writes on
# synchronizable collections.

"""
Record Service (authoritative per-tenant store)

WRITE RULES:
- create: baseVersion missing or 0; row starts at syncVersion=1. A live row
  with the same natural key turns the create into DuplicateRecordError
  carrying the existing row.
- update: baseVersion must equal the stored syncVersion. The flush runs as
  UPDATE ... WHERE id=? AND sync_version=? (version_id_col), so a concurrent
  writer between our read and our commit also ends in VersionConflictError.
- delete: same compare-and-set; writes a tombstone (deleted=True) with a new
  version so other clients see it in their next pull.

Every accepted write bumps syncVersion and sets lastSyncedAt to the tenant's
next write stamp (see _next_stamp), so stamps follow commit order.
All functions take the principal's store_id; nothing is id-only.
"""
from __future__ import annotations

from datetime import timedelta

from sqlalchemy import and_, or_
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Store, model_for
from ..schema import EntitySchema, get_schema
from ..conflict_resolver import resolve, canonical_strategy, fields_equal, SERVER_WINS
from ..validation import validate_payload, enforce_entity_rules, ValidationError, ConflictError
from .concurrency import run_with_retry
from .security_service import log_security_event
from .tenant_service import get_owned_record, scoped_query
from possync.time_utils import utcnow


class VersionConflictError(ConflictError):
    """baseVersion does not match the stored syncVersion (409)."""
    code = "VERSION_CONFLICT"

    def __init__(self, message: str, current: dict):
        super().__init__(message)
        self.current = current


class DuplicateRecordError(ConflictError):
    """A live row with the same natural key already exists (409)."""
    code = "DUPLICATE"

    def __init__(self, message: str, current: dict):
        super().__init__(message)
        self.current = current


def parse_base_version(value) -> int | None:
    """baseVersion from JSON body or query string; None when absent."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("baseVersion must be a non-negative integer")
    try:
        version = int(value)
    except (TypeError, ValueError):
        raise ValidationError("baseVersion must be a non-negative integer")
    if version < 0:
        raise ValidationError("baseVersion must be a non-negative integer")
    return version


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def list_modified(
    entity: str,
    store_id: str,
    modified_since=None,
    after_id: str | None = None,
    limit: int | None = None,
) -> list[dict]:
    """
    Rows of one collection changed after a cursor, oldest first.

    The cursor is (lastSyncedAt, _id): rows sharing the cursor timestamp are
    paged by id so a page boundary never skips a row. Tombstones included.
    """
    model = model_for(entity)
    query = scoped_query(model, store_id)
    if modified_since is not None:
        if after_id:
            query = query.filter(or_(
                model.last_synced_at > modified_since,
                and_(model.last_synced_at == modified_since, model.id > after_id),
            ))
        else:
            query = query.filter(model.last_synced_at > modified_since)
    query = query.order_by(model.last_synced_at.asc(), model.id.asc())
    if limit:
        query = query.limit(limit)
    return [row.to_wire() for row in query.all()]


def get_record(entity: str, store_id: str, record_id: str) -> dict:
    return get_owned_record(model_for(entity), record_id, store_id).to_wire()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _normalize(schema: EntitySchema, payload: dict, current=None) -> dict:
    """Apply entity-derived fields (e.g. credit status) to an incoming payload."""
    if schema.normalize is None:
        return payload
    base = schema.project(current.to_wire()) if current is not None else {}
    combined = {**base, **schema.project(payload)}
    normalized = schema.apply_normalize(dict(combined))
    out = dict(payload)
    for name in schema.fields:
        if name in normalized and normalized.get(name) != combined.get(name):
            out[name] = normalized[name]
    return out


def _find_natural_duplicate(schema: EntitySchema, model, store_id: str, patch: dict, exclude_id=None):
    if not schema.natural_key:
        return None
    attr = schema.fields[schema.natural_key].attr
    value = patch.get(attr)
    if value is None or value == "":
        return None
    query = scoped_query(model, store_id).filter(getattr(model, attr) == value, model.deleted.is_(False))
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    return query.first()


def _stamp_credit(schema: EntitySchema, row) -> None:
    if schema.name == "credit" and row.status == "paid" and row.paid_at is None:
        row.paid_at = utcnow()


def create_record(entity: str, store_id: str, payload: dict) -> dict:
    """Insert a new row (syncVersion=1)."""
    schema = get_schema(entity)
    model = model_for(entity)

    base_version = parse_base_version((payload or {}).get("baseVersion"))
    if base_version:
        raise ValidationError("baseVersion must be missing or 0 on create")

    payload = _normalize(schema, payload or {})
    patch = validate_payload(schema=schema, model=model, payload=payload, partial=False)
    enforce_entity_rules(schema, patch)

    def _op():
        duplicate = _find_natural_duplicate(schema, model, store_id, patch)
        if duplicate is not None:
            raise DuplicateRecordError(
                f"{schema.name} with this {schema.natural_key} already exists",
                current=duplicate.to_wire(),
            )
        now = _next_stamp(store_id)
        row = model(store_id=store_id, created_at=now, updated_at=now, last_synced_at=now, **patch)
        _stamp_credit(schema, row)
        db.session.add(row)
        db.session.commit()
        return row.to_wire()

    return run_with_retry(_op)


def update_record(entity: str, store_id: str, record_id: str, payload: dict) -> dict:
    """Conditional update at payload["baseVersion"]."""
    schema = get_schema(entity)
    model = model_for(entity)
    payload = payload or {}

    base_version = parse_base_version(payload.get("baseVersion"))
    if base_version is None:
        raise ValidationError("baseVersion is required")

    def _op():
        row = get_owned_record(model, record_id, store_id, for_update=True)
        _check_version(schema, row, base_version)

        normalized = _normalize(schema, payload, current=row)
        patch = validate_payload(schema=schema, model=model, payload=normalized, partial=True)
        enforce_entity_rules(schema, patch, current=row)

        duplicate = _find_natural_duplicate(schema, model, store_id, patch, exclude_id=row.id)
        if duplicate is not None:
            raise ConflictError(f"{schema.natural_key} already in use")

        for attr, value in patch.items():
            setattr(row, attr, value)
        _stamp_credit(schema, row)
        return _commit_cas(schema, model, row, store_id)

    return run_with_retry(_op)


def delete_record(entity: str, store_id: str, record_id: str, base_version) -> dict:
    """Conditional delete; leaves a tombstone."""
    schema = get_schema(entity)
    model = model_for(entity)

    base_version = parse_base_version(base_version)
    if base_version is None:
        raise ValidationError("baseVersion is required")

    def _op():
        row = get_owned_record(model, record_id, store_id, for_update=True)
        if row.deleted and row.sync_version == base_version:
            return row.to_wire()
        _check_version(schema, row, base_version)
        row.deleted = True
        return _commit_cas(schema, model, row, store_id)

    return run_with_retry(_op)


def _check_version(schema: EntitySchema, row, base_version: int) -> None:
    if row.deleted or row.sync_version != base_version:
        current = row.to_wire()
        db.session.rollback()
        raise VersionConflictError(
            f"Conflict detected: this {schema.name} was modified by another client",
            current=current,
        )


def _next_stamp(store_id: str):
    """
    Write stamp for one tenant, handed out in commit order.

    The Store row stays locked until the surrounding transaction ends, so a
    write stamped earlier can never commit after a later stamp has already
    been pulled. Stamps strictly increase even when the wall clock does not.
    """
    store = db.session.query(Store).filter(Store.id == store_id).with_for_update().one()
    now = utcnow()
    if store.sync_clock is not None and now <= store.sync_clock:
        now = store.sync_clock + timedelta(microseconds=1)
    store.sync_clock = now
    return now


def _commit_cas(schema: EntitySchema, model, row, store_id: str) -> dict:
    record_id = row.id
    try:
        # Autoflushes the row, so a stale version surfaces here as well
        row.touch(_next_stamp(store_id))
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        current = get_owned_record(model, record_id, store_id)
        raise VersionConflictError(
            f"Conflict detected: this {schema.name} was modified by another client",
            current=current.to_wire(),
        )
    return row.to_wire()


# ---------------------------------------------------------------------------
# Conflict resolution endpoint
# ---------------------------------------------------------------------------

def get_snapshot(entity: str, store_id: str, record_id: str) -> dict:
    row = get_owned_record(model_for(entity), record_id, store_id)
    return {
        "data": row.to_wire(),
        "syncVersion": row.sync_version,
        "lastSyncedAt": row.to_wire()["lastSyncedAt"],
        "updatedAt": row.to_wire()["updatedAt"],
    }


def resolve_record(
    entity: str,
    store_id: str,
    record_id: str,
    strategy: str,
    client_data: dict,
    original: dict | None = None,
    user_id: str | None = None,
) -> dict:
    """
    Apply the resolver to the current server row and store the result with a
    compare-and-set at the version the resolver saw.

    Raises ResolverRefusal for "manual" (and unresolvable deletes).
    """
    schema = get_schema(entity)
    model = model_for(entity)
    strategy = canonical_strategy(strategy)

    def _op():
        row = get_owned_record(model, record_id, store_id, for_update=True)
        server = row.to_wire()
        merged = resolve(strategy, server, client_data or {}, original, schema=schema)

        if fields_equal(schema, merged, server):
            db.session.rollback()
            return server

        if merged.get("deleted"):
            row.deleted = True
        else:
            patch = validate_payload(schema=schema, model=model, payload=schema.project(merged), partial=True)
            enforce_entity_rules(schema, patch, current=row)
            for attr, value in patch.items():
                setattr(row, attr, value)
            _stamp_credit(schema, row)
        return _commit_cas(schema, model, row, store_id)

    data = run_with_retry(_op)

    if strategy != SERVER_WINS:
        log_security_event(
            user_id=user_id,
            event_type="CONFLICT_RESOLVED",
            success=True,
            reason=f"{schema.name} {record_id} resolved with {strategy} at v{data['syncVersion']}",
            store_id=store_id,
        )
    return data
