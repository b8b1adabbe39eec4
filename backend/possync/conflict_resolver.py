# Overview: Pure conflict resolution shared by the sync engine and the
# /api/conflicts/resolve endpoint.

"""
Conflict Resolver

resolve(strategy, server, client, original) -> merged

All three documents are wire-format dicts (camelCase keys, decimal money).
The function is deterministic and performs no I/O; callers decide where the
merged document goes (server compare-and-set, or the client's local store).

INVARIANTS:
1. Only fields declared in the entity schema appear in the result
2. _id and storeId always come from the server document
3. syncVersion is the server's current version (the next write increments it)
4. "manual" never merges; it raises ResolverRefusal
"""
from __future__ import annotations

from .money import to_cents, from_cents, apply_delta, MoneyFormatError
from .schema import (
    EntitySchema, MONEY, TAGS, DATETIME, COUNTER, MONETARY, SET,
)
from .time_utils import parse_iso_datetime

SERVER_WINS = "server-wins"
CLIENT_WINS = "client-wins"
LAST_WRITE_WINS = "last-write-wins"
LAST_WRITE_WINS_BY_MTIME = "last-write-wins-by-mtime"
MERGE_FIELDS = "merge-fields"
MANUAL = "manual"

STRATEGIES = frozenset({
    SERVER_WINS, CLIENT_WINS, LAST_WRITE_WINS, LAST_WRITE_WINS_BY_MTIME, MERGE_FIELDS, MANUAL,
})


class InvalidStrategyError(ValueError):
    """Strategy name is not one of STRATEGIES."""


class ResolverRefusal(Exception):
    """The resolver will not merge these documents; a person has to decide."""

    def __init__(self, message: str, *, server: dict | None = None, client: dict | None = None):
        super().__init__(message)
        self.server = server
        self.client = client


def canonical_strategy(strategy: str) -> str:
    if strategy not in STRATEGIES:
        raise InvalidStrategyError(f"Invalid resolution strategy: {strategy}")
    if strategy == LAST_WRITE_WINS_BY_MTIME:
        return LAST_WRITE_WINS
    return strategy


def resolve(
    strategy: str,
    server: dict,
    client: dict,
    original: dict | None = None,
    *,
    schema: EntitySchema,
    field_strategies: dict[str, str] | None = None,
) -> dict:
    """
    Merge a server record and a client record under a named strategy.

    Args:
        strategy: one of STRATEGIES
        server: current server row (must carry _id, storeId, syncVersion)
        client: the client's version of the row
        original: the client's snapshot taken before its first unsynced edit
        schema: entity schema (field list and merge policies)
        field_strategies: per-field strategies that override `strategy` for
            the fields they name (see EntitySchema.field_strategies)

    Returns:
        The merged wire document.

    Raises:
        ResolverRefusal: strategy is "manual", or the conflict involves a
            delete that the strategy cannot settle without inferring intent
        InvalidStrategyError: unknown strategy
    """
    strategy = canonical_strategy(strategy)

    if strategy == MANUAL:
        raise ResolverRefusal("Manual resolution required", server=server, client=client)

    server_deleted = bool(server.get("deleted"))
    client_deleted = bool(client.get("deleted"))

    if server_deleted:
        if strategy == SERVER_WINS:
            return _server_copy(server, schema)
        raise ResolverRefusal("Record was deleted on the server", server=server, client=client)

    if client_deleted:
        if strategy == CLIENT_WINS:
            merged = _server_copy(server, schema)
            merged["deleted"] = True
            return merged
        # Destructive intent is never inferred from a conflicting delete
        raise ResolverRefusal("Local delete conflicts with a newer server edit", server=server, client=client)

    if field_strategies:
        return _resolve_per_field(strategy, server, client, original, schema, field_strategies)

    if strategy == SERVER_WINS:
        return _server_copy(server, schema)

    if strategy == CLIENT_WINS:
        return _client_over_server(server, client, schema)

    if strategy == LAST_WRITE_WINS:
        if _client_is_newer(server, client):
            return _client_over_server(server, client, schema)
        return _server_copy(server, schema)

    return _merge_fields(server, client, original, schema)


# ---------------------------------------------------------------------------
# Strategy helpers
# ---------------------------------------------------------------------------

def _bookkeeping(server: dict) -> dict:
    return {
        "_id": server.get("_id"),
        "storeId": server.get("storeId"),
        "syncVersion": server.get("syncVersion"),
    }


def _server_copy(server: dict, schema: EntitySchema) -> dict:
    merged = schema.project(server)
    merged.update(_bookkeeping(server))
    if server.get("deleted"):
        merged["deleted"] = True
    return merged


def _client_over_server(server: dict, client: dict, schema: EntitySchema) -> dict:
    merged = schema.project(server)
    merged.update(schema.project(client))
    merged.update(_bookkeeping(server))
    return schema.apply_normalize(merged)


def _resolve_per_field(strategy, server, client, original, schema, field_strategies) -> dict:
    """
    Settle each field on its own.

    A field only one side changed since `original` takes that side's value.
    A field both sides changed (or any divergent field when there is no
    ancestor) is settled by its own strategy, or by `strategy` when it has
    none.
    """
    merged = _server_copy(server, schema)
    has_ancestor = original is not None
    base = original or {}
    client_newer = _client_is_newer(server, client)

    for name, spec in schema.fields.items():
        if name not in client:
            continue
        s_val = server.get(name)
        c_val = client.get(name)
        s_key = _canonical(spec.kind, s_val)
        c_key = _canonical(spec.kind, c_val)
        if s_key == c_key:
            continue

        o_val = base.get(name)
        if has_ancestor:
            o_key = _canonical(spec.kind, o_val)
            if c_key == o_key:
                continue
            if s_key == o_key:
                merged[name] = c_val
                continue

        field_strategy = canonical_strategy(field_strategies.get(name, strategy))
        if field_strategy == MANUAL:
            raise ResolverRefusal(f"{name} needs manual resolution", server=server, client=client)
        if field_strategy == CLIENT_WINS or (field_strategy == LAST_WRITE_WINS and client_newer):
            merged[name] = c_val
        elif field_strategy == MERGE_FIELDS:
            merged[name] = _divergent(spec, s_val, c_val, o_val, has_ancestor)

    return schema.apply_normalize(merged)


def _client_is_newer(server: dict, client: dict) -> bool:
    server_ts = _parse_ts(server.get("updatedAt"))
    client_ts = _parse_ts(client.get("updatedAt"))
    if client_ts is None:
        return False
    if server_ts is None or client_ts > server_ts:
        return True
    if client_ts < server_ts:
        return False
    # Tie: stable order on ids; equal ids keep the server copy
    server_id = str(server.get("_id") or "")
    client_id = str(client.get("_id") or client.get("serverId") or "")
    return client_id > server_id


def _parse_ts(value):
    if value is None:
        return None
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError:
            return None
    return value


def _canonical(kind: str, value):
    """Comparable form of a field value (money in cents, sets as frozensets)."""
    if value is None:
        return None
    if kind == MONEY:
        try:
            return to_cents(value)
        except MoneyFormatError:
            return value
    if kind == TAGS:
        return frozenset(value)
    if kind == DATETIME:
        return _parse_ts(value)
    return value


def _merge_fields(server: dict, client: dict, original: dict | None, schema: EntitySchema) -> dict:
    merged = _server_copy(server, schema)
    has_ancestor = original is not None
    base = original or {}

    for name, spec in schema.fields.items():
        if name not in client:
            continue
        s_val = server.get(name)
        c_val = client.get(name)
        s_key = _canonical(spec.kind, s_val)
        c_key = _canonical(spec.kind, c_val)

        if s_key == c_key:
            merged[name] = s_val
            continue

        if has_ancestor:
            o_val = base.get(name)
            o_key = _canonical(spec.kind, o_val)
            client_changed = c_key != o_key
            server_changed = s_key != o_key
            if not client_changed:
                merged[name] = s_val
                continue
            if not server_changed:
                merged[name] = c_val
                continue
        else:
            o_val = None

        merged[name] = _divergent(spec, s_val, c_val, o_val, has_ancestor)

    return schema.apply_normalize(merged)


def _divergent(spec, s_val, c_val, o_val, has_ancestor: bool):
    if spec.merge == COUNTER:
        return max(int(s_val or 0), int(c_val or 0))

    if spec.merge == MONETARY:
        if not has_ancestor:
            return s_val
        try:
            total = apply_delta(
                to_cents(s_val if s_val is not None else 0),
                to_cents(c_val if c_val is not None else 0),
                to_cents(o_val if o_val is not None else 0),
            )
        except MoneyFormatError:
            return s_val
        return from_cents(total)

    if spec.merge == SET:
        return _merge_sets(s_val or [], c_val or [], o_val, has_ancestor)

    return s_val


def _merge_sets(s_items: list, c_items: list, o_items, has_ancestor: bool) -> list:
    """Union of both sides; with an ancestor, an item removed on one side stays removed."""
    removed = set()
    if has_ancestor and o_items:
        ancestor = set(o_items)
        removed = {x for x in ancestor if x not in s_items or x not in c_items}
    out = []
    for item in list(s_items) + list(c_items):
        if item in removed or item in out:
            continue
        out.append(item)
    return out


def fields_equal(schema: EntitySchema, a: dict, b: dict) -> bool:
    """True when both documents agree on every schema field and on deletion."""
    if bool(a.get("deleted")) != bool(b.get("deleted")):
        return False
    return all(
        _canonical(spec.kind, a.get(name)) == _canonical(spec.kind, b.get(name))
        for name, spec in schema.fields.items()
    )
