"""
Tenant Authorizer: Tenant Validation and Scoping Helpers

WHY: Centralize tenant validation for reuse across services and routes.
Every request is scoped to the principal's store, and cross-tenant access is
explicitly denied.

SECURITY INVARIANTS:
1. Every authenticated request has g.store_id set (from the bearer token)
2. storeId values from client input must equal g.store_id
3. Record queries are always (id, store_id) scoped, never id-only
4. Cross-tenant access attempts are logged as TENANT_VIOLATION events

USAGE:
    from possync.services.tenant_service import require_same_store, get_owned_record

    require_same_store(request.args.get("storeId"), g.store_id)
    row = get_owned_record(Product, product_id, g.store_id)
"""
from __future__ import annotations

from flask import g, has_request_context

from ..extensions import db
from ..models import Store
from .concurrency import lock_for_update
from .security_service import log_security_event


class TenantAccessError(Exception):
    """Raised when cross-tenant access is attempted (403)."""


class RecordNotFound(LookupError):
    """No row with that id exists in any tenant (404)."""


def get_current_store_id() -> str:
    """
    Get current tenant's store_id from Flask g context.

    SECURITY: Raises TenantAccessError if store_id not set.
    This should never happen after @require_auth, but is a safety check.
    """
    if not hasattr(g, "store_id") or g.store_id is None:
        raise TenantAccessError("Tenant context not established")
    return g.store_id


def get_active_store(store_id: str) -> Store | None:
    return db.session.query(Store).filter_by(id=store_id, is_active=True).first()


def require_same_store(requested_store_id: str | None, store_id: str) -> None:
    """
    Validate a client-supplied storeId against the principal's store.

    None means "not supplied" and is accepted; the query is stamped with the
    principal's store regardless.
    """
    if requested_store_id is None or str(requested_store_id) == str(store_id):
        return
    _log_cross_tenant_attempt(
        f"Requested storeId {requested_store_id} does not match principal store {store_id}",
        store_id=store_id,
    )
    raise TenantAccessError("Forbidden")


def scoped_query(model, store_id: str):
    """
    Create a query automatically filtered to a tenant's store.

    Usage:
        products = scoped_query(Product, g.store_id).all()
    """
    return db.session.query(model).filter(model.store_id == store_id)


def get_owned_record(model, record_id: str, store_id: str, *, for_update: bool = False):
    """
    Load a record by (id, store_id).

    Raises:
        TenantAccessError: the id exists but belongs to another store
        RecordNotFound: the id does not exist at all
    """
    query = scoped_query(model, store_id).filter(model.id == record_id)
    if for_update:
        query = lock_for_update(query)
    row = query.first()
    if row is not None:
        return row

    # Distinguish a spoofed foreign id from a missing one
    owner = db.session.query(model.store_id).filter(model.id == record_id).scalar()
    if owner is not None:
        _log_cross_tenant_attempt(
            f"{model.__tablename__} {record_id} belongs to another store",
            store_id=store_id,
        )
        raise TenantAccessError("Forbidden")
    raise RecordNotFound(f"{model.__schema__.name} not found")


def _log_cross_tenant_attempt(reason: str, store_id: str | None = None) -> None:
    """Log a TENANT_VIOLATION security event."""
    user_id = getattr(g, "user_id", None) if has_request_context() else None
    log_security_event(
        user_id=user_id,
        event_type="TENANT_VIOLATION",
        success=False,
        reason=reason,
        store_id=store_id,
    )
