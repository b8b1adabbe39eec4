# Overview: Flask API routes for synchronizable collections; parses input and returns JSON responses.

# backend/possync/routes/records.py
"""
Record routes with multi-tenant support.

One blueprint serves every collection (products, categories, customers,
employees, credits, sales, shifts, stockMovements). The collection name in
the URL selects the entity schema and model.

MULTI-TENANT: All operations are scoped to the caller's store.
The store_id is derived from g.store_id (set by @require_auth). A storeId in
the query string or body must match it; otherwise 403 + TENANT_VIOLATION.

SYNC:
- GET    /api/<collection>?modifiedSince=&afterId=&limit=  (pull page)
- POST   /api/<collection>                                 (create, v1)
- PUT    /api/<collection>/<id>      body.baseVersion      (compare-and-set)
- DELETE /api/<collection>/<id>?baseVersion=N              (tombstone)
"""
from flask import Blueprint, request, g, current_app

from ..schema import COLLECTIONS
from ..services import record_service
from ..services.record_service import VersionConflictError, DuplicateRecordError
from ..services.tenant_service import TenantAccessError, RecordNotFound, require_same_store
from ..validation import ValidationError, ConflictError
from ..decorators import require_auth
from possync.time_utils import parse_iso_datetime, to_utc_z, utcnow

records_bp = Blueprint("records", __name__, url_prefix="/api")


def _unknown_collection(collection: str):
    return {"error": f"Unknown collection: {collection}"}, 404


def _conflict_response(e: ConflictError):
    body = {"error": str(e), "code": getattr(e, "code", "CONFLICT")}
    current = getattr(e, "current", None)
    if current is not None:
        body["current"] = current
    return body, 409


@records_bp.get("/<collection>")
@require_auth
def list_records(collection: str):
    """
    Pull one page of rows changed after the cursor.

    Query params:
    - storeId: str (optional) - must equal the caller's store
    - modifiedSince: ISO-8601 (optional) - cursor timestamp
    - afterId: str (optional) - cursor tie-break id
    - limit: int (optional) - page size (default/max PULL_PAGE_LIMIT)
    """
    if collection not in COLLECTIONS:
        return _unknown_collection(collection)

    max_limit = current_app.config["PULL_PAGE_LIMIT"]
    limit = request.args.get("limit", type=int) or max_limit
    limit = max(1, min(limit, max_limit))

    try:
        require_same_store(request.args.get("storeId"), g.store_id)
        modified_since = parse_iso_datetime(request.args.get("modifiedSince"))
    except TenantAccessError:
        return {"error": "Forbidden"}, 403
    except ValueError:
        return {"error": "modifiedSince must be an ISO-8601 datetime"}, 400

    synced_at = utcnow()
    items = record_service.list_modified(
        collection,
        g.store_id,
        modified_since=modified_since,
        after_id=request.args.get("afterId") or None,
        limit=limit,
    )
    return {"items": items, "count": len(items), "syncedAt": to_utc_z(synced_at, precise=True)}


@records_bp.get("/<collection>/<record_id>")
@require_auth
def get_record(collection: str, record_id: str):
    if collection not in COLLECTIONS:
        return _unknown_collection(collection)
    try:
        return record_service.get_record(collection, g.store_id, record_id)
    except TenantAccessError:
        return {"error": "Forbidden"}, 403
    except RecordNotFound as e:
        return {"error": str(e)}, 404


@records_bp.post("/<collection>")
@require_auth
def create_record(collection: str):
    """Create a row in the caller's store (syncVersion=1)."""
    if collection not in COLLECTIONS:
        return _unknown_collection(collection)

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {"error": "Invalid JSON payload"}, 400

    try:
        require_same_store(payload.get("storeId"), g.store_id)
        created = record_service.create_record(collection, g.store_id, payload)
    except TenantAccessError:
        return {"error": "Forbidden"}, 403
    except ValidationError as e:
        return {"error": str(e)}, 400
    except DuplicateRecordError as e:
        return _conflict_response(e)
    except Exception:
        current_app.logger.exception("Failed to create %s", collection)
        return {"error": "Internal server error"}, 500

    return created, 201


@records_bp.put("/<collection>/<record_id>")
@require_auth
def update_record(collection: str, record_id: str):
    """
    Conditional update.

    Body: {...fields, baseVersion}. baseVersion is required; a mismatch with
    the stored syncVersion returns 409 with the current server row.
    """
    if collection not in COLLECTIONS:
        return _unknown_collection(collection)

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {"error": "Invalid JSON payload"}, 400

    try:
        require_same_store(payload.get("storeId"), g.store_id)
        updated = record_service.update_record(collection, g.store_id, record_id, payload)
    except TenantAccessError:
        return {"error": "Forbidden"}, 403
    except RecordNotFound as e:
        return {"error": str(e)}, 404
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ConflictError as e:
        return _conflict_response(e)
    except Exception:
        current_app.logger.exception("Failed to update %s %s", collection, record_id)
        return {"error": "Internal server error"}, 500

    return updated, 200


@records_bp.delete("/<collection>/<record_id>")
@require_auth
def delete_record(collection: str, record_id: str):
    """Conditional delete; responds with the tombstone."""
    if collection not in COLLECTIONS:
        return _unknown_collection(collection)

    try:
        require_same_store(request.args.get("storeId"), g.store_id)
        tombstone = record_service.delete_record(
            collection, g.store_id, record_id, request.args.get("baseVersion"),
        )
    except TenantAccessError:
        return {"error": "Forbidden"}, 403
    except RecordNotFound as e:
        return {"error": str(e)}, 404
    except ValidationError as e:
        return {"error": str(e)}, 400
    except VersionConflictError as e:
        return _conflict_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete %s %s", collection, record_id)
        return {"error": "Internal server error"}, 500

    return tombstone, 200
