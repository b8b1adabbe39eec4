# Overview: Flask API routes for server-side conflict resolution.

"""
Conflict resolution routes.

POST /api/conflicts/resolve
    body: {entityType, entityId, strategy, clientData, originalData?}
    Runs the shared resolver against the current server row and stores the
    result with a compare-and-set at the version the resolver saw.

GET /api/conflicts/<entityType>/<entityId>
    Current server snapshot used by a UI comparing both sides.

MULTI-TENANT: entityId is looked up as (id, g.store_id); a foreign id is 403.
"""
from flask import Blueprint, request, g, current_app

from ..conflict_resolver import ResolverRefusal, InvalidStrategyError
from ..schema import ENTITIES
from ..services import record_service
from ..services.record_service import VersionConflictError
from ..services.tenant_service import TenantAccessError, RecordNotFound
from ..validation import ValidationError
from ..decorators import require_auth

conflicts_bp = Blueprint("conflicts", __name__, url_prefix="/api/conflicts")


@conflicts_bp.post("/resolve")
@require_auth
def resolve_conflict():
    payload = request.get_json(silent=True) or {}

    entity_type = payload.get("entityType")
    entity_id = payload.get("entityId")
    strategy = payload.get("strategy")
    client_data = payload.get("clientData")
    original = payload.get("originalData")

    if not entity_type or not entity_id or not strategy:
        return {"error": "Missing required fields: entityType, entityId, strategy"}, 400
    if entity_type not in ENTITIES:
        return {"error": f"Invalid entity type: {entity_type}"}, 400
    if not isinstance(client_data, dict):
        return {"error": "clientData must be an object"}, 400
    if original is not None and not isinstance(original, dict):
        return {"error": "originalData must be an object"}, 400

    try:
        data = record_service.resolve_record(
            entity_type,
            g.store_id,
            entity_id,
            strategy,
            client_data,
            original,
            user_id=g.user_id,
        )
    except InvalidStrategyError as e:
        return {"error": str(e)}, 400
    except TenantAccessError:
        return {"error": "Forbidden"}, 403
    except RecordNotFound:
        return {"error": f"{entity_type} not found"}, 404
    except ResolverRefusal as e:
        return {"error": str(e), "code": "RESOLVER_REFUSAL", "current": e.server}, 422
    except ValidationError as e:
        return {"error": str(e)}, 400
    except VersionConflictError as e:
        return {"error": str(e), "code": e.code, "current": e.current}, 409
    except Exception:
        current_app.logger.exception("Conflict resolution failed for %s %s", entity_type, entity_id)
        return {"error": "Failed to resolve conflict"}, 500

    return {"success": True, "strategy": strategy, "data": data}, 200


@conflicts_bp.get("/<entity_type>/<entity_id>")
@require_auth
def conflict_snapshot(entity_type: str, entity_id: str):
    if entity_type not in ENTITIES:
        return {"error": f"Invalid entity type: {entity_type}"}, 400
    try:
        return record_service.get_snapshot(entity_type, g.store_id, entity_id)
    except TenantAccessError:
        return {"error": "Forbidden"}, 403
    except RecordNotFound:
        return {"error": f"{entity_type} not found"}, 404
