# Overview: Request authentication decorator for the sync API.

from functools import wraps
from flask import request, jsonify, g

from .services.auth_service import decode_token, AuthenticationError
from .services.security_service import log_security_event
from .services.tenant_service import get_active_store


def require_auth(f):
    """
    Require a bearer token and establish tenant context.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.user_id: subject of the token
    - g.store_id: the store the token is bound to - REQUIRED

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid or expired token
    - Token carries no storeId
    - The store is unknown or deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]

        try:
            principal = decode_token(token)
        except AuthenticationError as e:
            return jsonify({"error": str(e)}), 401

        if get_active_store(principal.store_id) is None:
            log_security_event(
                user_id=principal.user_id,
                event_type="TENANT_CONTEXT_MISSING",
                success=False,
                reason=f"Token bound to unknown or inactive store {principal.store_id}",
                store_id=None,
            )
            return jsonify({"error": "Invalid session: missing tenant context"}), 401

        g.user_id = principal.user_id
        g.store_id = principal.store_id

        return f(*args, **kwargs)

    return decorated_function
