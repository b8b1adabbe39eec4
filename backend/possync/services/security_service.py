# Overview: Append-only security/audit event logging with tenant context.

from __future__ import annotations

from flask import has_request_context, request

from ..extensions import db
from ..models import SecurityEvent


def log_security_event(
    user_id: str | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    store_id: str | None = None,
    commit: bool = True,
) -> SecurityEvent:
    """
    Log security event to audit trail with tenant context.

    event_type examples:
    - TENANT_VIOLATION
    - TENANT_CONTEXT_MISSING
    - CONFLICT_RESOLVED

    Client context (IP, user agent) is taken from the current request when
    the caller does not pass it explicitly.
    """
    if has_request_context():
        ip_address = ip_address or request.remote_addr
        user_agent = user_agent or request.headers.get("User-Agent")
        resource = resource or request.path
        action = action or request.method

    event = SecurityEvent(
        user_id=user_id,
        store_id=store_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent[:512] if user_agent else None,
    )
    db.session.add(event)
    if commit:
        db.session.commit()
    return event
