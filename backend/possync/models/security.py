from __future__ import annotations

from ..extensions import db
from possync.time_utils import to_utc_z


class SecurityEvent(db.Model):
    """
    Security and resolution audit log with tenant context.

    WHY: Every TENANT_VIOLATION and every conflict resolution other than
    server-wins leaves a record here.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_store_occurred", "store_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Principal's tenant (nullable for pre-auth events)
    store_id = db.Column(db.String(32), nullable=True, index=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)

    # TENANT_VIOLATION, TENANT_CONTEXT_MISSING, CONFLICT_RESOLVED, ...
    event_type = db.Column(db.String(64), nullable=False, index=True)
    resource = db.Column(db.String(128), nullable=True)
    action = db.Column(db.String(64), nullable=True)

    success = db.Column(db.Boolean, nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "resource": self.resource,
            "action": self.action,
            "success": self.success,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }
