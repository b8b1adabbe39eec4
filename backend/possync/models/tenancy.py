from __future__ import annotations

from uuid import uuid4

from ..extensions import db
from possync.time_utils import to_utc_z


def new_id() -> str:
    return uuid4().hex


class Store(db.Model):
    """
    Tenant root: every synchronizable row belongs to exactly one Store.

    WHY: Shared-database multi-tenancy with strict isolation. No query on
    record tables may run without a store_id predicate.
    """
    __tablename__ = "stores"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Last write stamp handed out for this tenant; pull cursors follow it
    sync_clock = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
