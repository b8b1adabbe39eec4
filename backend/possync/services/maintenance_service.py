# Overview: Service-layer operations for maintenance; retention of audit rows and tombstones.

from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..models import SecurityEvent, MODEL_BY_ENTITY
from possync.time_utils import utcnow


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """
    Delete security events older than retention_days.
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete()
    db.session.commit()
    return deleted


def purge_tombstones(*, retention_days: int = 30) -> dict[str, int]:
    """
    Physically remove tombstones whose delete is older than retention_days.

    A client that stays offline longer than the retention window will not
    learn about those deletes from a pull; keep the window above the longest
    expected offline period.
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    counts = {}
    for name, model in MODEL_BY_ENTITY.items():
        counts[name] = db.session.query(model).filter(
            model.deleted.is_(True),
            model.last_synced_at < cutoff,
        ).delete(synchronize_session=False)
    db.session.commit()
    return counts
