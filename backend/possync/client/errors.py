"""
Client-side error kinds and the observable error stream.

The engine recovers TRANSIENT_NETWORK and VERSION_CONFLICT on its own; every
other kind is emitted on the ErrorStream for the UI (banners, badges, the
"needs attention" list).
"""
from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import Any, Callable

from ..time_utils import utcnow, to_utc_z

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    TRANSIENT_NETWORK = "transient-network"
    VERSION_CONFLICT = "version-conflict"
    TENANT_VIOLATION = "tenant-violation"
    UNAUTHENTICATED = "unauthenticated"
    VALIDATION = "validation"
    STORAGE = "storage"
    RESOLVER_REFUSAL = "resolver-refusal"
    JOURNAL_SOFT_CAP = "journal-soft-cap"


class SyncError(Exception):
    """An error the sync core reports, tagged with its kind and the row it concerns."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        entity: str | None = None,
        local_id: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.entity = entity
        self.local_id = local_id
        self.status = status
        self.occurred_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "entity": self.entity,
            "localId": self.local_id,
            "status": self.status,
            "occurredAt": to_utc_z(self.occurred_at),
        }

    def __repr__(self) -> str:
        return f"SyncError({self.kind.value}, {self.message!r}, entity={self.entity}, local_id={self.local_id})"


class StorageError(SyncError):
    """The local store could not complete a read or write."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(ErrorKind.STORAGE, message, **kwargs)


class ErrorStream:
    """Fan-out of SyncErrors to UI subscribers, with a bounded history."""

    def __init__(self, history: int = 200) -> None:
        self._subscribers: list[Callable[[SyncError], None]] = []
        self._history: deque[SyncError] = deque(maxlen=history)

    def subscribe(self, callback: Callable[[SyncError], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Callable[[SyncError], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, error: SyncError) -> None:
        self._history.append(error)
        logger.warning("sync error [%s] %s", error.kind.value, error.message)
        for cb in list(self._subscribers):
            try:
                cb(error)
            except Exception:
                logger.exception("Error stream subscriber failed")

    def history(self, kind: ErrorKind | None = None) -> list[SyncError]:
        if kind is None:
            return list(self._history)
        return [e for e in self._history if e.kind == kind]

    def clear(self) -> None:
        self._history.clear()
