"""
Offline-first sync client embedded by a POS terminal.

    from possync.client import ClientConfig, SyncSession

    session = SyncSession(ClientConfig.from_env())
    await session.start()
    session.writer.create("product", {"name": "Tea", "price": 3.5})
    await session.sync_now()
"""
from .config import ClientConfig
from .errors import ErrorKind, SyncError, StorageError, ErrorStream
from .local_store import LocalStore
from .journal import MutationJournal
from .mutations import LocalWriter
from .engine import SyncEngine, SyncEngineState, PassReport, StrategyConfig
from .connectivity import ConnectivitySupervisor
from .session import SyncSession

__all__ = [
    "ClientConfig",
    "ErrorKind", "SyncError", "StorageError", "ErrorStream",
    "LocalStore", "MutationJournal", "LocalWriter",
    "SyncEngine", "SyncEngineState", "PassReport", "StrategyConfig",
    "ConnectivitySupervisor", "SyncSession",
]
