# backend/possync/client/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field

from ..schema import ENTITIES


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


@dataclass
class ClientConfig:
    """Terminal-side settings; one instance per authenticated session."""

    # Base URL of the sync API (role of VITE_API_URL in the web client)
    api_url: str = "http://localhost:5000"
    db_path: str = "possync-client.sqlite3"
    store_id: str | None = None
    token: str | None = None

    sync_interval: float = 60.0
    heartbeat_interval: float = 30.0
    heartbeat_timeout: float = 5.0
    request_timeout: float = 15.0

    journal_soft_cap: int = 10_000
    pull_page_limit: int = 500

    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap: float = 60.0
    backoff_jitter: float = 0.2

    # Entity types this session synchronizes, in push/pull order
    entities: tuple[str, ...] = field(default_factory=lambda: tuple(ENTITIES))

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            api_url=os.environ.get("POS_API_URL", cls.api_url).rstrip("/"),
            db_path=os.environ.get("POS_DB_PATH", cls.db_path),
            store_id=os.environ.get("POS_STORE_ID") or None,
            token=os.environ.get("POS_TOKEN") or None,
            sync_interval=_env_float("SYNC_INTERVAL_SECONDS", cls.sync_interval),
            heartbeat_interval=_env_float("HEARTBEAT_SECONDS", cls.heartbeat_interval),
            heartbeat_timeout=_env_float("HEARTBEAT_TIMEOUT_SECONDS", cls.heartbeat_timeout),
            journal_soft_cap=_env_int("JOURNAL_SOFT_CAP", cls.journal_soft_cap),
            pull_page_limit=_env_int("PULL_PAGE_LIMIT", cls.pull_page_limit),
            backoff_cap=_env_float("BACKOFF_CAP_SECONDS", cls.backoff_cap),
        )
