"""
SyncSession wires one authenticated terminal session together:

    store -> journal -> writer          (local writes, always available)
    api -> engine <- supervisor         (sync passes, gated on connectivity)

and runs the periodic scheduler. After a transient failure the next pass is
scheduled after the engine's backoff delay instead of the regular interval.

    async with SyncSession(ClientConfig.from_env()) as session:
        session.writer.create("product", {...})
        await session.sync_now()
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from .config import ClientConfig
from .connectivity import ConnectivitySupervisor
from .engine import SyncEngine, StrategyConfig, PassReport
from .errors import ErrorStream
from .journal import MutationJournal
from .local_store import LocalStore
from .mutations import LocalWriter
from .transport import SyncApi

logger = logging.getLogger(__name__)


class SyncSession:
    def __init__(
        self,
        config: ClientConfig,
        *,
        store: LocalStore | None = None,
        strategies: StrategyConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.store_id:
            raise ValueError("store_id is required to open a sync session")
        self.config = config
        self.store_id = config.store_id
        self.authenticated = bool(config.token)

        self.errors = ErrorStream()
        self.store = store or LocalStore(config.db_path)
        self.journal = MutationJournal(self.store, soft_cap=config.journal_soft_cap, errors=self.errors)
        self.writer = LocalWriter(self.store, self.journal, self.store_id)
        self.api = SyncApi(config.api_url, config.token, timeout=config.request_timeout, transport=transport)
        self.engine = SyncEngine(
            self.store, self.journal, self.api, self.store_id,
            config=config,
            strategies=strategies,
            errors=self.errors,
            on_unauthenticated=self._teardown,
        )
        self.supervisor = ConnectivitySupervisor(
            self.api,
            engine=self.engine,
            on_online=self.trigger,
            heartbeat_interval=config.heartbeat_interval,
            heartbeat_timeout=config.heartbeat_timeout,
        )
        self._scheduler: asyncio.Task | None = None

    async def __aenter__(self) -> "SyncSession":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
        self.store.close()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def trigger(self, reason: str) -> PassReport | None:
        """Run a pass unless offline or signed out; returns None when suppressed."""
        if not self.authenticated:
            logger.debug("Sync trigger (%s) ignored: session signed out", reason)
            return None
        if not self.supervisor.should_sync():
            logger.debug("Sync trigger (%s) suppressed while offline", reason)
            return None
        return await self.engine.sync(reason)

    async def sync_now(self) -> PassReport | None:
        """Manual "Sync now": probe first when the terminal believes it is offline."""
        if not self.supervisor.online:
            await self.supervisor.check()
        return await self.trigger("manual")

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.supervisor.check()
        self.supervisor.start()
        if self._scheduler is None or self._scheduler.done():
            self._scheduler = asyncio.get_running_loop().create_task(self._schedule())
        logger.info("Sync session started for store %s", self.store_id)

    async def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel()
            try:
                await self._scheduler
            except asyncio.CancelledError:
                pass
            self._scheduler = None
        await self.supervisor.stop()
        await self.api.close()

    def next_delay(self, report: PassReport | None) -> float:
        if report is not None and report.retry_in is not None:
            return report.retry_in
        return self.config.sync_interval

    async def _schedule(self) -> None:
        report = None
        while self.authenticated:
            await asyncio.sleep(self.next_delay(report))
            report = await self.trigger("interval")

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def _teardown(self) -> None:
        """Token rejected: stop syncing until the user signs in again. Local data stays."""
        logger.warning("Session for store %s is no longer authenticated", self.store_id)
        self.authenticated = False
        self.api.token = None

    def sign_in(self, token: str) -> None:
        self.api.token = token
        self.authenticated = True

    def status(self) -> dict[str, Any]:
        return {
            **self.engine.status(),
            "connectivity": self.supervisor.status().to_dict(),
            "authenticated": self.authenticated,
        }
