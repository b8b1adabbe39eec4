"""
Connectivity Supervisor: decides whether the terminal is online.

Two signals feed it:
  * the OS network flag (set_os_online), which can only say "offline" with
    certainty
  * a heartbeat against GET /api/health every heartbeat_interval seconds,
    bounded by heartbeat_timeout

The terminal is online when the OS flag is up and the last heartbeat
succeeded. An offline->online transition resumes the engine and fires one
sync trigger; going offline cancels the running pass. While offline, sync
triggers are suppressed.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..time_utils import utcnow, to_utc_z

logger = logging.getLogger(__name__)


@dataclass
class ConnectivityStatus:
    online: bool = False
    os_online: bool = True
    reconnect_attempts: int = 0
    last_online_at: str | None = None
    last_checked_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "online": self.online,
            "osOnline": self.os_online,
            "reconnectAttempts": self.reconnect_attempts,
            "lastOnlineAt": self.last_online_at,
            "lastCheckedAt": self.last_checked_at,
        }


class ConnectivitySupervisor:
    def __init__(
        self,
        api,
        *,
        engine=None,
        on_online: Callable[[str], Awaitable[Any]] | None = None,
        heartbeat_interval: float = 30.0,
        heartbeat_timeout: float = 5.0,
    ) -> None:
        self.api = api
        self.engine = engine
        self.on_online = on_online
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout

        self._status = ConnectivityStatus()
        self._callbacks: list[Callable[[ConnectivityStatus], None]] = []
        self._task: asyncio.Task | None = None
        self._triggers: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the heartbeat loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._heartbeat_loop())
        logger.info("Connectivity supervisor started (heartbeat=%.0fs)", self.heartbeat_interval)

    async def stop(self) -> None:
        tasks = [t for t in (self._task, *self._triggers) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._triggers.clear()

    async def _heartbeat_loop(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.heartbeat_interval)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    async def check(self) -> bool:
        """Run one heartbeat and apply the result."""
        if not self._status.os_online:
            self._apply(False)
            return False
        reachable = await self.api.health(timeout=self.heartbeat_timeout)
        self._apply(reachable)
        return reachable

    def set_os_online(self, flag: bool) -> None:
        """OS network change. Down is trusted at once; up is confirmed by a heartbeat."""
        self._status.os_online = flag
        if not flag:
            self._apply(False)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._keep(loop.create_task(self.check()))

    async def reconnect(self) -> bool:
        """User-initiated probe ("Retry" button). A failed probe counts as an attempt."""
        logger.info("Reconnect requested (attempt %d)", self._status.reconnect_attempts + 1)
        return await self.check()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def online(self) -> bool:
        return self._status.online

    def status(self) -> ConnectivityStatus:
        return ConnectivityStatus(**vars(self._status))

    def subscribe(self, callback: Callable[[ConnectivityStatus], None]) -> Callable[[], None]:
        """Callback fired on every online/offline transition; returns an unsubscribe function."""
        self._callbacks.append(callback)
        return lambda: self._callbacks.remove(callback) if callback in self._callbacks else None

    def should_sync(self) -> bool:
        return self._status.online

    def _apply(self, online: bool) -> None:
        status = self._status
        status.last_checked_at = to_utc_z(utcnow())
        was_online = status.online

        if online:
            status.last_online_at = status.last_checked_at
        elif not was_online:
            status.reconnect_attempts += 1

        if online == was_online:
            return
        status.online = online

        if online:
            logger.info("Connectivity restored after %d attempt(s)", status.reconnect_attempts)
            status.reconnect_attempts = 0
            if self.engine is not None:
                self.engine.resume()
        else:
            logger.warning("Connectivity lost")
            if self.engine is not None:
                self.engine.cancel("offline")

        for cb in list(self._callbacks):
            try:
                cb(self.status())
            except Exception:
                logger.exception("Connectivity callback failed")

        if online and self.on_online is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            self._keep(loop.create_task(self.on_online("reconnected")))

    def _keep(self, task: asyncio.Task) -> None:
        self._triggers.add(task)
        task.add_done_callback(self._triggers.discard)
