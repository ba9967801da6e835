"""
Cached liveness probe for the sync server.

check() answers from cache for `ttl` seconds unless forced. The optional
monitoring loop re-probes every `interval` seconds until stopped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from chatvault.sync.client import SyncClient
from chatvault.sync.errors import SyncError

logger = logging.getLogger(__name__)


def is_healthy_payload(payload: dict) -> bool:
    """Any of the shapes the known sync servers use to say 'up'."""
    if not isinstance(payload, dict):
        return False
    return (
        payload.get("status") in ("ok", "healthy")
        or payload.get("success") is True
        or payload.get("database") == "online"
    )


@dataclass
class HealthStatus:
    available: bool
    checked_at: float
    error: str = ""


class HealthMonitor:
    def __init__(self, client: SyncClient, ttl: float = 5.0, interval: float = 30.0):
        self.client = client
        self.ttl = ttl
        self.interval = interval
        self._status: HealthStatus | None = None
        self._task: asyncio.Task | None = None

    @property
    def status(self) -> HealthStatus | None:
        return self._status

    async def check(self, force: bool = False) -> bool:
        cached = self._status
        if not force and cached is not None and time.monotonic() - cached.checked_at < self.ttl:
            return cached.available

        try:
            available = is_healthy_payload(await self.client.health())
            error = "" if available else "unhealthy response"
        except SyncError as e:
            available, error = False, str(e)

        if cached is None or cached.available != available:
            logger.info("Sync server %s", "available" if available else f"unavailable ({error})")
        self._status = HealthStatus(available=available, checked_at=time.monotonic(), error=error)
        return available

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self._loop())
            logger.debug("Health monitor started (every %.0fs)", self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.debug("Health monitor stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            await self.check(force=True)
            await asyncio.sleep(self.interval)
