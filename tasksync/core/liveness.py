from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .connection import Connection
from .errors import StaleConnection
from .registry import MembershipRegistry

log = logging.getLogger("tasksync.liveness")

EvictFn = Callable[[Connection], Awaitable[None]]


class LivenessMonitor:
    """Safety net for connections that vanished without a clean close.

    Every sweep evicts connections whose last-seen is older than stale_after_s,
    exactly as unregister() would, then hangs up their transport.
    """

    def __init__(
        self,
        registry: MembershipRegistry,
        *,
        interval_s: float = 60.0,
        stale_after_s: float = 300.0,
        on_evict: Optional[EvictFn] = None,
    ) -> None:
        if interval_s <= 0 or stale_after_s <= 0:
            raise ValueError("interval and staleness threshold must be positive")
        self.registry = registry
        self.interval_s = interval_s
        self.stale_after_s = stale_after_s
        self.on_evict = on_evict
        self._task: Optional[asyncio.Task] = None

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        current = self.registry.now() if now is None else now
        evicted: List[str] = []
        for conn in self.registry.stale(self.stale_after_s, now=current):
            if self.registry.unregister(conn.id) is None:
                continue  # closed cleanly while we were sweeping
            reason = StaleConnection(conn.id, current - conn.last_seen)
            log.info("Evicting stale connection: %s", reason)
            evicted.append(conn.id)
            try:
                if self.on_evict is not None:
                    await self.on_evict(conn)
                else:
                    await conn.close()
            except Exception:
                log.exception("Eviction hook failed for %s", conn.id)
        return evicted

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.sweep()
            except Exception:  # pragma: no cover
                log.exception("liveness sweep error")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="liveness")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


__all__ = ["LivenessMonitor"]
