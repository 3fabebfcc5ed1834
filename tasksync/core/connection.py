from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .errors import DeliveryFailure

log = logging.getLogger("tasksync.connection")

PushFn = Callable[[str], Awaitable[None]]
HangupFn = Callable[[], Awaitable[None]]

OVERFLOW_POLICIES = {"drop_oldest", "drop_new"}


def new_connection_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True, eq=False)
class Connection:
    """One live client transport plus its bounded outbound queue.

    enqueue() never blocks: a slow consumer loses frames (per overflow policy)
    instead of stalling whoever is dispatching.
    """

    user_id: str
    push: PushFn
    hangup: Optional[HangupFn] = None
    id: str = field(default_factory=new_connection_id)
    established_at: float = field(default_factory=time.monotonic)
    last_seen: float = 0.0
    queue_size: int = 256
    overflow: str = "drop_oldest"
    user_name: str = ""
    dropped: int = 0
    closed: bool = False
    _queue: asyncio.Queue = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.overflow not in OVERFLOW_POLICIES:
            raise ValueError(f"unknown overflow policy {self.overflow!r}")
        if self.queue_size < 1:
            raise ValueError("queue_size must be positive")
        if not self.last_seen:
            self.last_seen = self.established_at
        self._queue = asyncio.Queue(maxsize=self.queue_size)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def enqueue(self, frame: str) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            pass
        self.dropped += 1
        if self.overflow == "drop_new":
            log.warning("Queue full for %s (user %s); dropped newest frame", self.id, self.user_id)
            return False
        self._queue.get_nowait()
        self._queue.put_nowait(frame)
        log.warning("Queue full for %s (user %s); dropped oldest frame", self.id, self.user_id)
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def run_writer(self) -> None:
        """Drain the queue onto the transport until the connection dies."""

        while not self.closed:
            frame = await self._queue.get()
            try:
                await self.push(frame)
            except Exception as exc:
                failure = DeliveryFailure(self.id, str(exc) or type(exc).__name__)
                log.warning("Delivery failure: %s", failure)
                self.closed = True
                return

    async def drain(self) -> None:
        """Push whatever is queued right now, without a writer task running."""

        while not self._queue.empty() and not self.closed:
            frame = self._queue.get_nowait()
            try:
                await self.push(frame)
            except Exception as exc:
                log.warning("Delivery failure: %s", DeliveryFailure(self.id, str(exc)))
                self.closed = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def touch(self, now: Optional[float] = None) -> None:
        self.last_seen = time.monotonic() if now is None else now

    async def close(self) -> None:
        if self.closed and self.hangup is None:
            return
        self.closed = True
        hangup, self.hangup = self.hangup, None
        if hangup is not None:
            try:
                await hangup()
            except Exception:
                log.debug("Hangup failed for %s", self.id, exc_info=True)


__all__ = ["Connection", "OVERFLOW_POLICIES", "new_connection_id"]
