from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from .connection import Connection

"""
Membership Registry
-------------------
Which live connections belong to which user. A user may hold several sessions
(multi-device); addressing is always "deliver to user", never by raw socket.

Presence transitions are signalled to observers:
  • first connection for a user      → on_online(user_id)
  • last connection for a user gone  → on_offline(user_id)

Observers run after the lock is released, so they may call back into the registry.
"""

log = logging.getLogger("tasksync.registry")

PresenceFn = Callable[[str], None]
NowFn = Callable[[], float]


@dataclass
class PresenceEntry:
    user_id: str
    connections: Set[str] = field(default_factory=set)
    status: Optional[str] = None
    since: float = field(default_factory=time.monotonic)


class MembershipRegistry:
    """Explicitly owned presence table; construct one per server and close() it on shutdown."""

    def __init__(self, now: NowFn = time.monotonic) -> None:
        self.now = now
        self._lock = threading.RLock()
        self._connections: Dict[str, Connection] = {}
        self._users: Dict[str, PresenceEntry] = {}
        self._online_observers: List[PresenceFn] = []
        self._offline_observers: List[PresenceFn] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_online(self, callback: PresenceFn) -> None:
        self._online_observers.append(callback)

    def on_offline(self, callback: PresenceFn) -> None:
        self._offline_observers.append(callback)

    def _notify(self, observers: List[PresenceFn], user_id: str) -> None:
        for callback in list(observers):
            try:
                callback(user_id)
            except Exception:
                log.exception("Presence observer failed for %s", user_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(self, user_id: str, connection: Connection) -> bool:
        """Add a connection; returns True if this brought the user online."""

        if not user_id:
            raise ValueError("user_id is required")
        if connection.user_id != user_id:
            raise ValueError("connection belongs to a different user")
        with self._lock:
            if self._closed:
                raise RuntimeError("registry is closed")
            if connection.id in self._connections:
                raise ValueError(f"connection {connection.id} already registered")
            self._connections[connection.id] = connection
            entry = self._users.get(user_id)
            came_online = entry is None
            if came_online:
                entry = PresenceEntry(user_id=user_id, since=self.now())
                self._users[user_id] = entry
            entry.connections.add(connection.id)
            connection.touch(self.now())
        log.info("Registered %s for user %s (%d session(s))", connection.id, user_id, len(entry.connections))
        if came_online:
            self._notify(self._online_observers, user_id)
        return came_online

    def unregister(self, connection_id: str) -> Optional[Connection]:
        """Remove exactly one connection. Unknown ids are a no-op."""

        with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return None
            entry = self._users.get(connection.user_id)
            went_offline = False
            if entry is not None:
                entry.connections.discard(connection_id)
                if not entry.connections:
                    del self._users[connection.user_id]
                    went_offline = True
        log.info("Unregistered %s for user %s", connection_id, connection.user_id)
        if went_offline:
            self._notify(self._offline_observers, connection.user_id)
        return connection

    def touch(self, connection_id: str) -> bool:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            connection.touch(self.now())
            return True

    def set_status(self, user_id: str, status: Optional[str]) -> bool:
        with self._lock:
            entry = self._users.get(user_id)
            if entry is None:
                return False
            entry.status = status
            return True

    def close(self) -> List[Connection]:
        """Drop everything without presence signalling; returns the connections to hang up."""

        with self._lock:
            self._closed = True
            connections = list(self._connections.values())
            self._connections.clear()
            self._users.clear()
        self._online_observers.clear()
        self._offline_observers.clear()
        return connections

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def connections_for(self, user_id: str) -> Set[str]:
        with self._lock:
            entry = self._users.get(user_id)
            return set(entry.connections) if entry else set()

    def live_connections(self, user_id: str) -> List[Connection]:
        with self._lock:
            entry = self._users.get(user_id)
            if entry is None:
                return []
            return [self._connections[cid] for cid in entry.connections]

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users

    def status_of(self, user_id: str) -> Optional[str]:
        with self._lock:
            entry = self._users.get(user_id)
            return entry.status if entry else None

    def online_users(self) -> List[str]:
        with self._lock:
            return sorted(self._users)

    def snapshot(self) -> List[Tuple[str, Optional[str]]]:
        with self._lock:
            return [(uid, self._users[uid].status) for uid in sorted(self._users)]

    def stale(self, threshold_s: float, now: Optional[float] = None) -> List[Connection]:
        current = self.now() if now is None else now
        with self._lock:
            return [c for c in self._connections.values() if current - c.last_seen > threshold_s]

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._connections


__all__ = ["MembershipRegistry", "PresenceEntry"]
