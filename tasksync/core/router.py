from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from .connection import Connection
from .registry import MembershipRegistry

"""
Room Router
-----------
Two kinds of audience:
  • computed: owner ∪ collaborators, recomputed from the task document on every
    event; nothing is cached, so share/unshare take effect on the next event.
  • ad-hoc rooms: explicit room:join / room:leave per connection, used for
    advisory traffic (typing, room presence). The runtime checks read access
    before it calls join().
"""

log = logging.getLogger("tasksync.router")


def audience_for(owner_id: str, collaborator_ids: Iterable[str]) -> FrozenSet[str]:
    if not owner_id:
        raise ValueError("owner_id is required")
    return frozenset({owner_id, *[c for c in collaborator_ids if c]})


class RoomRouter:
    def __init__(self, registry: MembershipRegistry) -> None:
        self.registry = registry
        self._lock = threading.RLock()
        self._rooms: Dict[str, Set[str]] = {}           # room_id -> connection ids
        self._joined: Dict[str, Set[str]] = {}          # connection id -> room ids

    audience_for = staticmethod(audience_for)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def resolve(self, audience: Iterable[str], *, exclude: Optional[str] = None) -> List[Connection]:
        """Audience user ids → live connections. Offline users are skipped."""

        targets: List[Connection] = []
        for user_id in sorted(set(audience)):
            for conn in self.registry.live_connections(user_id):
                if conn.id != exclude:
                    targets.append(conn)
        return targets

    def deliver(self, audience: Iterable[str], frame: str, *, exclude: Optional[str] = None) -> int:
        """Enqueue frame once per live connection; returns how many accepted it."""

        return self._fanout(self.resolve(audience, exclude=exclude), frame)

    def deliver_room(self, room_id: str, frame: str, *, exclude: Optional[str] = None) -> int:
        targets = []
        for cid in self.members(room_id):
            if cid == exclude:
                continue
            conn = self.registry.get(cid)
            if conn is not None:
                targets.append(conn)
        return self._fanout(targets, frame)

    def broadcast(self, frame: str, *, exclude_user: Optional[str] = None) -> int:
        users = [u for u in self.registry.online_users() if u != exclude_user]
        return self.deliver(users, frame)

    def _fanout(self, targets: List[Connection], frame: str) -> int:
        delivered = 0
        for conn in targets:
            try:
                if conn.enqueue(frame):
                    delivered += 1
            except Exception:
                log.exception("Enqueue failed for %s", conn.id)
        return delivered

    # ------------------------------------------------------------------
    # Ad-hoc rooms
    # ------------------------------------------------------------------

    def join(self, room_id: str, connection_id: str) -> bool:
        """Returns False if the connection was already in the room."""

        if not room_id:
            raise ValueError("room_id is required")
        with self._lock:
            members = self._rooms.setdefault(room_id, set())
            if connection_id in members:
                return False
            members.add(connection_id)
            self._joined.setdefault(connection_id, set()).add(room_id)
        log.debug("%s joined room %s", connection_id, room_id)
        return True

    def leave(self, room_id: str, connection_id: str) -> bool:
        with self._lock:
            members = self._rooms.get(room_id)
            if not members or connection_id not in members:
                return False
            members.discard(connection_id)
            if not members:
                del self._rooms[room_id]
            rooms = self._joined.get(connection_id)
            if rooms is not None:
                rooms.discard(room_id)
                if not rooms:
                    del self._joined[connection_id]
        log.debug("%s left room %s", connection_id, room_id)
        return True

    def leave_all(self, connection_id: str) -> List[str]:
        with self._lock:
            rooms = sorted(self._joined.get(connection_id, ()))
        for room_id in rooms:
            self.leave(room_id, connection_id)
        return rooms

    def evict_user(self, room_id: str, user_id: str) -> List[str]:
        """Remove every connection of user_id from room_id (access revoked)."""

        evicted = []
        for cid in self.registry.connections_for(user_id):
            if self.leave(room_id, cid):
                evicted.append(cid)
        if evicted:
            log.info("Evicted user %s from room %s", user_id, room_id)
        return evicted

    def members(self, room_id: str) -> Set[str]:
        with self._lock:
            return set(self._rooms.get(room_id, ()))

    def rooms_of(self, connection_id: str) -> Set[str]:
        with self._lock:
            return set(self._joined.get(connection_id, ()))

    def clear(self) -> None:
        with self._lock:
            self._rooms.clear()
            self._joined.clear()


__all__ = ["RoomRouter", "audience_for"]
