from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel

from . import proto
from .router import RoomRouter, audience_for

log = logging.getLogger("tasksync.dispatch")

TaskDoc = Dict[str, Any]


class EventDispatcher:
    """Fan typed events out to every live connection in the computed audience.

    Call after the durable mutation has committed, synchronously and in commit
    order; per-connection FIFO queues then keep same-task events ordered.
    Nothing here raises into the caller: notification is best effort.
    """

    def __init__(self, router: RoomRouter, *, suppress_origin_echo: bool = True) -> None:
        self.router = router
        self.suppress_origin_echo = suppress_origin_echo

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def dispatch(self, event: BaseModel, audience: Iterable[str], *, origin: Optional[str] = None) -> int:
        try:
            envelope = proto.Envelope(event=event, audience=frozenset(audience))
            exclude = origin if self.suppress_origin_echo else None
            delivered = self.router.deliver(envelope.audience, envelope.frame(), exclude=exclude)
        except Exception:
            log.exception("Dispatch of %s failed", getattr(event, "type", type(event).__name__))
            return 0
        log.debug(
            "%s → %d user(s), %d connection(s)", envelope.type, len(envelope.audience), delivered
        )
        return delivered

    def publish(
        self,
        event_type: str,
        task: TaskDoc,
        *,
        origin: Optional[str] = None,
        removed_user_id: Optional[str] = None,
    ) -> int:
        """Entry point for the CRUD layer: one call per committed mutation."""

        if event_type == proto.TASK_CREATED:
            return self.task_created(task, origin=origin)
        if event_type == proto.TASK_UPDATED:
            return self.task_updated(task, origin=origin)
        if event_type == proto.TASK_DELETED:
            return self.task_deleted(task, origin=origin)
        if event_type == proto.TASK_SHARED:
            return self.task_shared(task, origin=origin)
        if event_type == proto.TASK_UNSHARED:
            if not removed_user_id:
                log.error("task:unshared published without removed_user_id")
                return 0
            return self.task_unshared(task, removed_user_id, origin=origin)
        if event_type == proto.TASK_COMMENT_ADDED:
            return self.comment_added(task, origin=origin)
        log.error("Unknown event type %r", event_type)
        return 0

    # ------------------------------------------------------------------
    # Task events
    # ------------------------------------------------------------------

    def _snapshot(self, event_type: str, task: TaskDoc, origin: Optional[str]) -> int:
        try:
            audience = audience_for(*proto.task_parties(task))
            event = proto.TaskSnapshot(type=event_type, payload=task)
        except ValueError:
            log.exception("Cannot build %s", event_type)
            return 0
        return self.dispatch(event, audience, origin=origin)

    def task_created(self, task: TaskDoc, *, origin: Optional[str] = None) -> int:
        return self._snapshot(proto.TASK_CREATED, task, origin)

    def task_updated(self, task: TaskDoc, *, origin: Optional[str] = None) -> int:
        return self._snapshot(proto.TASK_UPDATED, task, origin)

    def task_shared(self, task: TaskDoc, *, origin: Optional[str] = None) -> int:
        """task is the post-share document, so the new collaborator is in the audience."""

        return self._snapshot(proto.TASK_SHARED, task, origin)

    def comment_added(self, task: TaskDoc, *, origin: Optional[str] = None) -> int:
        return self._snapshot(proto.TASK_COMMENT_ADDED, task, origin)

    def task_deleted(self, task: TaskDoc, *, origin: Optional[str] = None) -> int:
        """task is the document as it was just before deletion."""

        try:
            audience = audience_for(*proto.task_parties(task))
            event = proto.TaskRemoved(type=proto.TASK_DELETED, payload=proto.TaskRef(task_id=proto.task_id_of(task)))
        except ValueError:
            log.exception("Cannot build %s", proto.TASK_DELETED)
            return 0
        return self.dispatch(event, audience, origin=origin)

    def task_unshared(self, task: TaskDoc, removed_user_id: str, *, origin: Optional[str] = None) -> int:
        """task is the post-unshare document.

        The removed user gets task:unshared; everyone still in the audience gets the
        updated document. Already-delivered events are not revoked.
        """

        try:
            task_id = proto.task_id_of(task)
            owner, collaborators = proto.task_parties(task)
        except ValueError:
            log.exception("Cannot build %s", proto.TASK_UNSHARED)
            return 0
        removed = proto.TaskRemoved(type=proto.TASK_UNSHARED, payload=proto.TaskRef(task_id=task_id))
        delivered = self.dispatch(removed, {removed_user_id}, origin=origin)
        self.router.evict_user(task_id, removed_user_id)
        remaining = audience_for(owner, collaborators) - {removed_user_id}
        if remaining:
            delivered += self.dispatch(
                proto.TaskSnapshot(type=proto.TASK_UPDATED, payload=task), remaining, origin=origin
            )
        return delivered

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def user_online(self, user_id: str) -> int:
        return self._presence(proto.USER_ONLINE, user_id)

    def user_offline(self, user_id: str) -> int:
        return self._presence(proto.USER_OFFLINE, user_id)

    def _presence(self, event_type: str, user_id: str) -> int:
        event = proto.PresenceChanged(type=event_type, payload=proto.UserRef(user_id=user_id))
        try:
            return self.router.broadcast(proto.encode(event), exclude_user=user_id)
        except Exception:
            log.exception("Presence broadcast %s failed for %s", event_type, user_id)
            return 0


__all__ = ["EventDispatcher"]
