from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from tasksync.core import proto
from tasksync.core.errors import ReconciliationConflict
from tasksync.utils import canonical

"""
Client reconciliation
---------------------
Per task the local view is in one of three states:

  CLEAN               matches the last server state we know of
  OPTIMISTIC_PENDING  a local edit is rendered, waiting for the HTTP answer
  RECONCILING         as above, and peer events for the task were buffered

  CLEAN               --local edit-->  OPTIMISTIC_PENDING  (snapshot kept)
  OPTIMISTIC_PENDING  --confirm----->  CLEAN at the canonical value, then replay
  OPTIMISTIC_PENDING  --reject------>  CLEAN at the snapshot, then replay
  OPTIMISTIC_PENDING  --peer event-->  RECONCILING         (event buffered)
  CLEAN               --peer event-->  CLEAN               (applied directly)
  any                 --delete/unshare--> gone             (deletion wins)

Replay asks fetch(task_id) for the canonical value when a fetcher is wired in.
Without one the newest buffered document is applied, unless it is older than
what the confirm just returned. Last writer wins on whole documents.
"""

log = logging.getLogger("tasksync.client.reconcile")

TaskDoc = Dict[str, Any]
FetchFn = Callable[[str], Awaitable[Optional[TaskDoc]]]
Listener = Callable[["Change"], None]

CLEAN = "clean"
OPTIMISTIC_PENDING = "optimistic_pending"
RECONCILING = "reconciling"

IN_FLIGHT = "in_flight"
CONFIRMED = "confirmed"
FAILED = "failed"

# Change kinds
LOCAL = "local"
BUFFERED = "buffered"
APPLIED = "applied"
REMOVED = "removed"
ROLLED_BACK = "rolled_back"

TEMP_PREFIX = "temp-"


def temp_id() -> str:
    return f"{TEMP_PREFIX}{uuid.uuid4().hex}"


def _stamp(value: Any) -> Optional[float]:
    """updatedAt as epoch milliseconds; accepts numbers and ISO-8601 strings."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000


def _stamp_key(doc: TaskDoc) -> float:
    stamp = _stamp(doc.get("updatedAt"))
    return float("-inf") if stamp is None else stamp


def _newer_or_same(candidate: Optional[TaskDoc], current: Optional[TaskDoc]) -> bool:
    """Compare by updatedAt; documents without a usable stamp are taken as newer."""

    if candidate is None or current is None:
        return True
    a, b = _stamp(candidate.get("updatedAt")), _stamp(current.get("updatedAt"))
    if a is None or b is None:
        return True
    return a >= b


def _same_doc(a: Optional[TaskDoc], b: Optional[TaskDoc]) -> bool:
    if a is None or b is None:
        return a is b
    return canonical.canonical_bytes(a) == canonical.canonical_bytes(b)


@dataclass(slots=True)
class PendingMutation:
    task_id: str
    optimistic: Optional[TaskDoc]  # None: local delete
    snapshot: Optional[TaskDoc]  # None: local create
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted_at: float = field(default_factory=time.time)
    state: str = IN_FLIGHT


@dataclass(slots=True)
class TrackedTask:
    task_id: str
    value: Optional[TaskDoc]
    base: Optional[TaskDoc]
    state: str = CLEAN
    pending: Optional[PendingMutation] = None
    buffered: List[TaskDoc] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Change:
    kind: str
    task_id: str
    value: Optional[TaskDoc] = None
    error: Optional[Exception] = None
    conflict: Optional[ReconciliationConflict] = None
    previous_id: Optional[str] = None


class TaskView:
    """Local list of tasks plus the per-task reconciliation state.

    Drive it from three directions: apply_local*/confirm/reject from the code
    that calls the HTTP API, receive() from the WebSocket, and replace_all()
    after every (re)connect.
    """

    def __init__(self, *, fetch: Optional[FetchFn] = None, listener: Optional[Listener] = None) -> None:
        self.fetch = fetch
        self._listeners: List[Listener] = [listener] if listener else []
        self._tasks: Dict[str, TrackedTask] = {}
        self._mutations: Dict[str, PendingMutation] = {}

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _emit(self, change: Change) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                log.exception("Change listener failed on %s %s", change.kind, change.task_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> Optional[TaskDoc]:
        tracked = self._tasks.get(task_id)
        return tracked.value if tracked else None

    def state_of(self, task_id: str) -> Optional[str]:
        tracked = self._tasks.get(task_id)
        return tracked.state if tracked else None

    def pending_for(self, task_id: str) -> Optional[PendingMutation]:
        tracked = self._tasks.get(task_id)
        return tracked.pending if tracked else None

    def tasks(self) -> List[TaskDoc]:
        return [t.value for t in self._tasks.values() if t.value is not None]

    def __contains__(self, task_id: object) -> bool:
        if not isinstance(task_id, str):
            return False
        tracked = self._tasks.get(task_id)
        return tracked is not None and tracked.value is not None

    def __len__(self) -> int:
        return len(self.tasks())

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def apply_local(self, task_id: str, changes: TaskDoc) -> PendingMutation:
        """Render an edit now; the returned mutation is settled by confirm()/reject()."""

        tracked = self._tasks.get(task_id)
        if tracked is None or tracked.value is None:
            raise KeyError(task_id)
        optimistic = {**tracked.value, **changes}
        return self._begin(tracked, optimistic)

    def apply_local_delete(self, task_id: str) -> PendingMutation:
        tracked = self._tasks.get(task_id)
        if tracked is None or tracked.value is None:
            raise KeyError(task_id)
        return self._begin(tracked, None)

    def apply_local_create(self, doc: TaskDoc) -> PendingMutation:
        doc = dict(doc)
        task_id = proto.ref_id(doc.get("id")) or temp_id()
        doc["id"] = task_id
        if task_id in self._tasks:
            raise ValueError(f"task {task_id} already tracked")
        tracked = TrackedTask(task_id=task_id, value=None, base=None)
        self._tasks[task_id] = tracked
        return self._begin(tracked, doc)

    def _begin(self, tracked: TrackedTask, optimistic: Optional[TaskDoc]) -> PendingMutation:
        previous = tracked.pending
        mutation = PendingMutation(task_id=tracked.task_id, optimistic=optimistic, snapshot=tracked.value)
        if previous is None:
            tracked.base = tracked.value
            tracked.state = OPTIMISTIC_PENDING
        self._mutations[mutation.id] = mutation
        tracked.pending = mutation
        tracked.value = optimistic
        self._emit(Change(LOCAL, tracked.task_id, optimistic))
        return mutation

    # ------------------------------------------------------------------
    # Server answers
    # ------------------------------------------------------------------

    async def confirm(self, mutation_id: str, canonical_value: Optional[TaskDoc] = None) -> None:
        """The HTTP call succeeded. canonical_value is what the server returned (None for a delete)."""

        mutation = self._mutations.pop(mutation_id, None)
        if mutation is None:
            log.debug("confirm for unknown mutation %s", mutation_id)
            return
        mutation.state = CONFIRMED
        tracked = self._tasks.get(mutation.task_id)
        if tracked is None:
            return  # removed by a peer delete meanwhile

        if mutation.optimistic is None:
            self._drop(tracked.task_id)
            return

        value = canonical_value if canonical_value is not None else mutation.optimistic
        new_id = proto.ref_id(value.get("id")) or tracked.task_id
        previous_id = None
        if new_id != tracked.task_id:
            previous_id = tracked.task_id
            self._rebind(tracked, new_id)

        if tracked.pending is not mutation:
            # a later local edit is still rendered; only the base moves
            tracked.base = value
            if previous_id:
                self._emit(Change(LOCAL, tracked.task_id, tracked.value, previous_id=previous_id))
            return

        tracked.pending = None
        tracked.base = value
        tracked.value = value
        tracked.state = CLEAN
        self._emit(Change(CONFIRMED, tracked.task_id, value, previous_id=previous_id))
        await self._replay(tracked, local=mutation.optimistic)

    async def reject(self, mutation_id: str, error: Optional[Exception] = None) -> None:
        mutation = self._mutations.pop(mutation_id, None)
        if mutation is None:
            log.debug("reject for unknown mutation %s", mutation_id)
            return
        mutation.state = FAILED
        tracked = self._tasks.get(mutation.task_id)
        if tracked is None:
            return
        if tracked.pending is not mutation:
            return

        tracked.pending = None
        tracked.value = tracked.base
        tracked.state = CLEAN
        log.info("Rolled back %s on %s: %s", mutation.id, tracked.task_id, error)
        if tracked.value is None:
            # a rejected create: nothing to go back to
            del self._tasks[tracked.task_id]
            self._emit(Change(ROLLED_BACK, tracked.task_id, None, error=error))
            return
        self._emit(Change(ROLLED_BACK, tracked.task_id, tracked.value, error=error))
        await self._replay(tracked, local=mutation.optimistic)

    # ------------------------------------------------------------------
    # Peer events
    # ------------------------------------------------------------------

    def receive(self, event: BaseModel) -> Optional[Change]:
        """Feed one parsed server event. Non-task events are ignored."""

        if isinstance(event, proto.TaskRemoved):
            return self._drop(event.task_id)
        if not isinstance(event, proto.TaskSnapshot):
            return None

        doc = event.payload
        task_id = event.task_id
        tracked = self._tasks.get(task_id)
        if tracked is None:
            tracked = TrackedTask(task_id=task_id, value=doc, base=doc)
            self._tasks[task_id] = tracked
            change = Change(APPLIED, task_id, doc)
            self._emit(change)
            return change

        if tracked.pending is not None:
            tracked.buffered.append(doc)
            tracked.state = RECONCILING
            change = Change(BUFFERED, task_id, tracked.value)
            self._emit(change)
            return change

        tracked.value = doc
        tracked.base = doc
        change = Change(APPLIED, task_id, doc)
        self._emit(change)
        return change

    # ------------------------------------------------------------------
    # Full refresh
    # ------------------------------------------------------------------

    def replace_all(self, docs: Iterable[TaskDoc]) -> None:
        """Adopt a fresh task list after (re)connect. Pending local edits stay on top."""

        fresh: Dict[str, TaskDoc] = {}
        for doc in docs:
            fresh[proto.task_id_of(doc)] = doc

        for task_id in list(self._tasks):
            tracked = self._tasks[task_id]
            if task_id in fresh:
                continue
            if tracked.pending is not None and tracked.base is None:
                continue  # local create not yet answered
            self._drop(task_id)

        for task_id, doc in fresh.items():
            tracked = self._tasks.get(task_id)
            if tracked is None:
                self._tasks[task_id] = TrackedTask(task_id=task_id, value=doc, base=doc)
                self._emit(Change(APPLIED, task_id, doc))
            elif tracked.pending is not None:
                tracked.base = doc
                tracked.buffered.clear()
                tracked.state = OPTIMISTIC_PENDING
            elif not _same_doc(tracked.value, doc):
                tracked.value = doc
                tracked.base = doc
                self._emit(Change(APPLIED, task_id, doc))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _replay(self, tracked: TrackedTask, *, local: Optional[TaskDoc]) -> None:
        buffered, tracked.buffered = tracked.buffered, []
        if not buffered:
            return
        newest = max(buffered, key=_stamp_key)
        conflict = None
        if local is not None and not _same_doc(local, newest):
            conflict = ReconciliationConflict(tracked.task_id, local, newest)

        if self.fetch is not None:
            try:
                latest = await self.fetch(tracked.task_id)
            except Exception:
                log.exception("Canonical fetch failed for %s; using buffered event", tracked.task_id)
                latest = newest
            if latest is None:
                self._drop(tracked.task_id)
                return
        else:
            latest = newest

        current = self._tasks.get(tracked.task_id)
        if current is not tracked:
            return  # removed or rebound while fetching
        if tracked.pending is not None:
            tracked.base = latest
            return
        if not _newer_or_same(latest, tracked.value):
            log.debug("Discarding stale replay for %s", tracked.task_id)
            return
        if _same_doc(latest, tracked.value):
            return
        tracked.value = latest
        tracked.base = latest
        if conflict is not None:
            log.info("Resolved %s by last writer wins", conflict)
        self._emit(Change(APPLIED, tracked.task_id, latest, conflict=conflict))

    def _rebind(self, tracked: TrackedTask, new_id: str) -> None:
        old_id = tracked.task_id
        del self._tasks[old_id]
        existing = self._tasks.get(new_id)
        if existing is not None and existing.pending is None:
            # a peer event for the real id got here first
            tracked.buffered.extend(d for d in (existing.value,) if d is not None)
        tracked.task_id = new_id
        for mutation in self._mutations.values():
            if mutation.task_id == old_id:
                mutation.task_id = new_id
        if tracked.pending is not None:
            tracked.pending.task_id = new_id
        self._tasks[new_id] = tracked

    def _drop(self, task_id: str) -> Optional[Change]:
        tracked = self._tasks.pop(task_id, None)
        if tracked is None:
            return None
        for mutation_id in [m.id for m in self._mutations.values() if m.task_id == task_id]:
            del self._mutations[mutation_id]
        change = Change(REMOVED, task_id)
        self._emit(change)
        return change


__all__ = [
    "TaskView",
    "TrackedTask",
    "PendingMutation",
    "Change",
    "CLEAN",
    "OPTIMISTIC_PENDING",
    "RECONCILING",
    "LOCAL",
    "BUFFERED",
    "APPLIED",
    "REMOVED",
    "ROLLED_BACK",
    "CONFIRMED",
    "temp_id",
]
