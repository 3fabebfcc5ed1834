from __future__ import annotations

"""Failure taxonomy for the collaboration layer.

None of these ever reach the mutation path: the CRUD layer commits first and
notification is best effort afterwards.
"""


class TaskSyncError(Exception):
    """Base class for collaboration-layer failures."""


class Unauthorized(TaskSyncError):
    """Handshake credential missing, invalid, expired, or the user is inactive.

    The reason is kept for logs only; clients always see a single 401.
    """

    def __init__(self, reason: str = "unauthorized") -> None:
        super().__init__(reason)
        self.reason = reason


class DeliveryFailure(TaskSyncError):
    """Pushing a frame to one connection failed. Isolated to that connection."""

    def __init__(self, connection_id: str, reason: str) -> None:
        super().__init__(f"{connection_id}: {reason}")
        self.connection_id = connection_id
        self.reason = reason


class StaleConnection(TaskSyncError):
    """A connection went silent past the staleness threshold."""

    def __init__(self, connection_id: str, idle_secs: float) -> None:
        super().__init__(f"{connection_id} idle for {idle_secs:.1f}s")
        self.connection_id = connection_id
        self.idle_secs = idle_secs


class ReconciliationConflict(TaskSyncError):
    """A buffered peer event disagreed with a pending local edit.

    Resolved by last-writer-wins; carried on change notifications, never raised.
    """

    def __init__(self, task_id: str, local: dict, remote: dict) -> None:
        super().__init__(f"conflict on task {task_id}")
        self.task_id = task_id
        self.local = local
        self.remote = remote


__all__ = [
    "TaskSyncError",
    "Unauthorized",
    "DeliveryFailure",
    "StaleConnection",
    "ReconciliationConflict",
]
