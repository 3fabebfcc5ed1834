from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from tasksync.utils import canonical


# ---------------------------------------------------------------------------
# Event names
# ---------------------------------------------------------------------------

TASK_CREATED = "task:created"
TASK_UPDATED = "task:updated"
TASK_DELETED = "task:deleted"
TASK_SHARED = "task:shared"
TASK_UNSHARED = "task:unshared"
TASK_COMMENT_ADDED = "task:comment_added"
USER_ONLINE = "user:online"
USER_OFFLINE = "user:offline"

ERROR_CODES = {
    "UNAUTHORIZED",
    "FORBIDDEN",
    "UNKNOWN_TYPE",
    "BAD_PAYLOAD",
}

PERMISSION_RANK = {"read": 1, "write": 2, "admin": 3}


def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TaskRef(_Payload):
    task_id: str = Field(alias="taskId")


class UserRef(_Payload):
    user_id: str = Field(alias="userId")


class SessionInfo(_Payload):
    user_id: str = Field(alias="userId")
    connection_id: str = Field(alias="connectionId")


class StatusInfo(_Payload):
    user_id: str = Field(alias="userId")
    status: str


class RoomRef(_Payload):
    room_id: str = Field(alias="roomId")


class RoomMember(_Payload):
    room_id: str = Field(alias="roomId")
    user_id: str = Field(alias="userId")


class TypingInfo(_Payload):
    task_id: str = Field(alias="taskId")
    user_id: str = Field(alias="userId")


class PresenceItem(_Payload):
    user_id: str = Field(alias="userId")
    status: Optional[str] = None


class PresenceList(_Payload):
    users: List[PresenceItem] = Field(default_factory=list)


class ErrorInfo(_Payload):
    code: str
    detail: str = ""


class StatusRequest(_Payload):
    status: str = Field(min_length=1, max_length=64)


class PrivateText(_Payload):
    to_user_id: str = Field(alias="toUserId", min_length=1)
    message: str = Field(min_length=1, max_length=4000)


class PrivateInfo(_Payload):
    from_user_id: str = Field(alias="fromUserId")
    from_user_name: str = Field(default="", alias="fromUserName")
    message: str
    timestamp: int = Field(default_factory=now_ms)


class Empty(_Payload):
    pass


# ---------------------------------------------------------------------------
# Server -> client events (one tagged union, discriminated on "type")
# ---------------------------------------------------------------------------

class TaskSnapshot(BaseModel):
    """Carries the full current task document."""

    type: Literal["task:created", "task:updated", "task:shared", "task:comment_added"]
    payload: Dict[str, Any]

    @property
    def task_id(self) -> str:
        return task_id_of(self.payload)


class TaskRemoved(BaseModel):
    """The task is gone for this recipient: deleted, or access revoked."""

    type: Literal["task:deleted", "task:unshared"]
    payload: TaskRef

    @property
    def task_id(self) -> str:
        return self.payload.task_id


class PresenceChanged(BaseModel):
    type: Literal["user:online", "user:offline"]
    payload: UserRef


class Connected(BaseModel):
    type: Literal["user:connected"] = "user:connected"
    payload: SessionInfo


class StatusChanged(BaseModel):
    type: Literal["user:status_changed"] = "user:status_changed"
    payload: StatusInfo


class RoomAck(BaseModel):
    type: Literal["room:joined", "room:left"]
    payload: RoomRef


class RoomPeer(BaseModel):
    type: Literal["room:user_joined", "room:user_left"]
    payload: RoomMember


class Typing(BaseModel):
    type: Literal["typing:start", "typing:stop"]
    payload: TypingInfo


class PresenceSnapshot(BaseModel):
    type: Literal["presence:snapshot"] = "presence:snapshot"
    payload: PresenceList


class PrivateMessage(BaseModel):
    """Relayed to every live connection of the addressed user only."""

    type: Literal["message:private"] = "message:private"
    payload: PrivateInfo


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    payload: ErrorInfo


ServerEvent = Annotated[
    Union[
        TaskSnapshot,
        TaskRemoved,
        PresenceChanged,
        Connected,
        StatusChanged,
        RoomAck,
        RoomPeer,
        Typing,
        PresenceSnapshot,
        PrivateMessage,
        ErrorFrame,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Client -> server control messages (advisory)
# ---------------------------------------------------------------------------

class RoomRequest(BaseModel):
    type: Literal["room:join", "room:leave"]
    payload: RoomRef


class TypingRequest(BaseModel):
    type: Literal["typing:start", "typing:stop"]
    payload: TaskRef


class SetStatus(BaseModel):
    type: Literal["user:status"] = "user:status"
    payload: StatusRequest


class Heartbeat(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"
    payload: Empty = Field(default_factory=Empty)


class ListPresence(BaseModel):
    type: Literal["presence:list"] = "presence:list"
    payload: Empty = Field(default_factory=Empty)


class SendPrivate(BaseModel):
    type: Literal["message:private"] = "message:private"
    payload: PrivateText


ClientMessage = Annotated[
    Union[RoomRequest, TypingRequest, SetStatus, Heartbeat, ListPresence, SendPrivate],
    Field(discriminator="type"),
]

CLIENT_TYPES = frozenset(
    {
        "room:join",
        "room:leave",
        "typing:start",
        "typing:stop",
        "user:status",
        "heartbeat",
        "presence:list",
        "message:private",
    }
)

_server_events = TypeAdapter(ServerEvent)
_client_messages = TypeAdapter(ClientMessage)


def parse_server_event(raw: Union[str, bytes, Dict[str, Any]]):
    """Raise pydantic.ValidationError (a ValueError) on unknown type or bad payload."""

    obj = canonical.loads(raw) if isinstance(raw, (str, bytes)) else raw
    return _server_events.validate_python(obj)


def parse_client_message(raw: Union[str, bytes, Dict[str, Any]]):
    obj = canonical.loads(raw) if isinstance(raw, (str, bytes)) else raw
    return _client_messages.validate_python(obj)


def encode(message: BaseModel) -> str:
    """One JSON object per message: {"type": ..., "payload": ...}."""

    return canonical.dumps(message.model_dump(by_alias=True, mode="json"))


def error_frame(code: str, detail: str = "") -> ErrorFrame:
    if code not in ERROR_CODES:
        raise ValueError(f"unknown error code {code}")
    return ErrorFrame(payload=ErrorInfo(code=code, detail=detail))


# ---------------------------------------------------------------------------
# Event envelope (internal, never persisted)
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Envelope:
    event: BaseModel
    audience: FrozenSet[str]
    emitted_at: int = field(default_factory=now_ms)

    @property
    def type(self) -> str:
        return self.event.type

    def frame(self) -> str:
        return encode(self.event)


# ---------------------------------------------------------------------------
# Task document helpers
# ---------------------------------------------------------------------------

def ref_id(value: Any) -> Optional[str]:
    """Accept a bare id or a populated user object ({"_id": ...} / {"id": ...})."""

    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("_id") or value.get("id")
        if value is None:
            return None
    return str(value)


def task_id_of(doc: Dict[str, Any]) -> str:
    tid = ref_id(doc.get("id") or doc.get("_id"))
    if not tid:
        raise ValueError("task document has no id")
    return tid


def task_parties(doc: Dict[str, Any]) -> Tuple[str, FrozenSet[str]]:
    """Return (owner_id, collaborator_ids) from a task document."""

    owner = ref_id(doc.get("owner"))
    if not owner:
        raise ValueError("task document has no owner")
    collaborators = set()
    for entry in doc.get("sharedWith") or []:
        uid = ref_id(entry.get("user") if isinstance(entry, dict) else entry)
        if uid and uid != owner:
            collaborators.add(uid)
    return owner, frozenset(collaborators)


def has_permission(doc: Dict[str, Any], user_id: str, level: str = "read") -> bool:
    owner, _ = task_parties(doc)
    if owner == user_id:
        return True
    need = PERMISSION_RANK[level]
    for entry in doc.get("sharedWith") or []:
        if not isinstance(entry, dict):
            continue
        if ref_id(entry.get("user")) == user_id:
            return PERMISSION_RANK.get(entry.get("permission", "read"), 0) >= need
    return False


__all__ = [
    "TASK_CREATED",
    "TASK_UPDATED",
    "TASK_DELETED",
    "TASK_SHARED",
    "TASK_UNSHARED",
    "TASK_COMMENT_ADDED",
    "USER_ONLINE",
    "USER_OFFLINE",
    "ERROR_CODES",
    "PERMISSION_RANK",
    "now_ms",
    "TaskRef",
    "UserRef",
    "SessionInfo",
    "StatusInfo",
    "RoomRef",
    "RoomMember",
    "TypingInfo",
    "PresenceItem",
    "PresenceList",
    "ErrorInfo",
    "PrivateText",
    "PrivateInfo",
    "TaskSnapshot",
    "TaskRemoved",
    "PresenceChanged",
    "Connected",
    "StatusChanged",
    "RoomAck",
    "RoomPeer",
    "Typing",
    "PresenceSnapshot",
    "PrivateMessage",
    "ErrorFrame",
    "ServerEvent",
    "RoomRequest",
    "TypingRequest",
    "SetStatus",
    "Heartbeat",
    "ListPresence",
    "SendPrivate",
    "ClientMessage",
    "CLIENT_TYPES",
    "parse_server_event",
    "parse_client_message",
    "encode",
    "error_frame",
    "Envelope",
    "ref_id",
    "task_id_of",
    "task_parties",
    "has_permission",
]
