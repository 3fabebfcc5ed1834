import pytest
import pytest_asyncio

from tasksync.core.connection import Connection
from tasksync.core.dispatch import EventDispatcher
from tasksync.core.registry import MembershipRegistry
from tasksync.core.router import RoomRouter
from tasksync.core.store import Store
from tasksync.utils import canonical

SECRET = "test-secret-that-is-comfortably-over-32-bytes"


class FakeTransport:
    """Stands in for a websocket: records pushed frames, can be told to fail."""

    def __init__(self):
        self.frames = []
        self.closed = False
        self.fail = False

    async def send(self, frame):
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.frames.append(frame)

    async def close(self):
        self.closed = True

    def events(self):
        return [canonical.loads(f) for f in self.frames]

    def types(self):
        return [e["type"] for e in self.events()]


# ---- fixtures ----

@pytest.fixture()
def secret():
    return SECRET


@pytest.fixture()
def clock():
    # Mutable monotonic clock; tests advance clock["now"] by hand
    return {"now": 1_000.0}


@pytest.fixture()
def registry(clock):
    reg = MembershipRegistry(now=lambda: clock["now"])
    yield reg
    reg.close()


@pytest.fixture()
def router(registry):
    return RoomRouter(registry)


@pytest.fixture()
def dispatcher(router):
    return EventDispatcher(router)


@pytest.fixture()
def connect(registry):
    """connect(user_id) -> (Connection, FakeTransport), already registered."""

    def _connect(user_id, register=True, **kwargs):
        transport = FakeTransport()
        conn = Connection(user_id=user_id, push=transport.send, hangup=transport.close, **kwargs)
        if register:
            registry.register(user_id, conn)
        return conn, transport

    return _connect


@pytest_asyncio.fixture()
async def store(tmp_path):
    async with Store(str(tmp_path / "tasksync.db")) as s:
        yield s


def task_doc(task_id, owner, shared=(), **fields):
    """A task document shaped like the CRUD layer's response."""

    doc = {
        "id": task_id,
        "title": fields.pop("title", f"task {task_id}"),
        "owner": owner,
        "sharedWith": [
            {"user": uid, "permission": perm} for uid, perm in (
                (s, "read") if isinstance(s, str) else s for s in shared
            )
        ],
    }
    doc.update(fields)
    return doc


@pytest.fixture()
def make_task():
    return task_doc
