import threading

import pytest

from tasksync.core.connection import Connection


# ---- helpers ----

def state(registry):
    """Everything observable about the registry, for before/after comparisons."""
    return (
        len(registry),
        registry.online_users(),
        {u: registry.connections_for(u) for u in registry.online_users()},
    )


@pytest.fixture()
def presence(registry):
    calls = []
    registry.on_online(lambda uid: calls.append(("online", uid)))
    registry.on_offline(lambda uid: calls.append(("offline", uid)))
    return calls


# ---- tests ----

def test_register_then_unregister_restores_state(registry, connect):
    """A register/unregister round trip leaves the registry exactly as it was."""
    connect("ann")
    before = state(registry)

    conn, _ = connect("bob", register=False)
    registry.register("bob", conn)
    assert registry.is_online("bob")
    registry.unregister(conn.id)

    assert state(registry) == before


def test_presence_fires_only_on_first_and_last_connection(registry, connect, presence):
    phone, _ = connect("ann")
    laptop, _ = connect("ann")
    assert presence == [("online", "ann")]
    assert registry.connections_for("ann") == {phone.id, laptop.id}

    registry.unregister(phone.id)
    assert presence == [("online", "ann")]
    assert registry.is_online("ann")

    registry.unregister(laptop.id)
    assert presence == [("online", "ann"), ("offline", "ann")]
    assert not registry.is_online("ann")


def test_unregister_is_idempotent(registry, connect, presence):
    conn, _ = connect("ann")
    assert registry.unregister(conn.id) is conn
    assert registry.unregister(conn.id) is None
    assert registry.unregister("never-registered") is None
    assert presence.count(("offline", "ann")) == 1


def test_register_rejects_mismatch_and_duplicates(registry, connect):
    conn, _ = connect("ann")
    with pytest.raises(ValueError):
        registry.register("ann", conn)

    async def push(_frame):
        pass

    other = Connection(user_id="bob", push=push)
    with pytest.raises(ValueError):
        registry.register("ann", other)


def test_register_after_close_fails(registry, connect):
    conn, _ = connect("ann")
    leftover = registry.close()
    assert leftover == [conn]
    assert len(registry) == 0

    late, _ = connect("bob", register=False)
    with pytest.raises(RuntimeError):
        registry.register("bob", late)


def test_observer_failure_does_not_break_registration(registry, connect):
    def broken(_uid):
        raise RuntimeError("observer bug")

    registry.on_online(broken)
    conn, _ = connect("ann")
    assert conn.id in registry


def test_status_lives_with_presence(registry, connect):
    conn, _ = connect("ann")
    assert registry.set_status("ann", "busy")
    assert registry.snapshot() == [("ann", "busy")]
    assert not registry.set_status("ghost", "busy")

    registry.unregister(conn.id)
    connect("ann")
    assert registry.status_of("ann") is None


def test_touch_and_stale_use_injected_clock(registry, connect, clock):
    quiet, _ = connect("ann")
    clock["now"] += 200
    chatty, _ = connect("bob")
    clock["now"] += 150

    assert registry.touch(chatty.id)
    assert registry.stale(300) == [quiet]
    assert not registry.touch("unknown")


def test_concurrent_registration_is_consistent(registry, connect):
    conns = [connect(f"user-{i % 5}", register=False)[0] for i in range(200)]

    def worker(batch):
        for c in batch:
            registry.register(c.user_id, c)
        for c in batch[::2]:
            registry.unregister(c.id)

    threads = [threading.Thread(target=worker, args=(conns[i::4],)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    remaining = {c.id for i in range(4) for c in conns[i::4][1::2]}
    assert {cid for u in registry.online_users() for cid in registry.connections_for(u)} == remaining
    assert len(registry) == len(remaining)
