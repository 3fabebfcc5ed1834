import pytest

from tasksync.client import reconcile
from tasksync.client.reconcile import CLEAN, OPTIMISTIC_PENDING, RECONCILING, TaskView
from tasksync.core import proto


# ---- helpers ----

def stamp(n):
    return f"2026-01-01T00:00:{n:02d}.000Z"


def updated(doc):
    return proto.TaskSnapshot(type=proto.TASK_UPDATED, payload=doc)


def removed(task_id, kind=proto.TASK_DELETED):
    return proto.TaskRemoved(type=kind, payload=proto.TaskRef(task_id=task_id))


# ---- fixtures ----

@pytest.fixture()
def changes():
    return []


@pytest.fixture()
def view(changes, make_task):
    v = TaskView(listener=changes.append)
    v.replace_all([make_task("t1", "ann", shared=["bob"], title="Draft", updatedAt=stamp(0))])
    changes.clear()
    return v


# ---- clean path ----

def test_peer_event_while_clean_applies_directly(view, changes, make_task):
    doc = make_task("t1", "ann", shared=["bob"], title="Peer edit", updatedAt=stamp(1))
    view.receive(updated(doc))

    assert view.get("t1")["title"] == "Peer edit"
    assert view.state_of("t1") == CLEAN
    assert [c.kind for c in changes] == [reconcile.APPLIED]


def test_peer_created_event_adds_task(view, make_task):
    view.receive(proto.TaskSnapshot(type=proto.TASK_SHARED, payload=make_task("t2", "bob", shared=["ann"])))
    assert "t2" in view
    assert len(view) == 2


def test_presence_events_are_ignored(view):
    assert view.receive(proto.PresenceChanged(type=proto.USER_ONLINE, payload=proto.UserRef(user_id="bob"))) is None


# ---- optimistic edits ----

@pytest.mark.asyncio
async def test_confirm_replaces_with_canonical_value(view, changes):
    m = view.apply_local("t1", {"title": "X"})
    assert view.get("t1")["title"] == "X"
    assert view.state_of("t1") == OPTIMISTIC_PENDING

    canonical = {**view.get("t1"), "updatedAt": stamp(5)}
    await view.confirm(m.id, canonical)

    assert view.get("t1") == canonical
    assert view.state_of("t1") == CLEAN
    assert [c.kind for c in changes] == [reconcile.LOCAL, reconcile.CONFIRMED]


@pytest.mark.asyncio
async def test_reject_restores_snapshot_and_surfaces_error(view, changes):
    before = view.get("t1")
    m = view.apply_local("t1", {"title": "X"})
    err = PermissionError("read-only")

    await view.reject(m.id, err)

    assert view.get("t1") == before
    assert view.state_of("t1") == CLEAN
    assert changes[-1].kind == reconcile.ROLLED_BACK
    assert changes[-1].error is err


@pytest.mark.asyncio
async def test_peer_edit_during_pending_is_replayed_after_confirm(view, changes, make_task):
    """Local X pending, peer Y arrives, server confirms X: final state is Y, Clean."""
    m = view.apply_local("t1", {"title": "X"})
    peer = make_task("t1", "ann", shared=["bob"], title="Y", updatedAt=stamp(7))
    view.receive(updated(peer))

    assert view.state_of("t1") == RECONCILING
    assert view.get("t1")["title"] == "X"

    await view.confirm(m.id, {**view.get("t1"), "updatedAt": stamp(6)})

    kinds = [c.kind for c in changes]
    assert kinds == [reconcile.LOCAL, reconcile.BUFFERED, reconcile.CONFIRMED, reconcile.APPLIED]
    assert changes[2].value["title"] == "X"
    assert view.get("t1")["title"] == "Y"
    assert view.state_of("t1") == CLEAN
    assert changes[-1].conflict is not None
    assert changes[-1].conflict.task_id == "t1"


@pytest.mark.asyncio
async def test_replay_prefers_fetched_canonical_value(changes, make_task):
    latest = make_task("t1", "ann", title="Z from store", updatedAt=stamp(9))

    async def fetch(task_id):
        assert task_id == "t1"
        return latest

    view = TaskView(fetch=fetch, listener=changes.append)
    view.replace_all([make_task("t1", "ann", title="Draft", updatedAt=stamp(0))])
    m = view.apply_local("t1", {"title": "X"})
    view.receive(updated(make_task("t1", "ann", title="Y", updatedAt=stamp(7))))

    await view.confirm(m.id, {**view.get("t1"), "updatedAt": stamp(8)})

    assert view.get("t1") == latest
    assert view.state_of("t1") == CLEAN


@pytest.mark.asyncio
async def test_buffered_event_older_than_confirm_is_discarded(view, changes, make_task):
    m = view.apply_local("t1", {"title": "X"})
    view.receive(updated(make_task("t1", "ann", shared=["bob"], title="Y", updatedAt=stamp(3))))

    confirmed = {**view.get("t1"), "updatedAt": stamp(4)}
    await view.confirm(m.id, confirmed)

    assert view.get("t1") == confirmed
    assert changes[-1].kind == reconcile.CONFIRMED


@pytest.mark.asyncio
async def test_numeric_stamps_compare_as_numbers(changes, make_task):
    view = TaskView(listener=changes.append)
    view.replace_all([make_task("t1", "ann", title="Draft", updatedAt=900)])
    m = view.apply_local("t1", {"title": "X"})
    view.receive(updated(make_task("t1", "ann", title="Y", updatedAt=1000)))
    view.receive(updated(make_task("t1", "ann", title="older", updatedAt=950)))

    await view.confirm(m.id, {**view.get("t1"), "updatedAt": 999})

    assert view.get("t1")["title"] == "Y"
    assert view.state_of("t1") == CLEAN


def test_stamps_accept_iso_and_epoch():
    assert reconcile._stamp("2026-01-01T00:00:01.000Z") - reconcile._stamp(stamp(0)) == 1000
    assert reconcile._stamp("1000") == 1000.0
    assert reconcile._stamp(999) < reconcile._stamp(1000)
    assert reconcile._stamp("yesterday") is None
    assert reconcile._stamp(None) is None


@pytest.mark.asyncio
async def test_fetch_reporting_task_gone_removes_it(make_task):
    async def fetch(_task_id):
        return None

    view = TaskView(fetch=fetch)
    view.replace_all([make_task("t1", "ann")])
    m = view.apply_local("t1", {"title": "X"})
    view.receive(updated(make_task("t1", "ann", title="Y")))

    await view.confirm(m.id)
    assert "t1" not in view


@pytest.mark.asyncio
async def test_superseded_confirm_only_moves_the_base(view):
    first = view.apply_local("t1", {"title": "X1"})
    second = view.apply_local("t1", {"title": "X2"})

    await view.confirm(first.id, {**view.get("t1"), "title": "X1", "updatedAt": stamp(2)})
    assert view.get("t1")["title"] == "X2"
    assert view.state_of("t1") == OPTIMISTIC_PENDING

    await view.reject(second.id, ValueError("too long"))
    assert view.get("t1")["title"] == "X1"
    assert view.state_of("t1") == CLEAN


# ---- deletion wins ----

@pytest.mark.asyncio
async def test_peer_delete_wins_over_pending_edit(view, changes):
    m = view.apply_local("t1", {"title": "X"})
    view.receive(removed("t1"))

    assert "t1" not in view
    assert changes[-1].kind == reconcile.REMOVED

    await view.confirm(m.id, {"id": "t1", "owner": "ann", "title": "X"})
    assert "t1" not in view


def test_unshare_removes_locally(view):
    view.receive(removed("t1", proto.TASK_UNSHARED))
    assert view.get("t1") is None
    assert view.tasks() == []


@pytest.mark.asyncio
async def test_local_delete_confirmed_and_rejected(view, make_task):
    m = view.apply_local_delete("t1")
    assert "t1" not in view
    await view.reject(m.id, RuntimeError("500"))
    assert view.get("t1")["title"] == "Draft"

    m = view.apply_local_delete("t1")
    await view.confirm(m.id)
    assert view.state_of("t1") is None


# ---- optimistic creation ----

@pytest.mark.asyncio
async def test_created_task_is_rebound_to_server_id(view, changes):
    m = view.apply_local_create({"title": "New", "owner": "ann"})
    temp = m.task_id
    assert temp.startswith("temp-")
    assert view.get(temp)["title"] == "New"

    await view.confirm(m.id, {"id": "srv-1", "title": "New", "owner": "ann", "updatedAt": stamp(3)})

    assert temp not in view
    assert view.get("srv-1")["title"] == "New"
    assert view.state_of("srv-1") == CLEAN
    assert changes[-1].kind == reconcile.CONFIRMED
    assert changes[-1].previous_id == temp


@pytest.mark.asyncio
async def test_rejected_create_disappears(view, changes):
    m = view.apply_local_create({"title": "New", "owner": "ann"})
    await view.reject(m.id, ValueError("title taken"))

    assert m.task_id not in view
    assert changes[-1].kind == reconcile.ROLLED_BACK
    assert changes[-1].value is None


def test_apply_local_on_unknown_task_fails(view):
    with pytest.raises(KeyError):
        view.apply_local("nope", {"title": "X"})


# ---- full refresh ----

def test_replace_all_keeps_pending_edits_on_top(view, make_task):
    view.apply_local("t1", {"title": "X"})
    created = view.apply_local_create({"title": "New", "owner": "ann"})

    view.replace_all(
        [
            make_task("t1", "ann", title="Server", updatedAt=stamp(9)),
            make_task("t2", "bob", shared=["ann"]),
        ]
    )

    assert view.get("t1")["title"] == "X"
    assert view.state_of("t1") == OPTIMISTIC_PENDING
    assert "t2" in view
    assert created.task_id in view


def test_replace_all_drops_tasks_no_longer_visible(view, changes):
    view.replace_all([])
    assert view.tasks() == []
    assert changes[-1].kind == reconcile.REMOVED


def test_listener_failure_does_not_break_state(make_task):
    def broken(_change):
        raise RuntimeError("ui bug")

    view = TaskView(listener=broken)
    view.receive(updated(make_task("t1", "ann")))
    assert "t1" in view
