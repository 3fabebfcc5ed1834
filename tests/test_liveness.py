import asyncio

import pytest

from tasksync.core.liveness import LivenessMonitor


@pytest.fixture()
def monitor(registry):
    return LivenessMonitor(registry, interval_s=60, stale_after_s=300)


@pytest.mark.asyncio
async def test_sweep_evicts_only_silent_connections(registry, monitor, connect, clock):
    silent, ts = connect("ann")
    busy, tb = connect("bob")

    clock["now"] += 299
    registry.touch(busy.id)
    assert await monitor.sweep() == []

    clock["now"] += 2
    assert await monitor.sweep() == [silent.id]
    assert silent.id not in registry
    assert not registry.is_online("ann")
    assert ts.closed
    assert busy.id in registry and not tb.closed


@pytest.mark.asyncio
async def test_eviction_matches_unregister(registry, monitor, connect, clock):
    """Eviction signals presence exactly as a clean disconnect would."""
    offline = []
    registry.on_offline(offline.append)
    first, _ = connect("ann")
    second, _ = connect("ann")

    clock["now"] += 301
    registry.touch(second.id)
    await monitor.sweep()
    assert offline == []
    assert registry.connections_for("ann") == {second.id}

    clock["now"] += 301
    await monitor.sweep()
    assert offline == ["ann"]


@pytest.mark.asyncio
async def test_evicted_within_one_interval_after_threshold(registry, monitor, connect, clock):
    conn, _ = connect("ann")
    evicted_at = None
    start = clock["now"]
    for _ in range(10):
        clock["now"] += monitor.interval_s
        if await monitor.sweep():
            evicted_at = clock["now"]
            break

    assert evicted_at is not None
    assert start + monitor.stale_after_s < evicted_at <= start + monitor.stale_after_s + monitor.interval_s


@pytest.mark.asyncio
async def test_custom_evict_hook_and_hook_failure(registry, connect, clock):
    seen = []

    async def on_evict(conn):
        seen.append(conn.id)
        raise RuntimeError("hook broke")

    monitor = LivenessMonitor(registry, stale_after_s=10, on_evict=on_evict)
    a, _ = connect("ann")
    b, _ = connect("bob")
    clock["now"] += 11

    assert sorted(await monitor.sweep()) == sorted([a.id, b.id])
    assert sorted(seen) == sorted([a.id, b.id])
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_start_and_stop_background_loop(registry):
    monitor = LivenessMonitor(registry, interval_s=0.01, stale_after_s=1)
    task = monitor.start()
    assert monitor.start() is task
    await asyncio.sleep(0.03)
    await monitor.stop()
    assert task.done()


def test_rejects_non_positive_settings(registry):
    with pytest.raises(ValueError):
        LivenessMonitor(registry, interval_s=0)
    with pytest.raises(ValueError):
        LivenessMonitor(registry, stale_after_s=-1)
