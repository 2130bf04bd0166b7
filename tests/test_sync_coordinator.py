import asyncio

import pytest

from conftest import FakeRemote, offline, rejected
from services.connectivity import ConnectivityMonitor, SignalConnectivity
from services.pending_ops_queue import PendingOpsQueue
from services.sync_coordinator import SyncCoordinator
from services.sync_status import SyncStatusState


def make_coordinator(queue, remote, monitor=None, status=None, **options):
    options.setdefault("max_retries", 5)
    options.setdefault("backoff_base", 0)
    options.setdefault("periodic_interval", 0)
    options.setdefault("replay_timeout", 1.0)
    monitor = monitor or ConnectivityMonitor(quiet_period=0, recheck_after=0)
    return SyncCoordinator(queue, remote, monitor, status or SyncStatusState(), **options)


@pytest.mark.asyncio
async def test_drains_in_priority_order(queue, remote):
    queue.enqueue("t", "insert", {"n": "medium"}, priority=2)
    queue.enqueue("t", "insert", {"n": "high"}, priority=1)
    queue.enqueue("t", "insert", {"n": "low"}, priority=3)
    coordinator = make_coordinator(queue, remote)

    result = await coordinator.sync()

    assert [call[2]["n"] for call in remote.calls] == ["high", "medium", "low"]
    assert result.succeeded == 3
    assert queue.count() == 0
    assert coordinator.status.current.sync_progress == 100
    assert coordinator.status.current.last_sync_time is not None
    assert coordinator.status.current.is_syncing is False


@pytest.mark.asyncio
async def test_offline_queue_drains_after_online_transition(queue, remote):
    source = SignalConnectivity(False)
    monitor = ConnectivityMonitor(source, quiet_period=0.01, recheck_after=0)
    coordinator = make_coordinator(queue, remote, monitor)
    monitor.start()
    coordinator.start()

    queue.enqueue("weight_records", "insert", {"id": "w1", "weight": 81})
    queue.enqueue("hydration_records", "insert", {"id": "h1", "ml": 500})
    await coordinator.sync()
    assert remote.calls == []

    source.set(True)
    await asyncio.sleep(0.2)

    assert len(remote.calls) == 2
    assert queue.count() == 0

    await coordinator.stop()
    monitor.stop()


@pytest.mark.asyncio
async def test_rejections_evict_after_max_retries(queue):
    remote = FakeRemote(default=rejected())
    evicted = []
    queue.subscribe(lambda event, payload: evicted.append(payload) if event == "evicted" else None)
    op = queue.enqueue("payments", "insert", {"amount": -1})
    coordinator = make_coordinator(queue, remote, max_retries=5)

    for attempt in range(1, 5):
        result = await coordinator.sync()
        assert result.rejected == 1
        assert queue.get(op.id).retry_count == attempt

    result = await coordinator.sync()

    assert result.evicted == 1
    assert queue.count() == 0
    assert len(remote.calls) == 5
    assert [item.operation.id for item in evicted] == [op.id]
    assert evicted[0].operation.retry_count == 5
    assert "check constraint" in evicted[0].reason


@pytest.mark.asyncio
async def test_connectivity_failure_aborts_without_retry(queue):
    remote = FakeRemote(script=[offline()])
    monitor = ConnectivityMonitor(quiet_period=0, recheck_after=0)
    first = queue.enqueue("t", "insert", {"n": 1})
    second = queue.enqueue("t", "insert", {"n": 2})
    coordinator = make_coordinator(queue, remote, monitor)

    result = await coordinator.sync()

    assert result.aborted is True
    assert len(remote.calls) == 1
    assert [op.retry_count for op in queue.list()] == [0, 0]
    assert {op.id for op in queue.list()} == {first.id, second.id}
    assert monitor.is_online is False
    assert not queue.is_in_flight(first.id)


@pytest.mark.asyncio
async def test_no_cycle_while_offline(queue, remote):
    monitor = ConnectivityMonitor(SignalConnectivity(False), quiet_period=0)
    queue.enqueue("t", "insert", {"n": 1})
    coordinator = make_coordinator(queue, remote, monitor)

    result = await coordinator.sync()

    assert result.total == 0
    assert remote.calls == []
    assert coordinator.status.current.is_syncing is False


@pytest.mark.asyncio
async def test_concurrent_triggers_share_one_cycle(queue):
    gate = asyncio.Event()
    remote = FakeRemote()

    async def wait_gate(*_):
        await gate.wait()

    remote.hook = wait_gate
    for n in range(3):
        queue.enqueue("t", "insert", {"n": n})
    coordinator = make_coordinator(queue, remote)

    first = asyncio.create_task(coordinator.sync())
    await asyncio.sleep(0)
    second = asyncio.create_task(coordinator.sync())
    await asyncio.sleep(0)
    assert coordinator.is_syncing
    gate.set()

    results = await asyncio.gather(first, second)

    assert results[0] is results[1]
    assert len(remote.calls) == 3


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_resets(queue, remote):
    status = SyncStatusState()
    seen = []
    status.subscribe(lambda s: seen.append((s.is_syncing, s.sync_progress)))
    for n in range(4):
        queue.enqueue("t", "insert", {"n": n})
    coordinator = make_coordinator(queue, remote, status=status)

    await coordinator.sync()
    progress = [value for syncing, value in seen if syncing]
    assert progress == sorted(progress)
    assert progress[-1] == 100

    seen.clear()
    queue.enqueue("t", "insert", {"n": 99})
    await coordinator.sync()
    assert seen[0] == (True, 0)


@pytest.mark.asyncio
async def test_enqueue_during_cycle_waits_for_next_cycle(queue, remote):
    queue.enqueue("t", "insert", {"n": 1})

    async def enqueue_more(table, operation, data):
        if data["n"] == 1:
            queue.enqueue("t", "insert", {"n": 2})

    remote.hook = enqueue_more
    coordinator = make_coordinator(queue, remote)

    result = await coordinator.sync()

    assert result.total == 1
    assert [op.data["n"] for op in queue.list()] == [2]


@pytest.mark.asyncio
async def test_failed_record_blocks_later_writes_to_same_record(session_factory):
    queue = PendingOpsQueue(session_factory, coalesce=False)
    remote = FakeRemote(script=[rejected(), None])
    queue.enqueue("profiles", "update", {"id": "p1", "name": "A"})
    queue.enqueue("profiles", "update", {"id": "p1", "name": "B"})
    queue.enqueue("profiles", "update", {"id": "p2", "name": "C"})
    coordinator = make_coordinator(queue, remote)

    result = await coordinator.sync()

    assert [call[2]["name"] for call in remote.calls] == ["A", "C"]
    assert result.rejected == 1
    assert result.deferred == 1
    assert [op.data["name"] for op in queue.list()] == ["A", "B"]


@pytest.mark.asyncio
async def test_record_writes_replay_in_order_despite_urgent_update(queue, remote):
    queue.enqueue("notifications", "delete", {"id": "n1"})
    queue.enqueue("notifications", "insert", {"id": "n1", "text": "again"})
    queue.enqueue("notifications", "update", {"id": "n1", "read": True}, priority=1)
    coordinator = make_coordinator(queue, remote)

    await coordinator.sync()

    assert [call[1] for call in remote.calls] == ["delete", "insert"]
    assert remote.calls[1][2] == {"id": "n1", "text": "again", "read": True}


@pytest.mark.asyncio
async def test_rejection_sets_backoff_and_defers(queue):
    now = [1_000_000]
    remote = FakeRemote(script=[rejected()])
    op = queue.enqueue("t", "insert", {"n": 1})
    coordinator = make_coordinator(queue, remote, backoff_base=1, backoff_cap=30, clock=lambda: now[0])

    await coordinator.sync()
    assert queue.get(op.id).next_try_at == 1_000_000 + 2_000

    result = await coordinator.sync()
    assert result.deferred == 1
    assert len(remote.calls) == 1

    now[0] += 2_000
    result = await coordinator.sync()
    assert result.succeeded == 1
    assert queue.count() == 0


@pytest.mark.asyncio
async def test_timed_out_write_is_honored_when_it_lands(queue):
    gate = asyncio.Event()
    remote = FakeRemote()

    async def slow(*_):
        await gate.wait()

    remote.hook = slow
    monitor = ConnectivityMonitor(quiet_period=0, recheck_after=0)
    op = queue.enqueue("t", "insert", {"n": 1})
    coordinator = make_coordinator(queue, remote, monitor, replay_timeout=0.05)

    result = await coordinator.sync()
    assert result.aborted is True
    assert queue.is_in_flight(op.id)
    assert coordinator.in_flight == 1

    monitor.report_write_success()
    result = await coordinator.sync()
    assert result.deferred == 1
    assert len(remote.calls) == 1

    gate.set()
    await asyncio.sleep(0.05)

    assert queue.count() == 0
    assert coordinator.in_flight == 0


@pytest.mark.asyncio
async def test_last_sync_time_only_set_on_success(queue):
    remote = FakeRemote(default=rejected())
    queue.enqueue("t", "insert", {"n": 1})
    coordinator = make_coordinator(queue, remote)

    await coordinator.sync()

    assert coordinator.status.current.last_sync_time is None


@pytest.mark.asyncio
async def test_unexpected_adapter_error_counts_as_rejection(queue):
    remote = FakeRemote(script=[KeyError("bad payload")])
    op = queue.enqueue("t", "insert", {"n": 1})
    coordinator = make_coordinator(queue, remote)

    result = await coordinator.sync()

    assert result.rejected == 1
    assert queue.get(op.id).retry_count == 1


@pytest.mark.asyncio
async def test_backoff_delay_grows_after_aborts_and_resets(queue):
    remote = FakeRemote(script=[offline(), offline()])
    monitor = ConnectivityMonitor(quiet_period=0, recheck_after=0)
    queue.enqueue("t", "insert", {"n": 1})
    coordinator = make_coordinator(queue, remote, monitor, backoff_base=1, backoff_cap=3)

    assert coordinator.backoff_delay() == 0
    await coordinator.sync()
    assert coordinator.backoff_delay() == 1
    monitor.report_write_success()
    await coordinator.sync()
    assert coordinator.backoff_delay() == 2

    monitor.report_write_success()
    await coordinator.sync()
    assert coordinator.backoff_delay() == 0
    assert queue.count() == 0
