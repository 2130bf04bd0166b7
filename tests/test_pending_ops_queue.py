import pytest

from models.pending_op import PendingOp
from services import pending_ops_queue as queue_module
from services.errors import DuplicateOperationError
from services.pending_ops_queue import PendingOperation, PendingOpsQueue
from storage.db import open_database, session_factory_for


def test_enqueue_assigns_id_and_defaults(queue):
    op = queue.enqueue("weight_records", "insert", {"id": "w1", "weight": 80.5})

    assert op.id
    assert op.retry_count == 0
    assert op.priority == 2
    assert op.data == {"id": "w1", "weight": 80.5}
    assert queue.count() == 1


def test_table_priority_defaults_and_explicit_override(queue):
    assert queue.enqueue("payments", "insert", {"amount": 90}).priority == 1
    assert queue.enqueue("notifications", "insert", {"text": "hi"}).priority == 3
    assert queue.enqueue("payments", "insert", {"amount": 10}, priority=3).priority == 3
    assert queue.enqueue("unknown_table", "insert", {"x": 1}).priority == 2


def test_list_orders_by_priority_then_age(queue, monkeypatch):
    clock = iter([1000, 2000, 3000, 4000])
    monkeypatch.setattr(queue_module, "now_ms", lambda: next(clock))

    medium = queue.enqueue("t", "insert", {"n": 1}, priority=2)
    high = queue.enqueue("t", "insert", {"n": 2}, priority=1)
    low = queue.enqueue("t", "insert", {"n": 3}, priority=3)
    medium_later = queue.enqueue("t", "insert", {"n": 4}, priority=2)

    assert [op.id for op in queue.list()] == [high.id, medium.id, medium_later.id, low.id]


def test_equal_timestamps_keep_insertion_order(queue, monkeypatch):
    monkeypatch.setattr(queue_module, "now_ms", lambda: 5000)
    ids = [queue.enqueue("t", "insert", {"n": n}).id for n in range(5)]
    assert [op.id for op in queue.list()] == ids


def test_queue_survives_restart(db_path, tmp_path):
    engine, _ = open_database(db_path, backup_dir=tmp_path / "b", backup_enabled=False)
    first = PendingOpsQueue(session_factory_for(engine))
    op = first.enqueue("profiles", "update", {"id": "p1", "name": "Ana"})
    engine.dispose()

    engine, _ = open_database(db_path, backup_dir=tmp_path / "b", backup_enabled=False)
    second = PendingOpsQueue(session_factory_for(engine))
    restored = second.list()
    engine.dispose()

    assert [item.id for item in restored] == [op.id]
    assert restored[0].data == {"id": "p1", "name": "Ana"}
    assert restored[0].priority == 1


def test_duplicate_id_is_rejected(queue):
    queue.enqueue("t", "insert", {"n": 1}, op_id="fixed")
    with pytest.raises(DuplicateOperationError):
        queue.enqueue("t", "insert", {"n": 2}, op_id="fixed")
    assert queue.count() == 1


@pytest.mark.parametrize(
    "operation,data",
    [
        ("upsert", {"id": 1}),
        ("update", {"name": "no id"}),
        ("delete", {}),
    ],
)
def test_invalid_operations_raise(queue, operation, data):
    with pytest.raises(ValueError):
        queue.enqueue("t", operation, data)
    assert queue.count() == 0


def test_insert_then_update_merges_into_insert(queue):
    first = queue.enqueue("weight_records", "insert", {"id": "w1", "weight": 80})
    merged = queue.enqueue("weight_records", "update", {"id": "w1", "weight": 79, "note": "ok"})

    assert merged.id == first.id
    assert merged.operation == "insert"
    assert merged.data == {"id": "w1", "weight": 79, "note": "ok"}
    assert queue.count() == 1


def test_insert_then_delete_cancels_out(queue):
    events = []
    queue.subscribe(lambda event, payload: events.append(event))
    queue.enqueue("weight_records", "insert", {"id": "w1"})

    assert queue.enqueue("weight_records", "delete", {"id": "w1"}) is None
    assert queue.count() == 0
    assert events == ["enqueued", "removed"]


def test_update_then_delete_becomes_delete(queue):
    queue.enqueue("profiles", "update", {"id": "p1", "name": "A"})
    op = queue.enqueue("profiles", "delete", {"id": "p1"})

    assert op.operation == "delete"
    assert op.data == {"id": "p1"}
    assert queue.count() == 1


def test_delete_first_is_never_coalesced(queue):
    queue.enqueue("profiles", "delete", {"id": "p1"})
    queue.enqueue("profiles", "insert", {"id": "p1", "name": "again"})
    assert [op.operation for op in queue.list()] == ["delete", "insert"]


def test_coalescing_skips_in_flight_operation(queue):
    first = queue.enqueue("profiles", "update", {"id": "p1", "name": "A"})
    queue.mark_in_flight(first.id)
    second = queue.enqueue("profiles", "update", {"id": "p1", "name": "B"})

    assert second.id != first.id
    assert queue.get(first.id).data["name"] == "A"
    assert queue.count() == 2


def test_coalescing_keeps_retry_count_and_queue_position(queue):
    first = queue.enqueue("t", "update", {"id": "r1", "a": 1}, priority=3)
    queue.increment_retry(first.id, "boom")
    merged = queue.enqueue("t", "update", {"id": "r1", "b": 2}, priority=1)

    assert merged.id == first.id
    assert merged.retry_count == 1
    assert merged.priority == 3
    assert merged.data == {"id": "r1", "a": 1, "b": 2}


def test_urgent_write_does_not_overtake_earlier_write_on_same_record(queue):
    queue.enqueue("notifications", "delete", {"id": "n1"})
    queue.enqueue("notifications", "insert", {"id": "n1", "text": "again"})
    queue.enqueue("notifications", "update", {"id": "n1", "read": True}, priority=1)
    other = queue.enqueue("notifications", "insert", {"id": "n2"}, priority=1)

    ops = queue.list()
    assert other.priority == 1
    assert [(op.operation, op.data["id"]) for op in ops] == [
        ("insert", "n2"),
        ("delete", "n1"),
        ("insert", "n1"),
    ]
    assert ops[2].data == {"id": "n1", "text": "again", "read": True}


def test_new_write_waits_behind_lower_priority_write_on_same_record(session_factory):
    queue = PendingOpsQueue(session_factory, coalesce=False)
    first = queue.enqueue("t", "update", {"id": "r1", "a": 1}, priority=3)
    second = queue.enqueue("t", "update", {"id": "r1", "a": 2}, priority=1)

    assert second.priority == 3
    assert [op.id for op in queue.list()] == [first.id, second.id]


def test_coalescing_can_be_disabled(session_factory):
    queue = PendingOpsQueue(session_factory, coalesce=False)
    queue.enqueue("t", "update", {"id": "r1", "a": 1})
    queue.enqueue("t", "update", {"id": "r1", "a": 2})
    assert queue.count() == 2


def test_remove_is_idempotent(queue):
    op = queue.enqueue("t", "insert", {"n": 1})
    assert queue.remove(op.id) is True
    assert queue.remove(op.id) is False
    assert queue.remove("missing") is False


def test_increment_retry_only_grows(queue):
    op = queue.enqueue("t", "insert", {"n": 1})
    first = queue.increment_retry(op.id, "HTTP 400", next_try_at=123)
    second = queue.increment_retry(op.id, "HTTP 409")

    assert (first.retry_count, second.retry_count) == (1, 2)
    assert second.last_error == "HTTP 409"
    assert second.next_try_at is None
    assert queue.increment_retry("missing") is None


def test_evict_moves_operation_to_ledger(queue):
    op = queue.enqueue("payments", "insert", {"amount": 10})
    queue.increment_retry(op.id)
    evicted = queue.evict(op.id, "rejected")

    assert queue.count() == 0
    assert evicted.reason == "rejected"
    assert evicted.operation.retry_count == 1
    ledger = queue.list_evicted()
    assert [item.operation.id for item in ledger] == [op.id]
    assert ledger[0].operation.data == {"amount": 10}

    assert queue.dismiss_evicted(op.id) == 1
    assert queue.evicted_count() == 0


def test_clear_is_idempotent(queue):
    events = []
    queue.subscribe(lambda event, payload: events.append((event, payload)))
    for n in range(3):
        queue.enqueue("t", "insert", {"n": n})

    assert queue.clear() == 3
    assert queue.clear() == 0
    assert queue.count() == 0
    assert events[-2:] == [("cleared", 3), ("cleared", 0)]


def test_count_and_oldest(queue, monkeypatch):
    assert queue.count() == 0
    assert queue.oldest() is None

    clock = iter([3000, 1000, 2000])
    monkeypatch.setattr(queue_module, "now_ms", lambda: next(clock))
    for n in range(3):
        queue.enqueue("t", "insert", {"n": n})

    assert queue.count() == 3
    assert queue.oldest() == 1000


def test_due_skips_backoff_and_in_flight(queue):
    waiting = queue.enqueue("t", "insert", {"n": 1})
    busy = queue.enqueue("t", "insert", {"n": 2})
    ready = queue.enqueue("t", "insert", {"n": 3})
    queue.increment_retry(waiting.id, next_try_at=10_000)
    queue.mark_in_flight(busy.id)

    assert [op.id for op in queue.due(now=5_000)] == [ready.id]
    assert {op.id for op in queue.due(now=10_000)} == {waiting.id, ready.id}


def test_export_and_import_keep_identity(queue, session_factory, tmp_path):
    op = queue.enqueue("profiles", "update", {"id": "p1", "name": "Ana"})
    queue.increment_retry(op.id)
    exported = queue.export()

    assert exported == [
        {
            "id": op.id,
            "table": "profiles",
            "operation": "update",
            "data": {"id": "p1", "name": "Ana"},
            "timestamp": op.timestamp,
            "retryCount": 1,
            "priority": 1,
        }
    ]

    engine, _ = open_database(tmp_path / "other.db", backup_dir=tmp_path / "b", backup_enabled=False)
    target = PendingOpsQueue(session_factory_for(engine))
    events = []
    target.subscribe(lambda event, payload: events.append((event, payload)))
    assert target.import_operations(exported) == 1
    assert target.import_operations(exported) == 0
    assert events == [("imported", 1)]
    assert target.list()[0] == PendingOperation.from_dict(exported[0])
    engine.dispose()


def test_unreadable_rows_are_skipped_and_recovered(queue, session_factory):
    good = queue.enqueue("t", "insert", {"n": 1})
    with session_factory() as session:
        session.add(PendingOp(id="broken", table_name="t", operation="insert", data="{not json", timestamp=1))
        session.commit()

    assert [op.id for op in queue.list()] == [good.id]

    recovered = queue.recover_corrupt_rows()
    assert [item.operation.id for item in recovered] == ["broken"]
    assert recovered[0].reason == "corrupt"
    assert queue.count() == 1


def test_listeners_errors_do_not_break_enqueue(queue):
    def explode(event, payload):
        raise RuntimeError("listener bug")

    queue.subscribe(explode)
    assert queue.enqueue("t", "insert", {"n": 1}) is not None


def test_serializes_non_json_values(queue):
    from datetime import datetime, timezone
    from decimal import Decimal

    op = queue.enqueue(
        "payments",
        "insert",
        {"amount": Decimal("99.90"), "paid_at": datetime(2024, 5, 1, tzinfo=timezone.utc)},
    )
    assert op.data == {"amount": "99.90", "paid_at": "2024-05-01T00:00:00+00:00"}
