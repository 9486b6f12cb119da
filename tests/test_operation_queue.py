"""Tests for the persistent operation queue and its admission control."""

import threading
from datetime import datetime, timedelta

import pytest

from core.events import EventBus
from core.operation_queue import (
    OperationQueue,
    OperationStatus,
    OperationType,
    is_valid_operation_id,
    new_operation_id,
)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def op_queue(db, events):
    return OperationQueue(db, events, max_concurrent=2)


# ============================================================================
# Operation ids
# ============================================================================

class TestOperationIds:

    def test_new_ids_are_valid_and_unique(self):
        ids = {new_operation_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(is_valid_operation_id(i) for i in ids)

    @pytest.mark.parametrize("value", ["op_abc123", "op_abc123.2"])
    def test_valid(self, value):
        assert is_valid_operation_id(value)

    @pytest.mark.parametrize("value", ["", "abc", "op_", "op_XYZ", "op_abc; rm -rf /", "op_abc.x", None, 42])
    def test_invalid(self, value):
        assert not is_valid_operation_id(value)


# ============================================================================
# Enqueue and claim
# ============================================================================

class TestClaim:

    def test_enqueue_persists_pending(self, op_queue):
        op = op_queue.enqueue(OperationType.PROTECT, {"path": "/d/a", "redundancy": 10})
        stored = op_queue.get(op.id)
        assert stored.status == OperationStatus.PENDING
        assert stored.path == "/d/a"
        assert stored.parameters["redundancy"] == 10

    def test_claim_marks_processing(self, op_queue):
        op = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/a"})
        claimed = op_queue.claim_next()
        assert claimed.id == op.id
        assert claimed.status == OperationStatus.PROCESSING
        assert claimed.started_at is not None

    def test_claim_empty_queue(self, op_queue):
        assert op_queue.claim_next() is None

    def test_priority_order(self, op_queue):
        verify = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/1"})
        protect = op_queue.enqueue(OperationType.PROTECT, {"path": "/d/2"})
        repair = op_queue.enqueue(OperationType.REPAIR, {"path": "/d/3"})
        remove = op_queue.enqueue(OperationType.REMOVE, {"path": "/d/4"})

        order = []
        for _ in range(4):
            op = op_queue.claim_next(max_concurrent=10)
            order.append(op.id)
        assert order == [remove.id, repair.id, protect.id, verify.id]

    def test_fifo_within_type(self, op_queue):
        first = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/1"})
        second = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/2"})
        assert op_queue.claim_next().id == first.id
        assert op_queue.claim_next().id == second.id

    def test_ceiling_blocks_claims(self, op_queue):
        for i in range(3):
            op_queue.enqueue(OperationType.VERIFY, {"path": f"/d/{i}"})
        assert op_queue.claim_next() is not None
        assert op_queue.claim_next() is not None
        assert op_queue.claim_next() is None
        assert op_queue.count_processing() == 2

    def test_completion_frees_a_slot(self, op_queue):
        for i in range(3):
            op_queue.enqueue(OperationType.VERIFY, {"path": f"/d/{i}"})
        first = op_queue.claim_next()
        op_queue.claim_next()
        op_queue.complete(first.id)
        assert op_queue.claim_next() is not None

    def test_same_path_is_serialized(self, op_queue):
        op_queue.enqueue(OperationType.PROTECT, {"path": "/d/a"})
        op_queue.enqueue(OperationType.VERIFY, {"path": "/d/a"})
        other = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/b"})

        first = op_queue.claim_next(max_concurrent=10)
        assert first.path == "/d/a"
        assert op_queue.claim_next(max_concurrent=10).id == other.id
        assert op_queue.claim_next(max_concurrent=10) is None

        op_queue.complete(first.id)
        assert op_queue.claim_next(max_concurrent=10).path == "/d/a"

    def test_concurrent_claims_respect_ceiling(self, op_queue):
        for i in range(20):
            op_queue.enqueue(OperationType.VERIFY, {"path": f"/d/{i}"})

        claimed = []
        claimed_lock = threading.Lock()
        barrier = threading.Barrier(8)

        def _worker():
            barrier.wait()
            for _ in range(5):
                op = op_queue.claim_next(max_concurrent=3)
                if op is not None:
                    with claimed_lock:
                        claimed.append(op.id)

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(claimed) == 3
        assert len(set(claimed)) == 3
        assert op_queue.count_processing() == 3


# ============================================================================
# Transitions
# ============================================================================

class TestTransitions:

    def test_complete_stores_result_and_clears_pid(self, op_queue):
        op = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/a"})
        op_queue.claim_next()
        assert op_queue.attach_process(op.id, 1234)
        assert op_queue.get(op.id).pid == 1234

        assert op_queue.complete(op.id, {"status": "VERIFIED"})
        done = op_queue.get(op.id)
        assert done.status == OperationStatus.COMPLETED
        assert done.result == {"status": "VERIFIED"}
        assert done.pid is None
        assert done.completed_at is not None

    def test_complete_requires_processing(self, op_queue):
        op = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/a"})
        assert op_queue.complete(op.id) is False
        assert op_queue.get(op.id).status == OperationStatus.PENDING

    def test_complete_is_idempotent(self, op_queue):
        op = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/a"})
        op_queue.claim_next()
        assert op_queue.complete(op.id, {"n": 1})
        assert op_queue.complete(op.id, {"n": 2}) is False
        assert op_queue.get(op.id).result == {"n": 1}

    def test_terminal_states_are_final(self, op_queue):
        op = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/a"})
        op_queue.cancel(op.id)
        assert op_queue.fail(op.id, "late failure") is False
        assert op_queue.skip(op.id, "late skip") is False
        assert op_queue.get(op.id).status == OperationStatus.CANCELLED

    def test_attach_process_only_while_processing(self, op_queue):
        op = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/a"})
        assert op_queue.attach_process(op.id, 99) is False

    def test_fail_records_error_context_and_kind(self, op_queue):
        op = op_queue.enqueue(OperationType.PROTECT, {"path": "/d/a"})
        op_queue.claim_next()
        op_queue.fail(op.id, "par2 exited 3", {"exit_code": 3}, kind="execution")
        result = op_queue.get(op.id).result
        assert result == {"error": "par2 exited 3", "context": {"exit_code": 3}, "kind": "execution"}

    def test_skip_merges_reason(self, op_queue):
        op = op_queue.enqueue(OperationType.PROTECT, {"path": "/d/a"})
        op_queue.skip(op.id, "Already protected and unchanged", {"status": "PROTECTED"})
        stored = op_queue.get(op.id)
        assert stored.status == OperationStatus.SKIPPED
        assert stored.result == {"status": "PROTECTED", "reason": "Already protected and unchanged"}

    def test_unknown_operation(self, op_queue):
        assert op_queue.complete("op_ffff") is False
        assert op_queue.cancel("op_ffff") is False

    def test_transitions_publish_events(self, op_queue, events):
        op = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/a"})
        op_queue.claim_next()
        op_queue.complete(op.id)
        types = [e.event_type for e in events.events_since(0)]
        assert types == ["operation.pending", "operation.processing", "operation.completed"]
        assert events.events_since(0)[-1].data["operation"]["id"] == op.id


# ============================================================================
# Reads
# ============================================================================

class TestReads:

    def test_find_active(self, op_queue):
        protect = op_queue.enqueue(OperationType.PROTECT, {"path": "/d/a"})
        remove = op_queue.enqueue(OperationType.REMOVE, {"path": "/d/a"})

        assert op_queue.find_active("/d/a").id == protect.id
        assert op_queue.find_active("/d/a", OperationType.REMOVE).id == remove.id
        assert op_queue.find_active("/d/a", exclude_id=protect.id).id == remove.id
        assert op_queue.find_active("/d/b") is None

        op_queue.cancel(protect.id)
        op_queue.cancel(remove.id)
        assert op_queue.find_active("/d/a") is None

    def test_list_active_includes_recent_terminal_only(self, op_queue, db):
        pending = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/1"})
        recent = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/2"})
        old = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/3"})
        op_queue.cancel(recent.id)
        op_queue.cancel(old.id)

        stale = (datetime.now() - timedelta(hours=48)).isoformat(timespec="microseconds")
        db.write(lambda conn: conn.execute(
            "UPDATE operation_queue SET completed_at = ? WHERE id = ?", (stale, old.id)))

        ids = {op.id for op in op_queue.list_active()}
        assert ids == {pending.id, recent.id}

    def test_list_by_status_and_recent(self, op_queue):
        a = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/1"})
        b = op_queue.enqueue(OperationType.VERIFY, {"path": "/d/2"})
        op_queue.enqueue(OperationType.VERIFY, {"path": "/d/3"})
        op_queue.cancel(a.id)
        op_queue.skip(b.id, "Verified recently")

        assert len(op_queue.list_by_status(OperationStatus.PENDING)) == 1
        recent = op_queue.list_recent(limit=5)
        assert [op.id for op in recent] == [b.id, a.id]
        assert len(op_queue.list_recent(limit=1)) == 1
