"""Tests for queue replay.

Tests:
- FIFO replay and removal of synced items
- Failed items stay queued without blocking later items
- Mutual exclusion of passes and follow-up passes
- Conflicts treated as success (already running / already stopped)
- Temp entry ids translated through the id map
- Status and debug log bookkeeping
"""
import threading
from unittest.mock import MagicMock

from client.api_client import ApiError
from client.local_store import StorageError
from shared.models import QueueAction


def go_online(monitor):
    # Flip state without triggering the reconnect callback
    monitor._online = True


def test_sync_skipped_while_offline(sync, queue, api):
    queue.enqueue(QueueAction.START, {"taskId": "t1"})

    assert sync.sync_queue() is None
    api.start_task.assert_not_called()
    assert queue.count() == 1


def test_replays_in_order_and_removes_items(sync, queue, monitor, fake_server):
    queue.enqueue(QueueAction.START, {"taskId": "a"})
    queue.enqueue(QueueAction.START, {"taskId": "b"})
    queue.enqueue(QueueAction.STOP, {"taskId": "a"})
    go_online(monitor)

    result = sync.sync_queue()

    assert fake_server.calls == [("start", "a"), ("start", "b"), ("stop", "a", None)]
    assert result == {"synced": 3, "failed": 0, "remaining": 0}
    assert queue.count() == 0
    assert sync.pending_count == 0
    assert sync.last_sync_time is not None
    assert sync.syncing is False


def test_failed_item_does_not_block_later_items(sync, queue, monitor, api, fake_server):
    queue.enqueue(QueueAction.STOP, {"taskId": "taskA"})
    queue.enqueue(QueueAction.START, {"taskId": "taskB"})
    api.stop_task.side_effect = ApiError("Could not reach server")
    go_online(monitor)

    result = sync.sync_queue()

    assert fake_server.calls == [("start", "taskB")]
    remaining = queue.list_queue()
    assert [item.action for item in remaining] == ["stop"]
    assert remaining[0].payload == {"taskId": "taskA"}
    assert result["failed"] == 1
    assert sync.pending_count == 1
    assert sync.last_sync_time is not None


def test_server_error_keeps_item_for_retry(sync, queue, monitor, api):
    queue.enqueue(QueueAction.START, {"taskId": "gone"})
    api.start_task.side_effect = ApiError("Task not found", 404, {"error": "Task not found"})
    go_online(monitor)

    sync.sync_queue()
    sync.sync_queue()

    assert api.start_task.call_count == 2
    assert queue.count() == 1


def test_stop_all_is_idempotent_with_nothing_running(sync, queue, monitor, fake_server):
    queue.enqueue(QueueAction.STOP_ALL)
    go_online(monitor)

    result = sync.sync_queue()

    assert result["synced"] == 1
    assert queue.count() == 0


def test_start_conflict_adopts_running_entry(sync, queue, monitor, fake_server):
    fake_server.start_task("t1")
    queue.enqueue(QueueAction.START, {"taskId": "t1"}, temp_id="temp_1_abc")
    go_online(monitor)

    sync.sync_queue()

    assert queue.count() == 0
    assert queue.id_map.server_id_for("temp_1_abc") == "srv-1"


def test_stop_of_already_stopped_entry_counts_as_synced(sync, queue, monitor):
    queue.enqueue(QueueAction.STOP, {"taskId": "t1"})
    go_online(monitor)

    result = sync.sync_queue()

    assert result["synced"] == 1
    assert queue.count() == 0


def test_temp_entry_id_translated_on_replay(sync, queue, monitor, fake_server):
    queue.enqueue(QueueAction.START, {"taskId": "t1"}, temp_id="temp_1_abc")
    queue.enqueue(QueueAction.STOP, {"taskId": "t1", "entryId": "temp_1_abc"})
    go_online(monitor)

    sync.sync_queue()

    assert fake_server.calls == [("start", "t1"), ("stop", "t1", "srv-1")]
    assert queue.count() == 0
    # Mapping is no longer needed once the stop is confirmed
    assert queue.id_map.server_id_for("temp_1_abc") is None


def test_stop_waits_for_its_failed_start(sync, queue, monitor, api, fake_server):
    queue.enqueue(QueueAction.START, {"taskId": "t1"}, temp_id="temp_1_abc")
    queue.enqueue(QueueAction.STOP, {"taskId": "t1", "entryId": "temp_1_abc"})
    api.start_task.side_effect = ApiError("Could not reach server")
    go_online(monitor)

    sync.sync_queue()

    api.stop_task.assert_not_called()
    assert [item.action for item in queue.list_queue()] == ["start", "stop"]

    api.start_task.side_effect = fake_server.start_task
    sync.sync_queue()

    assert queue.count() == 0
    assert fake_server.active == {}


def test_overlapping_pass_is_refused_and_followed_up(sync, queue, monitor, api, fake_server):
    in_flight = []
    max_in_flight = []
    nested_results = []

    def start_task(task_id):
        in_flight.append(task_id)
        max_in_flight.append(len(in_flight))
        try:
            if task_id == "t1":
                # A second trigger while the first pass is still running
                queue.enqueue(QueueAction.START, {"taskId": "t2"})
                nested_results.append(sync.sync_queue())
            return fake_server.start_task(task_id)
        finally:
            in_flight.pop()

    api.start_task.side_effect = start_task
    queue.enqueue(QueueAction.START, {"taskId": "t1"})
    go_online(monitor)

    result = sync.sync_queue()

    assert nested_results == [None]
    assert max(max_in_flight) == 1
    # t2 was not in the first snapshot; the follow-up pass picked it up
    assert fake_server.calls == [("start", "t1"), ("start", "t2")]
    assert result["synced"] == 2
    assert queue.count() == 0


def test_replay_listeners_receive_item_and_response(sync, queue, monitor):
    seen = []
    sync.add_replay_listener(lambda item, response: seen.append((item.action, response["entry"]["id"])))
    queue.enqueue(QueueAction.START, {"taskId": "t1"})
    go_online(monitor)

    sync.sync_queue()

    assert seen == [("start", "srv-1")]


def test_listener_failure_does_not_abort_pass(sync, queue, monitor):
    def broken(item, response):
        raise RuntimeError("boom")

    sync.add_replay_listener(broken)
    queue.enqueue(QueueAction.START, {"taskId": "t1"})
    queue.enqueue(QueueAction.START, {"taskId": "t2"})
    go_online(monitor)

    result = sync.sync_queue()

    assert result["synced"] == 2


def test_going_online_triggers_sync(sync, queue, monitor, fake_server):
    queue.enqueue(QueueAction.START, {"taskId": "t1"})

    monitor.set_online(True)

    assert fake_server.calls == [("start", "t1")]
    assert sync.pending_count == 0


def test_status_signal_reports_state(sync, queue, monitor):
    statuses = []
    sync.sync_status_changed.connect(statuses.append)
    queue.enqueue(QueueAction.STOP_ALL)
    go_online(monitor)

    sync.sync_queue()

    assert any(status["syncing"] for status in statuses)
    final = statuses[-1]
    assert final["syncing"] is False
    assert final["pending_count"] == 0
    assert final["is_online"] is True
    assert final["last_sync_time"] is not None


def test_debug_log_only_when_enabled(sync):
    sync.log("ignored")
    assert len(sync.debug_logs) == 0

    assert sync.toggle_debug() is True
    sync.log("first")
    sync.log("second", {"taskId": "t1"})

    assert [entry["message"] for entry in sync.debug_logs] == ["second", "first"]
    assert sync.debug_logs[0]["data"] == {"taskId": "t1"}

    sync.clear_logs()
    assert len(sync.debug_logs) == 0


def test_debug_log_is_bounded(sync):
    sync.toggle_debug()
    for n in range(150):
        sync.log(f"message {n}")

    assert len(sync.debug_logs) == 100
    assert sync.debug_logs[0]["message"] == "message 149"
    assert sync.debug_logs[-1]["message"] == "message 50"


def test_clear_queue_resets_pending_count(sync, queue):
    queue.enqueue(QueueAction.START, {"taskId": "t1"})
    sync.update_pending_count()
    assert sync.pending_count == 1

    sync.clear_queue()

    assert sync.pending_count == 0


class LateRequestLock:
    """Gate whose first release lets another sync request in just before unlocking"""

    def __init__(self, on_first_release):
        self._lock = threading.Lock()
        self._on_first_release = on_first_release

    def acquire(self, blocking=True):
        return self._lock.acquire(blocking)

    def release(self):
        hook, self._on_first_release = self._on_first_release, None
        if hook is not None:
            hook()
        self._lock.release()


def test_request_arriving_before_gate_release_gets_a_pass(sync, queue, monitor, fake_server):
    queue.enqueue(QueueAction.START, {"taskId": "t1"})
    go_online(monitor)

    def late_request():
        queue.enqueue(QueueAction.START, {"taskId": "t2"})
        assert sync.sync_queue() is None

    sync._sync_lock = LateRequestLock(late_request)

    result = sync.sync_queue()

    assert fake_server.calls == [("start", "t1"), ("start", "t2")]
    assert result == {"synced": 2, "failed": 0, "remaining": 0}
    assert queue.count() == 0


def test_storage_error_on_one_item_does_not_abort_pass(sync, queue, monitor, fake_server, monkeypatch):
    queue.enqueue(QueueAction.STOP, {"taskId": "a", "entryId": "temp_1_abc"})
    queue.enqueue(QueueAction.START, {"taskId": "b"})
    monkeypatch.setattr(queue.id_map, "server_id_for",
                        MagicMock(side_effect=StorageError("disk I/O error")))
    go_online(monitor)

    result = sync.sync_queue()

    assert fake_server.calls == [("start", "b")]
    assert result == {"synced": 1, "failed": 1, "remaining": 1}
    assert [item.action for item in queue.list_queue()] == ["stop"]
    assert sync.last_sync_time is not None
    assert sync.syncing is False


def test_start_stays_queued_when_mapping_cannot_be_saved(sync, queue, monitor, api, fake_server, monkeypatch):
    queue.enqueue(QueueAction.START, {"taskId": "t1"}, temp_id="temp_1_abc")
    queue.enqueue(QueueAction.STOP, {"taskId": "t1", "entryId": "temp_1_abc"})
    monkeypatch.setattr(queue.id_map, "link", MagicMock(side_effect=StorageError("disk full")))
    go_online(monitor)

    sync.sync_queue()

    # The stop waits for its start instead of stopping by task
    api.stop_task.assert_not_called()
    assert [item.action for item in queue.list_queue()] == ["start", "stop"]

    monkeypatch.undo()
    sync.sync_queue()

    assert fake_server.calls == [("start", "t1"), ("start", "t1"), ("stop", "t1", "srv-1")]
    assert fake_server.active == {}
    assert queue.count() == 0


def test_stop_all_replay_drops_id_mappings(sync, queue, monitor):
    queue.enqueue(QueueAction.START, {"taskId": "t1"}, temp_id="temp_1_abc")
    queue.enqueue(QueueAction.STOP_ALL)
    go_online(monitor)

    sync.sync_queue()

    assert queue.id_map.server_id_for("temp_1_abc") is None
    assert queue.id_map.temp_id_for("srv-1") is None
