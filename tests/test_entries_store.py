"""Tests for the local entries state and its reconciliation with replayed actions."""
import pytest

from client.api_client import ApiError
from client.entries_store import EntriesStore
from client.local_store import StorageError
from shared.utils import is_temp_id


def go_online(monitor):
    monitor._online = True


def test_offline_start_is_optimistic_and_queued(entries, queue):
    result = entries.start_task("t1")

    assert len(entries.active_entries) == 1
    entry = entries.active_entries[0]
    assert entry is result["entry"]
    assert entry.offline is True
    assert entry.task_id == "t1"
    assert entry.end_time is None
    assert is_temp_id(entry.id)

    items = queue.list_queue()
    assert len(items) == 1
    assert items[0].action == "start"
    assert items[0].payload == {"taskId": "t1"}
    assert items[0].temp_id == entry.id


def test_offline_stop_moves_entry_to_history(entries, queue):
    entries.start_task("t1")
    temp_id = entries.active_entries[0].id

    result = entries.stop_task("t1")

    assert entries.active_entries == []
    assert entries.entries[0] is result["entry"]
    assert entries.entries[0].id == temp_id
    assert entries.entries[0].end_time is not None

    items = queue.list_queue()
    assert [item.action for item in items] == ["start", "stop"]
    assert items[1].payload == {"taskId": "t1", "entryId": temp_id}


def test_reconnect_replays_and_reconciles(entries, queue, sync, monitor, fake_server):
    entries.start_task("t1")
    entries.stop_task("t1")
    assert sync.pending_count == 2

    monitor.set_online(True)

    assert fake_server.calls == [("start", "t1"), ("stop", "t1", "srv-1")]
    assert queue.count() == 0
    assert sync.pending_count == 0
    assert sync.last_sync_time is not None

    assert entries.active_entries == []
    assert len(entries.entries) == 1
    confirmed = entries.entries[0]
    assert confirmed.id == "srv-1"
    assert confirmed.offline is False
    assert confirmed.end_time == "2026-10-18T12:00:00.000Z"


def test_replayed_start_replaces_temp_entry(entries, monitor):
    entries.start_task("t1")

    monitor.set_online(True)

    assert len(entries.active_entries) == 1
    assert entries.active_entries[0].id == "srv-1"
    assert entries.active_entries[0].offline is False


def test_offline_start_refuses_second_active_entry(entries, queue):
    entries.start_task("t1")

    with pytest.raises(ValueError):
        entries.start_task("t1")
    assert queue.count() == 1


def test_offline_stop_of_unknown_task_does_nothing(entries, queue):
    assert entries.stop_task("nope") == {"entry": None}
    assert queue.count() == 0


def test_offline_stop_all(entries, queue):
    entries.start_task("t1")
    entries.start_task("t2")

    result = entries.stop_all_tasks()

    assert result["stoppedCount"] == 2
    assert entries.active_entries == []
    assert all(entry.end_time for entry in entries.entries)
    items = queue.list_queue()
    assert [item.action for item in items] == ["start", "start", "stopAll"]
    assert items[-1].payload == {}


def test_stop_all_replay_confirms_history(entries, monitor):
    entries.start_task("t1")
    entries.start_task("t2")
    entries.stop_all_tasks()

    monitor.set_online(True)

    assert sorted(entry.id for entry in entries.entries) == ["srv-1", "srv-2"]
    assert not any(entry.offline for entry in entries.entries)


def test_online_start_uses_server_response(entries, monitor, queue):
    go_online(monitor)

    result = entries.start_task("t1")

    assert result["entry"].id == "srv-1"
    assert entries.active_entries[0].id == "srv-1"
    assert queue.count() == 0


def test_online_failure_raises_without_state_change(entries, monitor, api, queue):
    go_online(monitor)
    api.start_task.side_effect = ApiError("Task not found", 404)

    with pytest.raises(ApiError):
        entries.start_task("t1")

    assert entries.active_entries == []
    assert entries.error == "Task not found"
    assert queue.count() == 0


def test_online_stop(entries, monitor):
    go_online(monitor)
    entries.start_task("t1")

    result = entries.stop_task("t1")

    assert result["entry"].id == "srv-1"
    assert entries.active_entries == []
    assert entries.entries[0].end_time is not None


def test_actions_during_sync_pass_are_queued(entries, sync, monitor, queue, api):
    go_online(monitor)
    # Simulate a pass in progress
    sync._sync_lock.acquire()
    sync.syncing = True
    try:
        entries.start_task("t1")
    finally:
        sync.syncing = False
        sync._sync_lock.release()

    api.start_task.assert_not_called()
    assert queue.count() == 1
    assert entries.active_entries[0].offline is True
    assert sync._resync_requested is True


def test_storage_failure_leaves_state_untouched(entries, queue, monkeypatch):
    def fail(*args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(queue, "enqueue", fail)

    with pytest.raises(StorageError):
        entries.start_task("t1")
    assert entries.active_entries == []


def test_fetch_active_keeps_unconfirmed_entries(entries, monitor, api):
    entries.start_task("t1")
    go_online(monitor)
    api.get_active_entries.return_value = {"entries": [
        {"id": "srv-9", "taskId": "t9", "startTime": "2026-10-18T08:00:00.000Z", "endTime": None},
    ]}

    fetched = entries.fetch_active_entries()

    assert [entry.id for entry in fetched] == ["srv-9"]
    assert entries.active_task_ids == ["t9", "t1"]
    assert entries.is_task_running("t1")
    assert entries.get_active_entry("t9").id == "srv-9"


def test_local_view_survives_restart(entries, api, queue, sync, local_store):
    entries.start_task("t1")

    restarted = EntriesStore(api, queue, sync, store=local_store)

    assert len(restarted.active_entries) == 1
    assert restarted.active_entries[0].offline is True
    assert restarted.stop_task("t1")["entry"] is not None


def test_reconciles_after_restart_between_enqueue_and_replay(entries, api, queue, sync, monitor, local_store):
    entries.start_task("t1")
    entries.stop_task("t1")

    # New session: only the durable queue, id map and snapshot remain
    restarted = EntriesStore(api, queue, sync, store=local_store)
    monitor.set_online(True)

    assert queue.count() == 0
    assert restarted.entries[0].id == "srv-1"
    assert restarted.entries[0].offline is False


def test_stop_of_entry_whose_start_has_not_replayed(entries, queue, sync, monitor, api, fake_server):
    entries.start_task("t1")
    temp_id = entries.active_entries[0].id
    api.start_task.side_effect = ApiError("Internal server error", 500)
    monitor.set_online(True)
    assert queue.count() == 1

    result = entries.stop_task(entry_id=temp_id)

    assert result["entry"].id == temp_id
    assert result["entry"].end_time is not None
    assert entries.active_entries == []
    assert [item.action for item in queue.list_queue()] == ["start", "stop"]
    api.stop_task.assert_not_called()

    api.start_task.side_effect = fake_server.start_task
    sync.sync_queue()

    assert queue.count() == 0
    assert fake_server.active == {}
    assert entries.entries[0].id == "srv-1"
    assert entries.entries[0].offline is False


def test_online_stop_by_task_of_unconfirmed_entry_is_queued(entries, queue, monitor, api):
    entries.start_task("t1")
    api.start_task.side_effect = ApiError("Internal server error", 500)
    monitor.set_online(True)

    entries.stop_task("t1")

    api.stop_task.assert_not_called()
    assert entries.active_entries == []
    assert queue.count() == 2
