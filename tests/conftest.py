"""Shared pytest fixtures."""
import itertools
from unittest.mock import MagicMock

import pytest

from client.api_client import ApiError, TraqApiClient
from client.connectivity import ConnectivityMonitor
from client.entries_store import EntriesStore
from client.local_store import LocalStore
from client.offline_queue import OfflineQueue
from client.sync_service import SyncService
from shared.models import ClientConfig


class FakeServer:
    """Minimal in-memory stand-in for the entries endpoints"""

    def __init__(self):
        self._ids = itertools.count(1)
        self.active = {}  # entry id -> entry dict
        self.calls = []

    def _now(self):
        return "2026-10-18T12:00:00.000Z"

    def start_task(self, task_id):
        self.calls.append(('start', task_id))
        for entry in self.active.values():
            if entry['taskId'] == task_id:
                raise ApiError("Task is already running", 400, {'error': 'Task is already running', 'entry': entry})
        entry = {
            'id': f"srv-{next(self._ids)}",
            'taskId': task_id,
            'startTime': self._now(),
            'endTime': None,
            'comment': None,
        }
        self.active[entry['id']] = entry
        return {'entry': dict(entry), 'otherActiveEntries': []}

    def stop_task(self, task_id=None, entry_id=None):
        self.calls.append(('stop', task_id, entry_id))
        entry = None
        if entry_id:
            entry = self.active.get(entry_id)
        elif task_id:
            entry = next((e for e in self.active.values() if e['taskId'] == task_id), None)
        if entry is None:
            raise ApiError("No active entry found", 404, {'error': 'No active entry found'})
        del self.active[entry['id']]
        entry['endTime'] = self._now()
        return {'entry': dict(entry)}

    def stop_all_tasks(self):
        self.calls.append(('stopAll',))
        stopped = []
        for entry in self.active.values():
            entry['endTime'] = self._now()
            stopped.append(dict(entry))
        self.active.clear()
        return {'stoppedCount': len(stopped), 'entries': stopped}


@pytest.fixture
def local_store(tmp_path):
    return LocalStore(tmp_path / "client.db")


@pytest.fixture
def queue(local_store):
    return OfflineQueue(local_store)


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def api(fake_server):
    """API client mock backed by FakeServer"""
    mock = MagicMock(spec=TraqApiClient)
    mock.config = ClientConfig(server_url="http://traq.test", api_key="test-key")
    mock.start_task.side_effect = fake_server.start_task
    mock.stop_task.side_effect = fake_server.stop_task
    mock.stop_all_tasks.side_effect = fake_server.stop_all_tasks
    mock.health.return_value = True
    return mock


@pytest.fixture
def monitor():
    return ConnectivityMonitor(initial=False)


@pytest.fixture
def sync(queue, api, monitor):
    return SyncService(queue, api, monitor, background=False)


@pytest.fixture
def entries(api, queue, sync, local_store):
    return EntriesStore(api, queue, sync, store=local_store)
