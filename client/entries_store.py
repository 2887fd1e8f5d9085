"""
In-memory entries state for the Traq client.

Holds the running entries and the recent history, applies actions
optimistically while offline, and folds server responses back in when queued
actions are replayed.
"""

import threading
from typing import Any, Dict, List, Optional

from client.api_client import ApiError, TraqApiClient
from client.local_store import LocalStore, StorageError
from client.offline_queue import OfflineQueue
from client.sync_service import SyncService
from shared.logging_config import get_client_logger
from shared.models import QueueAction, QueueItem, TimeEntry
from shared.utils import generate_temp_id, is_temp_id, now_iso

logger = get_client_logger()

SNAPSHOT_KEY = 'entries_state'
SNAPSHOT_HISTORY_LIMIT = 200


class EntriesStore:
    """
    Local view of time entries.

    Offline (or while a sync pass is draining the queue) every action is
    applied locally first and queued. Online actions go straight to the server
    and only change local state once the server has answered.
    """

    def __init__(self, api: TraqApiClient, queue: OfflineQueue, sync: SyncService,
                 store: Optional[LocalStore] = None):
        self.api = api
        self.queue = queue
        self.sync = sync
        self.store = store

        self.entries: List[TimeEntry] = []  # history, most recent first
        self.active_entries: List[TimeEntry] = []
        self.loading = False
        self.error: Optional[str] = None

        self._lock = threading.RLock()
        sync.add_replay_listener(self.apply_replayed)
        self.restore()

    # Snapshot of the local view, so a restarted client still shows
    # (and can stop) entries that were started offline
    def restore(self):
        if self.store is None:
            return
        snapshot = self.store.get(SNAPSHOT_KEY) or {}
        with self._lock:
            self.active_entries = [TimeEntry.from_dict(d) for d in snapshot.get('activeEntries', [])]
            self.entries = [TimeEntry.from_dict(d) for d in snapshot.get('entries', [])]

    def _persist(self):
        if self.store is None:
            return
        with self._lock:
            snapshot = {
                'activeEntries': [entry.to_dict() for entry in self.active_entries],
                'entries': [entry.to_dict() for entry in self.entries[:SNAPSHOT_HISTORY_LIMIT]],
            }
        try:
            self.store.set(SNAPSHOT_KEY, snapshot)
        except StorageError as e:
            logger.error(f"Could not save local entries snapshot: {e}")

    # Queries
    @property
    def active_task_ids(self) -> List[str]:
        with self._lock:
            return [entry.task_id for entry in self.active_entries]

    def is_task_running(self, task_id: str) -> bool:
        with self._lock:
            return any(entry.task_id == task_id for entry in self.active_entries)

    def get_active_entry(self, task_id: str) -> Optional[TimeEntry]:
        with self._lock:
            for entry in self.active_entries:
                if entry.task_id == task_id:
                    return entry
        return None

    def _should_queue(self) -> bool:
        return not self.sync.is_online or self.sync.syncing

    def _after_enqueue(self):
        self._persist()
        self.sync.update_pending_count()
        # Enqueued while online (mid-pass or behind an unconfirmed start): ask for a pass
        if self.sync.is_online:
            self.sync.trigger_sync()

    def _awaiting_start(self, task_id: Optional[str], entry_id: Optional[str]) -> bool:
        """True when the targeted entry only exists locally so far"""
        with self._lock:
            entry = self._find_active(task_id, entry_id)
        if entry is None or not entry.is_temporary:
            return False
        return self.queue.id_map.server_id_for(entry.id) is None

    def _fail(self, e: ApiError):
        self.error = str(e)
        logger.warning(f"Request failed: {e}")

    # Fetching
    def fetch_entries(self, start_date: Optional[str] = None, end_date: Optional[str] = None,
                      task_id: Optional[str] = None) -> List[TimeEntry]:
        self.loading = True
        try:
            response = self.api.get_entries(start_date, end_date, task_id)
        except ApiError as e:
            self._fail(e)
            raise
        finally:
            self.loading = False

        fetched = [TimeEntry.from_dict(data) for data in response.get('entries', [])]
        with self._lock:
            # History entries still waiting for their stop to replay stay visible
            pending = [entry for entry in self.entries if entry.offline]
            known = {entry.id for entry in fetched}
            self.entries = [entry for entry in pending if entry.id not in known] + fetched
        self._persist()
        return fetched

    def fetch_active_entries(self) -> List[TimeEntry]:
        try:
            response = self.api.get_active_entries()
        except ApiError as e:
            self._fail(e)
            raise

        fetched = [TimeEntry.from_dict(data) for data in response.get('entries', [])]
        with self._lock:
            # Keep optimistic entries the server has not seen yet
            pending = [entry for entry in self.active_entries if entry.offline]
            known = {entry.id for entry in fetched}
            self.active_entries = fetched + [entry for entry in pending if entry.id not in known]
        self._persist()
        return fetched

    # Actions
    def start_task(self, task_id: str) -> Dict[str, Any]:
        """Start tracking a task.

        Returns {'entry': TimeEntry, 'otherActiveEntries': [TimeEntry]}.
        """
        if self._should_queue():
            with self._lock:
                if self.is_task_running(task_id):
                    raise ValueError(f"Task {task_id} is already running")

                temp_entry = TimeEntry(
                    id=generate_temp_id(),
                    task_id=task_id,
                    start_time=now_iso(),
                    offline=True,
                )
                self.queue.enqueue(QueueAction.START, {'taskId': task_id}, temp_id=temp_entry.id)
                self.active_entries.append(temp_entry)

            logger.info(f"Queued start of task {task_id} as {temp_entry.id}")
            self._after_enqueue()
            return {'entry': temp_entry, 'otherActiveEntries': []}

        try:
            response = self.api.start_task(task_id)
        except ApiError as e:
            self._fail(e)
            raise

        entry = TimeEntry.from_dict(response['entry'])
        with self._lock:
            self.active_entries.append(entry)
        self._persist()
        others =[TimeEntry.from_dict(data) for data in response.get('otherActiveEntries', [])]
        return {'entry': entry, 'otherActiveEntries': others}

    def stop_task(self, task_id: Optional[str] = None, entry_id: Optional[str] = None) -> Dict[str, Any]:
        """Stop a running entry by task or entry id. Returns {'entry': TimeEntry or None}.

        An entry whose start is still queued is stopped through the queue even
        when online, so the stop replays after its start.
        """
        if self._should_queue() or self._awaiting_start(task_id, entry_id):
            with self._lock:
                entry = self._find_active(task_id, entry_id)
                if entry is None:
                    return {'entry': None}

                self.queue.enqueue(QueueAction.STOP, {
                    'taskId': task_id or entry.task_id,
                    'entryId': entry.id,
                })
                entry.end_time = now_iso()
                entry.offline = True
                self.active_entries = [e for e in self.active_entries if e.id != entry.id]
                self.entries.insert(0, entry)

            logger.info(f"Queued stop of entry {entry.id}")
            self._after_enqueue()
            return {'entry': entry}

        if is_temp_id(entry_id):
            entry_id = self.queue.id_map.server_id_for(entry_id)

        try:
            response = self.api.stop_task(task_id, entry_id)
        except ApiError as e:
            self._fail(e)
            raise

        entry = TimeEntry.from_dict(response['entry'])
        with self._lock:
            stale_ids = self._ids_for(entry.id)
            self.active_entries = [e for e in self.active_entries if e.id not in stale_ids]
            self.entries.insert(0, entry)
        self._persist()
        return {'entry': entry}

    def stop_all_tasks(self) -> Dict[str, Any]:
        """Stop every running entry. Returns {'stoppedCount': int, 'entries': [TimeEntry]}."""
        if self._should_queue():
            with self._lock:
                stopped = list(self.active_entries)
                self.queue.enqueue(QueueAction.STOP_ALL, {})
                end_time = now_iso()
                for entry in stopped:
                    entry.end_time = end_time
                    entry.offline = True
                    self.entries.insert(0, entry)
                self.active_entries = []

            logger.info(f"Queued stop of all tasks ({len(stopped)} running locally)")
            self._after_enqueue()
            return {'stoppedCount': len(stopped), 'entries': stopped}

        try:
            response = self.api.stop_all_tasks()
        except ApiError as e:
            self._fail(e)
            raise

        stopped = [TimeEntry.from_dict(data) for data in response.get('entries', [])]
        with self._lock:
            self.active_entries = []
            for entry in stopped:
                self.entries.insert(0, entry)
        self._persist()
        return {'stoppedCount': response.get('stoppedCount', len(stopped)), 'entries': stopped}

    def create_entry(self, task_id: str, start_time: str, end_time: str,
                     comment: Optional[str] = None) -> TimeEntry:
        try:
            response = self.api.create_entry({
                'taskId': task_id,
                'startTime': start_time,
                'endTime': end_time,
                'comment': comment,
            })
        except ApiError as e:
            self._fail(e)
            raise

        entry = TimeEntry.from_dict(response['entry'])
        with self._lock:
            self.entries.insert(0, entry)
        self._persist()
        return entry

    def update_entry(self, entry_id: str, updates: Dict[str, Any]) -> TimeEntry:
        try:
            response = self.api.update_entry(entry_id, updates)
        except ApiError as e:
            self._fail(e)
            raise

        entry = TimeEntry.from_dict(response['entry'])
        with self._lock:
            self.entries = [entry if e.id == entry_id else e for e in self.entries]
            self.active_entries = [entry if e.id == entry_id else e for e in self.active_entries]
        self._persist()
        return entry

    def delete_entry(self, entry_id: str):
        try:
            self.api.delete_entry(entry_id)
        except ApiError as e:
            self._fail(e)
            raise

        with self._lock:
            self.entries = [e for e in self.entries if e.id != entry_id]
            self.active_entries = [e for e in self.active_entries if e.id != entry_id]
        self._persist()

    # Reconciliation
    def apply_replayed(self, item: QueueItem, response: Dict[str, Any]):
        """Fold the server's answer to a replayed action into local state"""
        action = QueueAction(item.action)
        with self._lock:
            if action is QueueAction.START:
                self._reconcile_start(item, response.get('entry'))
            elif action is QueueAction.STOP:
                self._reconcile_stop(item, response.get('entry'))
            else:
                for data in response.get('entries', []):
                    self._reconcile_stopped(TimeEntry.from_dict(data))
        self._persist()

    def _reconcile_start(self, item: QueueItem, data: Optional[Dict[str, Any]]):
        if not data:
            return
        server_entry = TimeEntry.from_dict(data)

        for index, entry in enumerate(self.active_entries):
            if entry.id == item.temp_id:
                self.active_entries[index] = server_entry
                logger.debug(f"Confirmed {item.temp_id} as {server_entry.id}")
                return

        for entry in self.entries:
            if entry.id == item.temp_id:
                # Stopped locally before the start reached the server;
                # keep the local end time until the queued stop replays
                entry.id = server_entry.id
                entry.start_time = server_entry.start_time
                entry.user_id = server_entry.user_id
                entry.created_at = server_entry.created_at
                return

        if server_entry.is_active and all(e.id != server_entry.id for e in self.active_entries):
            self.active_entries.append(server_entry)

    def _reconcile_stop(self, item: QueueItem, data: Optional[Dict[str, Any]]):
        entry_id = item.payload.get('entryId')
        targets = self._ids_for(entry_id) if entry_id else set()

        if data:
            server_entry = TimeEntry.from_dict(data)
            targets |= self._ids_for(server_entry.id)
            self._replace_in_history(targets, server_entry)
            self.active_entries = [e for e in self.active_entries if e.id not in targets]
            return

        # Already stopped on the server; the local copy is as good as it gets
        for entry in self.entries:
            if entry.id in targets:
                entry.offline = False

    def _reconcile_stopped(self, server_entry: TimeEntry):
        targets = self._ids_for(server_entry.id)
        self._replace_in_history(targets, server_entry)
        self.active_entries = [e for e in self.active_entries if e.id not in targets]

    def _replace_in_history(self, targets, server_entry: TimeEntry):
        for index, entry in enumerate(self.entries):
            if entry.id in targets:
                self.entries[index] = server_entry
                return
        self.entries.insert(0, server_entry)

    def _ids_for(self, entry_id: str) -> set:
        """All ids an entry may be known by locally (temp and server)"""
        ids = {entry_id}
        if is_temp_id(entry_id):
            server_id = self.queue.id_map.server_id_for(entry_id)
            if server_id:
                ids.add(server_id)
        else:
            temp_id = self.queue.id_map.temp_id_for(entry_id)
            if temp_id:
                ids.add(temp_id)
        return ids

    def _find_active(self, task_id: Optional[str], entry_id: Optional[str]) -> Optional[TimeEntry]:
        for entry in self.active_entries:
            if (task_id and entry.task_id == task_id) or (entry_id and entry.id == entry_id):
                return entry
        return None
