"""
Queue replay service for the Traq client.
Drains the offline action queue against the server once connectivity returns.
"""

import threading
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Set

from PyQt6.QtCore import QObject, pyqtSignal

from client.api_client import ApiError, TraqApiClient
from client.connectivity import ConnectivityMonitor
from client.local_store import StorageError
from client.offline_queue import OfflineQueue
from shared.logging_config import get_sync_logger
from shared.models import QueueAction, QueueItem, SyncStatus
from shared.utils import is_temp_id, now_iso

logger = get_sync_logger()

DEBUG_LOG_CAPACITY: int = 100

ReplayListener = Callable[[QueueItem, Dict[str, Any]], None]


class DeferredReplay(Exception):
    """Item cannot be replayed yet because an earlier item it depends on is still queued"""
    pass


class SyncService(QObject):
    """
    Replays queued actions one at a time, oldest first.

    - Only one pass runs at a time; a request arriving mid-pass is collapsed
      into a single follow-up pass
    - Successful items are removed immediately, failed items stay queued
    - A failure never aborts the pass
    - Replay listeners (the entries store) reconcile local state with each
      server response
    """

    sync_status_changed = pyqtSignal(dict)  # Emits SyncStatus dicts
    debug_log_changed = pyqtSignal()

    def __init__(self, queue: OfflineQueue, api: TraqApiClient,
                 monitor: Optional[ConnectivityMonitor] = None,
                 background: bool = True, parent=None):
        super().__init__(parent)
        self.queue = queue
        self.api = api
        self.monitor = monitor or ConnectivityMonitor(probe=api.health)
        self.monitor.set_on_online(self._on_back_online)
        self.background = background

        self.syncing = False
        self.pending_count = 0
        self.last_sync_time: Optional[str] = None

        self.debug_enabled = False
        self.debug_logs = deque(maxlen=DEBUG_LOG_CAPACITY)

        # The syncing gate: held for the whole drain
        self._sync_lock = threading.Lock()
        self._resync_requested = False
        self._replay_listeners: List[ReplayListener] = []

        self.update_pending_count()

    @property
    def is_online(self) -> bool:
        return self.monitor.is_online

    # Diagnostics
    def log(self, message: str, data: Any = None):
        """Record a sync diagnostic; kept in the ring buffer only while debug is on"""
        logger.debug(f"{message} {data}" if data is not None else message)
        if self.debug_enabled:
            self.debug_logs.appendleft({
                'timestamp': now_iso(),
                'message': message,
                'data': data,
            })
            self.debug_log_changed.emit()

    def toggle_debug(self) -> bool:
        self.debug_enabled = not self.debug_enabled
        return self.debug_enabled

    def clear_logs(self):
        self.debug_logs.clear()
        self.debug_log_changed.emit()

    # Status
    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.is_online,
            syncing=self.syncing,
            pending_count=self.pending_count,
            last_sync_time=self.last_sync_time,
            server_url=self.api.config.server_url or None,
        )

    def _emit_status(self):
        self.sync_status_changed.emit(self.get_sync_status().to_dict())

    def update_pending_count(self) -> int:
        try:
            self.pending_count = self.queue.count()
        except StorageError as e:
            logger.error(f"Unable to count queued actions: {e}")
        self._emit_status()
        return self.pending_count

    def add_replay_listener(self, listener: ReplayListener):
        self._replay_listeners.append(listener)

    # Triggers
    def _on_back_online(self):
        self.log('Back online, starting sync')
        self.trigger_sync()

    def trigger_sync(self):
        """Start a pass, in a background thread unless configured to run inline"""
        if not self.background:
            self.sync_queue()
            return

        def background_sync():
            try:
                self.sync_queue()
            except Exception as e:
                logger.error(f"Background sync error: {e}")

        sync_thread = threading.Thread(target=background_sync, daemon=True)
        sync_thread.start()

    # Replay
    def sync_queue(self) -> Optional[Dict[str, int]]:
        """Drain the queue against the server.

        Returns {'synced', 'failed', 'remaining'} for the pass (plus any
        follow-up pass), or None when the pass was refused because the client
        is offline or another pass is already running.
        """
        if not self.is_online:
            self.log('Offline, sync skipped')
            return None

        if not self._sync_lock.acquire(blocking=False):
            self._resync_requested = True
            self.log('Sync already running, follow-up scheduled')
            return None

        totals = {'synced': 0, 'failed': 0, 'remaining': 0}
        try:
            self._resync_requested = False
            self._run_pass(totals)
            while self._resync_requested and self.is_online:
                self._resync_requested = False
                self.log('Running follow-up sync')
                self._run_pass(totals)
        finally:
            self.syncing = False
            self._sync_lock.release()
            totals['remaining'] = self.update_pending_count()

        # Requested after the last check but before the gate was released
        if self._resync_requested and self.is_online:
            follow_up = self.sync_queue()
            if follow_up is not None:
                totals['synced'] += follow_up['synced']
                totals['failed'] += follow_up['failed']
                totals['remaining'] = follow_up['remaining']

        return totals

    def _run_pass(self, totals: Dict[str, int]):
        self.syncing = True
        self._emit_status()
        self.log('Starting sync')

        try:
            queue = self.queue.list_queue()
        except StorageError as e:
            logger.error(f"Unable to read offline queue: {e}")
            self.log('Sync error', str(e))
            queue = []

        self.log(f'Found {len(queue)} items in queue')

        # Temp ids of start items that did not make it to the server this pass
        unconfirmed: Set[str] = set()

        for item in queue:
            self.log(f'Processing: {item.action}', item.payload)
            try:
                response = self._replay(item, unconfirmed)
            except DeferredReplay as e:
                totals['failed'] += 1
                self.log(f'Deferred: {item.action}', str(e))
                continue
            except (ApiError, StorageError) as e:
                totals['failed'] += 1
                self._mark_unconfirmed(item, unconfirmed)
                logger.warning(f"Failed to sync {item.action} ({item.id}): {e}")
                self.log(f'Failed to sync: {item.action}', str(e))
                continue

            # Mapping first; a failed write leaves the item queued for replay
            try:
                self._link_temp_id(item, response)
                self.queue.remove(item.id)
            except StorageError as e:
                totals['failed'] += 1
                self._mark_unconfirmed(item, unconfirmed)
                logger.error(f"Replayed {item.id} but could not record it locally: {e}")
                continue

            totals['synced'] += 1
            self.log(f'Synced: {item.action}')
            self._after_replay(item, response)

        self.last_sync_time = now_iso()
        self.log('Sync complete')

    def _replay(self, item: QueueItem, unconfirmed: Set[str]) -> Dict[str, Any]:
        """Send one queued action to the server, returning its response body"""
        action = QueueAction(item.action)
        payload = item.payload

        if action is QueueAction.START:
            try:
                return self.api.start_task(payload.get('taskId'))
            except ApiError as e:
                # Already running on the server: adopt that entry
                if e.status_code == 400 and e.payload.get('entry'):
                    self.log('Task already running on server', payload)
                    return {'entry': e.payload['entry'], 'otherActiveEntries': []}
                raise

        if action is QueueAction.STOP:
            task_id = payload.get('taskId')
            entry_id = payload.get('entryId')
            if is_temp_id(entry_id):
                server_id = self.queue.id_map.server_id_for(entry_id)
                if server_id is None and entry_id in unconfirmed:
                    raise DeferredReplay(f"start for {entry_id} has not been replayed")
                entry_id = server_id
            try:
                return self.api.stop_task(task_id, entry_id)
            except ApiError as e:
                if e.status_code == 404:
                    self.log('Task already stopped on server', payload)
                    return {'entry': None}
                raise

        # The server stops whatever is active at replay time, which can include
        # entries started elsewhere after this action was queued
        logger.warning("Replaying stopAll: every entry active on the server will be stopped")
        return self.api.stop_all_tasks()

    @staticmethod
    def _mark_unconfirmed(item: QueueItem, unconfirmed: Set[str]):
        if item.action == QueueAction.START.value and item.temp_id:
            unconfirmed.add(item.temp_id)

    def _link_temp_id(self, item: QueueItem, response: Dict[str, Any]):
        entry = (response or {}).get('entry') or {}
        if item.action == QueueAction.START.value and item.temp_id and entry.get('id'):
            self.queue.id_map.link(item.temp_id, entry['id'])

    def _after_replay(self, item: QueueItem, response: Dict[str, Any]):
        """Let listeners reconcile local state, then drop mappings of ended entries"""
        response = response or {}
        for listener in self._replay_listeners:
            try:
                listener(item, response)
            except Exception as e:
                logger.error(f"Replay listener failed for {item.id}: {e}")

        ended_temp_ids = []
        if item.action == QueueAction.STOP.value:
            entry_id = item.payload.get('entryId')
            if is_temp_id(entry_id):
                ended_temp_ids.append(entry_id)
        elif item.action == QueueAction.STOP_ALL.value:
            try:
                for entry in response.get('entries', []):
                    ended_temp_ids.append(self.queue.id_map.temp_id_for(entry.get('id')))
            except StorageError as e:
                logger.warning(f"Could not look up id mappings after stopAll: {e}")

        for temp_id in ended_temp_ids:
            if not temp_id:
                continue
            try:
                self.queue.id_map.forget(temp_id)
            except StorageError as e:
                logger.warning(f"Could not drop id mapping for {temp_id}: {e}")

    def clear_queue(self):
        """Manually discard every pending action"""
        self.queue.clear()
        self.log('Queue cleared')
        self.update_pending_count()
