"""
Offline action queue for the Traq client.

Actions attempted while the server is unreachable are written to the local
store as QueueItem records under a fixed key prefix and replayed later by the
sync service. The queue also owns the temp id map that links entries created
offline to the ids the server assigns once they are replayed.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from client.local_store import LocalStore
from shared.logging_config import get_sync_logger
from shared.models import QueueAction, QueueItem
from shared.utils import epoch_ms, parse_datetime, random_suffix, utc_now

logger = get_sync_logger()

QUEUE_PREFIX = 'sync_queue_'
TEMP_ID_MAP_PREFIX = 'temp_id_'
SERVER_ID_MAP_PREFIX = 'server_id_'

_timestamp_lock = threading.Lock()
_last_timestamp: Optional[datetime] = None


def next_timestamp() -> str:
    """Current UTC time as ISO string, strictly later than any previously issued.

    Two actions recorded within the same clock tick still sort in the order
    they were taken.
    """
    global _last_timestamp
    with _timestamp_lock:
        now = utc_now()
        if _last_timestamp is not None and now <= _last_timestamp:
            now = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = now
        return now.isoformat()


def _sort_key(item: QueueItem):
    parsed = parse_datetime(item.timestamp)
    return (parsed or datetime.min.replace(tzinfo=timezone.utc), item.id)


class TempIdMap:
    """Bidirectional temp id <-> server id table persisted in the local store"""

    def __init__(self, store: LocalStore):
        self.store = store

    def link(self, temp_id: str, server_id: str):
        self.store.set(f"{TEMP_ID_MAP_PREFIX}{temp_id}", server_id)
        self.store.set(f"{SERVER_ID_MAP_PREFIX}{server_id}", temp_id)
        logger.debug(f"Linked {temp_id} -> {server_id}")

    def server_id_for(self, temp_id: str) -> Optional[str]:
        return self.store.get(f"{TEMP_ID_MAP_PREFIX}{temp_id}")

    def temp_id_for(self, server_id: str) -> Optional[str]:
        return self.store.get(f"{SERVER_ID_MAP_PREFIX}{server_id}")

    def forget(self, temp_id: str):
        server_id = self.server_id_for(temp_id)
        self.store.delete(f"{TEMP_ID_MAP_PREFIX}{temp_id}")
        if server_id is not None:
            self.store.delete(f"{SERVER_ID_MAP_PREFIX}{server_id}")

    def clear(self):
        for prefix in (TEMP_ID_MAP_PREFIX, SERVER_ID_MAP_PREFIX):
            for key in self.store.list_keys(prefix):
                self.store.delete(key)


class OfflineQueue:
    """
    Durable FIFO of pending mutations.

    Replay order is ascending timestamp, never the storage iteration order.
    Storage errors propagate to the caller: an action whose enqueue raised was
    not queued.
    """

    def __init__(self, store: LocalStore):
        self.store = store
        self.id_map = TempIdMap(store)

    def enqueue(self, action: Union[QueueAction, str], payload: Optional[Dict[str, Any]] = None,
                temp_id: Optional[str] = None) -> str:
        """Persist a new queue item and return its id"""
        if isinstance(action, QueueAction):
            action = action.value

        queue_id = f"{QUEUE_PREFIX}{epoch_ms()}_{random_suffix()}"
        item = QueueItem(
            id=queue_id,
            action=action,
            payload=dict(payload or {}),
            timestamp=next_timestamp(),
            synced=False,
            temp_id=temp_id,
        )
        self.store.set(queue_id, item.to_dict())
        logger.debug(f"Queued {item.action} {item.payload} as {queue_id}")
        return queue_id

    def list_queue(self) -> List[QueueItem]:
        """All pending items in replay order"""
        items = []
        for key in self.store.list_keys(QUEUE_PREFIX):
            data = self.store.get(key)
            # Removed between listing and reading
            if not data:
                continue
            try:
                items.append(QueueItem.from_dict(data))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable queue record {key}: {e}")
        items.sort(key=_sort_key)
        return items

    def remove(self, queue_id: str):
        self.store.delete(queue_id)

    def clear(self):
        """Drop every pending item and all temp id mappings"""
        keys = self.store.list_keys(QUEUE_PREFIX)
        for key in keys:
            self.store.delete(key)
        self.id_map.clear()
        logger.info(f"Cleared {len(keys)} queued actions")

    def count(self) -> int:
        return self.store.count_keys(QUEUE_PREFIX)
