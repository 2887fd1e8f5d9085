"""
Client application layer for Traq.
Wires local storage, the offline queue, connectivity and sync together and
exposes them to the UI or the command line.
"""

from typing import List, Optional

from PyQt6.QtCore import QObject

from client.api_client import TraqApiClient
from client.connectivity import ConnectivityMonitor
from client.entries_store import EntriesStore
from client.local_store import LocalStore
from client.offline_queue import OfflineQueue
from client.sync_service import SyncService
from shared.logging_config import enable_debug_logging, get_client_logger
from shared.models import ClientConfig, SyncStatus, Tag, Task

logger = get_client_logger()


def load_config(store: LocalStore) -> ClientConfig:
    """Load client configuration from the local store settings"""
    return ClientConfig(
        server_url=store.get_setting('server_url', '') or '',
        api_key=store.get_setting('api_key', '') or '',
        timeout=int(store.get_setting('timeout', 10)),
        check_interval=int(store.get_setting('check_interval', 5)),
        debug=bool(store.get_setting('debug', False)),
    )


def save_config(store: LocalStore, config: ClientConfig):
    store.set_setting('server_url', config.server_url)
    store.set_setting('api_key', config.api_key)
    store.set_setting('timeout', config.timeout)
    store.set_setting('check_interval', config.check_interval)
    store.set_setting('debug', config.debug)


class TraqClient(QObject):
    """
    Client abstraction layer that handles:
    - Local persistence of settings and queued actions
    - Connectivity monitoring and queue replay
    - Offline-first entry tracking
    """

    def __init__(self, store: Optional[LocalStore] = None, config: Optional[ClientConfig] = None,
                 background: bool = True, parent=None):
        super().__init__(parent)

        self.store = store or LocalStore()
        self.config = config or load_config(self.store)

        self.api = TraqApiClient(self.config)
        self.queue = OfflineQueue(self.store)
        self.monitor = ConnectivityMonitor(
            probe=self.api.health,
            interval_seconds=self.config.check_interval,
            parent=self
        )
        self.sync = SyncService(self.queue, self.api, self.monitor, background=background, parent=self)
        self.sync.debug_enabled = self.config.debug
        self.entries = EntriesStore(self.api, self.queue, self.sync, store=self.store)

        if self.config.debug:
            enable_debug_logging()

    def is_configured(self) -> bool:
        return self.config.is_configured()

    def update_config(self, config: ClientConfig):
        """Persist new settings and apply them to the running services"""
        save_config(self.store, config)
        self.config = config
        self.api.update_config(config)
        self.monitor.interval_seconds = config.check_interval
        self.sync.debug_enabled = config.debug
        logger.info(f"Client configuration updated: {config.server_url}")

    def start(self) -> bool:
        """Start connectivity monitoring (replay follows automatically)"""
        if not self.is_configured():
            logger.info("Server URL or API key not configured, monitoring not started")
            return False
        self.monitor.start()
        return True

    def stop(self):
        self.monitor.stop()

    def check_connection(self) -> bool:
        return self.monitor.check_now()

    def sync_now(self):
        return self.sync.sync_queue()

    def get_sync_status(self) -> SyncStatus:
        return self.sync.get_sync_status()

    def get_tasks(self) -> List[Task]:
        response = self.api.get_tasks()
        return [Task.from_dict(data) for data in response.get('tasks', [])]

    def get_tags(self) -> List[Tag]:
        response = self.api.get_tags()
        return [Tag.from_dict(data) for data in response.get('tags', [])]


# Global client instance
_client = None


def get_client() -> TraqClient:
    """Get the singleton client instance"""
    global _client
    if _client is None:
        _client = TraqClient()
    return _client
