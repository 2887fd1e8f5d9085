"""Client package for Traq.

Provides the client abstraction layer, offline queue and sync services.
"""
from .api_client import ApiError, TraqApiClient
from .entries_store import EntriesStore
from .offline_queue import OfflineQueue
from .sync_service import SyncService
from .traq_client import TraqClient, get_client

__all__ = [
    "ApiError",
    "EntriesStore",
    "OfflineQueue",
    "SyncService",
    "TraqApiClient",
    "TraqClient",
    "get_client",
]
