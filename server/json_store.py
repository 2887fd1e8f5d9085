"""
Flat JSON file data store for the Traq server.

All server data lives in one JSON document with a list per collection. The
store is the only owner of that document: callers get copies of records and
change data only through the CRUD methods below. Each write replaces the
whole file after an fsync, so the file on disk is always a complete document.
"""

import copy
import json
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from shared.logging_config import get_server_logger

logger = get_server_logger()

DEFAULT_COLLECTIONS = ('users', 'tasks', 'tags', 'entries', 'apiTokens')

Record = Dict[str, Any]
Predicate = Callable[[Record], bool]


class DataStoreError(Exception):
    """Raised when the data file cannot be read or written"""
    pass


def _matches(record: Record, predicate: Optional[Predicate], match: Dict[str, Any]) -> bool:
    if predicate is not None and not predicate(record):
        return False
    return all(record.get(key) == value for key, value in match.items())


class JsonStore:
    """Thread-safe CRUD access to the JSON data file"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._data: Dict[str, List[Record]] = {}
        self.load()

    def load(self):
        """Read the data file, creating it with empty collections if missing"""
        with self._lock:
            data = {}
            if self.path.exists():
                try:
                    with open(self.path, 'r', encoding='utf-8') as f:
                        data = json.load(f)
                except (OSError, ValueError) as e:
                    raise DataStoreError(f"Failed to read data file {self.path}: {e}")
                if not isinstance(data, dict):
                    raise DataStoreError(f"Data file {self.path} is not a JSON object")

            for name in DEFAULT_COLLECTIONS:
                data.setdefault(name, [])
            self._data = data
            self._write()
            logger.info(f"Loaded data file {self.path}")

    def _write(self):
        """Replace the data file atomically with the current in-memory document"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.traq-', suffix='.json', dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise DataStoreError(f"Failed to write data file {self.path}: {e}")

    def _collection(self, name: str) -> List[Record]:
        if name not in self._data:
            raise DataStoreError(f"Unknown collection: {name}")
        return self._data[name]

    @contextmanager
    def atomic(self):
        """Hold the store lock across a read-check-write sequence"""
        with self._lock:
            yield self

    # Reads
    def list(self, collection: str, predicate: Optional[Predicate] = None, **match) -> List[Record]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._collection(collection)
                    if _matches(record, predicate, match)]

    def find(self, collection: str, predicate: Optional[Predicate] = None, **match) -> Optional[Record]:
        with self._lock:
            for record in self._collection(collection):
                if _matches(record, predicate, match):
                    return copy.deepcopy(record)
        return None

    # Writes
    def insert(self, collection: str, record: Record) -> Record:
        with self._lock:
            record = copy.deepcopy(record)
            record.setdefault('id', str(uuid.uuid4()))
            self._collection(collection).append(record)
            self._write()
            return copy.deepcopy(record)

    def update(self, collection: str, record_id: str, changes: Record) -> Optional[Record]:
        with self._lock:
            for record in self._collection(collection):
                if record.get('id') == record_id:
                    record.update(copy.deepcopy(changes))
                    self._write()
                    return copy.deepcopy(record)
        return None

    def update_where(self, collection: str, changes: Record, predicate: Optional[Predicate] = None,
                     **match) -> List[Record]:
        """Apply the same changes to every matching record in one write"""
        with self._lock:
            updated = []
            for record in self._collection(collection):
                if _matches(record, predicate, match):
                    record.update(copy.deepcopy(changes))
                    updated.append(copy.deepcopy(record))
            if updated:
                self._write()
            return updated

    def delete(self, collection: str, record_id: str) -> bool:
        return self.delete_where(collection, id=record_id) > 0

    def delete_where(self, collection: str, predicate: Optional[Predicate] = None, **match) -> int:
        with self._lock:
            records = self._collection(collection)
            kept = [record for record in records if not _matches(record, predicate, match)]
            removed = len(records) - len(kept)
            if removed:
                self._data[collection] = kept
                self._write()
            return removed
