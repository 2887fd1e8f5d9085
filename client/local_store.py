"""
Durable local storage for the Traq client.

A small key-value store on top of SQLite. Values are JSON encoded so any
JSON-serialisable structure (queue items, id mappings, settings) can be kept.
The offline queue namespaces its records with a key prefix, so the store
never needs a secondary index.
"""

import json
import sqlite3
from pathlib import Path
from typing import Any, List, Optional, Union

from shared.utils import get_data_path

DB_BUSY_TIMEOUT_MS: int = 5000


class StorageError(Exception):
    """Raised when the local store cannot be read or written"""
    pass


def get_db_path() -> Path:
    """Default location of the client database"""
    return get_data_path('traq_client.db')


def _escape_like(prefix: str) -> str:
    return prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class LocalStore:
    """Key-value store persisted to a single SQLite file."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else get_db_path()
        self.init_database()

    def init_database(self):
        """Create the key-value table if it does not exist"""
        conn = self.get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to initialize local store: {e}")
        finally:
            conn.close()

    def get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory"""
        try:
            conn = sqlite3.connect(str(self.db_path))
            conn.execute(f"PRAGMA busy_timeout = {DB_BUSY_TIMEOUT_MS}")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open local store at {self.db_path}: {e}")
        conn.row_factory = sqlite3.Row
        return conn

    def get(self, key: str, default: Any = None) -> Any:
        """Get a stored value, or default when the key is missing"""
        conn = self.get_connection()
        try:
            cursor = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read '{key}': {e}")
        finally:
            conn.close()

        if row is None:
            return default
        try:
            return json.loads(row['value'])
        except ValueError as e:
            raise StorageError(f"Corrupt value stored under '{key}': {e}")

    def set(self, key: str, value: Any):
        """Store a value under key, replacing any previous value"""
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for '{key}' is not serialisable: {e}")

        conn = self.get_connection()
        try:
            conn.execute("""
                INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)
            """, (key, encoded))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to write '{key}': {e}")
        finally:
            conn.close()

    def delete(self, key: str):
        """Delete a key; deleting a missing key is not an error"""
        conn = self.get_connection()
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Failed to delete '{key}': {e}")
        finally:
            conn.close()

    def list_keys(self, prefix: Optional[str] = None) -> List[str]:
        """List stored keys, optionally only those starting with prefix.

        No ordering is guaranteed.
        """
        conn = self.get_connection()
        try:
            if prefix:
                cursor = conn.execute(
                    "SELECT key FROM kv_store WHERE key LIKE ? ESCAPE '\\'",
                    (_escape_like(prefix) + '%',)
                )
            else:
                cursor = conn.execute("SELECT key FROM kv_store")
            return [row['key'] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list keys: {e}")
        finally:
            conn.close()

    def count_keys(self, prefix: str) -> int:
        """Count keys starting with prefix without loading their values"""
        conn = self.get_connection()
        try:
            cursor = conn.execute(
                "SELECT COUNT(*) AS count FROM kv_store WHERE key LIKE ? ESCAPE '\\'",
                (_escape_like(prefix) + '%',)
            )
            return cursor.fetchone()['count']
        except sqlite3.Error as e:
            raise StorageError(f"Failed to count keys: {e}")
        finally:
            conn.close()

    # Settings functions
    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get a client setting"""
        return self.get(f"setting_{key}", default)

    def set_setting(self, key: str, value):
        """Set a client setting"""
        self.set(f"setting_{key}", value)
