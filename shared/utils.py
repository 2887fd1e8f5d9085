"""
Shared utility functions for the Traq application.
"""

import random
import string
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from platformdirs import user_data_dir

APP_NAME = "Traq"
TEMP_ID_PREFIX = "temp_"


def get_data_path(relative_path: str) -> Path:
    """Get absolute path to writable data files (local store, logs, server database).

    Resolves to the per-user data directory returned by
    ``platformdirs.user_data_dir`` (for example ``~/.local/share/Traq`` on
    Linux). The directory is created on first use.
    """
    base_path = Path(user_data_dir(APP_NAME))

    # Ensure the directory exists
    try:
        base_path.mkdir(parents=True, exist_ok=True)
    except OSError:
        # Last-ditch fallback to executable dir if we cannot create user dir
        base_path = Path(sys.executable).parent

    return base_path / relative_path


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_datetime(dt: datetime) -> str:
    """Format datetime as an ISO-8601 UTC string with millisecond precision.

    Naive datetimes are assumed to already be in UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string"""
    return format_datetime(utc_now())


def parse_datetime(dt_str: str) -> Optional[datetime]:
    """Parse an ISO-8601 datetime string, return None if invalid.

    Date-only strings are accepted and resolve to midnight UTC. The result is
    always timezone aware.
    """
    if not dt_str:
        return None
    try:
        dt = datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
    except (ValueError, TypeError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def random_suffix(length: int = 9) -> str:
    """Lowercase base-36 random string, used to disambiguate time-based ids"""
    alphabet = string.ascii_lowercase + string.digits
    return ''.join(random.choice(alphabet) for _ in range(length))


def epoch_ms() -> int:
    return int(time.time() * 1000)


def generate_temp_id() -> str:
    """Generate an id for a locally created entry not yet confirmed by the server.

    Format: temp_{timestamp_ms}_{random}
    """
    return f"{TEMP_ID_PREFIX}{epoch_ms()}_{random_suffix(6)}"


def is_temp_id(value) -> bool:
    if not isinstance(value, str):
        return False
    return value.startswith(TEMP_ID_PREFIX)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes between two datetimes, rounded to the nearest minute"""
    return round((end - start).total_seconds() / 60)
