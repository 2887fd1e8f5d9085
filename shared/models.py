"""
Shared data models for the Traq application.
Used by both server and client components.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.utils import is_temp_id


class QueueAction(Enum):
    """Mutations that can be queued while offline"""
    START = "start"
    STOP = "stop"
    STOP_ALL = "stopAll"


@dataclass
class QueueItem:
    """A user action persisted locally and waiting to be replayed against the server"""
    id: str
    action: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""  # ISO timestamp, replay order
    synced: bool = False
    temp_id: Optional[str] = None  # Local placeholder entry created for this action

    def __post_init__(self):
        # Reject unknown actions early; the value is stored as the wire string
        self.action = QueueAction(self.action).value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for local storage"""
        return {
            'id': self.id,
            'action': self.action,
            'payload': dict(self.payload),
            'timestamp': self.timestamp,
            'synced': self.synced,
            'tempId': self.temp_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueItem':
        """Create QueueItem from a stored dictionary"""
        return cls(
            id=data['id'],
            action=data['action'],
            payload=dict(data.get('payload') or {}),
            timestamp=data.get('timestamp', ''),
            synced=bool(data.get('synced', False)),
            temp_id=data.get('tempId'),
        )


@dataclass
class TimeEntry:
    """Tracked time interval for a task, local or server-confirmed"""
    id: str
    task_id: str
    start_time: str  # ISO timestamp
    end_time: Optional[str] = None  # None while the task is running
    comment: Optional[str] = None
    offline: bool = False  # True until the server has confirmed this entry
    user_id: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def is_temporary(self) -> bool:
        return is_temp_id(self.id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase API representation"""
        data = {
            'id': self.id,
            'taskId': self.task_id,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'comment': self.comment,
        }
        if self.offline:
            data['_offline'] = True
        if self.user_id is not None:
            data['userId'] = self.user_id
        if self.created_at is not None:
            data['createdAt'] = self.created_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimeEntry':
        """Create TimeEntry from dictionary (API response)"""
        return cls(
            id=data['id'],
            task_id=data['taskId'],
            start_time=data['startTime'],
            end_time=data.get('endTime'),
            comment=data.get('comment'),
            offline=bool(data.get('_offline', False)),
            user_id=data.get('userId'),
            created_at=data.get('createdAt'),
        )


@dataclass
class Task:
    """Something time can be tracked against"""
    id: str
    name: str
    user_id: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    tags: List[str] = field(default_factory=list)  # Tag ids
    active: bool = True
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.user_id,
            'name': self.name,
            'description': self.description,
            'color': self.color,
            'icon': self.icon,
            'tags': list(self.tags),
            'active': self.active,
            'createdAt': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        return cls(
            id=data['id'],
            name=data['name'],
            user_id=data.get('userId'),
            description=data.get('description'),
            color=data.get('color'),
            icon=data.get('icon'),
            tags=list(data.get('tags') or []),
            active=bool(data.get('active', True)),
            created_at=data.get('createdAt'),
        )


@dataclass
class Tag:
    """Label for grouping tasks, listed by order"""
    id: str
    name: str
    color: Optional[str] = None
    icon: Optional[str] = None
    order: int = 0
    user_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Tag':
        return cls(
            id=data['id'],
            name=data['name'],
            color=data.get('color'),
            icon=data.get('icon'),
            order=int(data.get('order', 0)),
            user_id=data.get('userId'),
        )


@dataclass
class SyncStatus:
    """Status information for sync operations"""
    is_online: bool = False
    syncing: bool = False
    pending_count: int = 0
    last_sync_time: Optional[str] = None  # ISO timestamp
    server_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Configuration models
@dataclass
class ClientConfig:
    """Client configuration with validation"""
    server_url: str = ""
    api_key: str = ""
    timeout: int = 10  # seconds
    check_interval: int = 5  # seconds between connectivity checks
    debug: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization"""
        if self.server_url:
            if not self.server_url.startswith(('http://', 'https://')):
                raise ValueError("Invalid server URL: must start with http:// or https://")
            self.server_url = self.server_url.rstrip('/')

        if not (1 <= self.check_interval <= 3600):
            raise ValueError(f"Check interval must be between 1 and 3600 seconds, got {self.check_interval}")

        if not (1 <= self.timeout <= 120):
            raise ValueError(f"Timeout must be between 1 and 120 seconds, got {self.timeout}")

    def is_configured(self) -> bool:
        return bool(self.server_url and self.api_key)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClientConfig':
        """Create from dictionary"""
        return cls(**data)
