"""
REST client for the Traq server.
"""

from typing import Any, Dict, List, Optional

import requests

import shared
from shared.logging_config import get_client_logger
from shared.models import ClientConfig

logger = get_client_logger()

HEALTH_CHECK_TIMEOUT: int = 3


class ApiError(Exception):
    """Request to the Traq server failed.

    status_code is None when the server could not be reached at all.
    payload holds the decoded JSON error body when there was one.
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}

    @property
    def is_network_error(self) -> bool:
        return self.status_code is None


class TraqApiClient:
    """Thin wrapper over a requests.Session that speaks the Traq REST contract"""

    def __init__(self, config: ClientConfig):
        self.config = config
        self._session = requests.Session()
        self._session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': f'Traq-Client/{shared.__VERSION__}'
        })
        self._apply_auth()

    def _apply_auth(self):
        if self.config.api_key:
            self._session.headers['Authorization'] = f'Bearer {self.config.api_key}'
            logger.debug(f"Session initialized with API key: {self.config.api_key[:8]}...")
        else:
            self._session.headers.pop('Authorization', None)
            logger.debug("No API key configured for session")

    def update_config(self, config: ClientConfig):
        self.config = config
        self._apply_auth()

    def request(self, method: str, endpoint: str, json: Optional[Dict[str, Any]] = None,
                params: Optional[Dict[str, Any]] = None, timeout: Optional[int] = None):
        """Send a request and return the decoded JSON body (or text for CSV).

        Raises ApiError for connection problems and non-2xx responses.
        """
        if not self.config.server_url:
            raise ApiError("Server URL is not configured")

        url = f"{self.config.server_url}{endpoint}"
        try:
            response = self._session.request(
                method,
                url,
                json=json,
                params=params,
                timeout=timeout or self.config.timeout
            )
        except requests.exceptions.RequestException as e:
            raise ApiError(f"Could not reach server: {e}") from e

        if not response.ok:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            message = body.get('error') or f"Request failed ({response.status_code})"
            raise ApiError(message, status_code=response.status_code, payload=body)

        if 'text/csv' in response.headers.get('Content-Type', ''):
            return response.text

        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"Invalid JSON from {endpoint}", status_code=response.status_code) from e

    def health(self) -> bool:
        """True when the server answers its health check"""
        try:
            self.request('GET', '/health', timeout=HEALTH_CHECK_TIMEOUT)
            return True
        except ApiError as e:
            logger.debug(f"Health check failed: {e}")
            return False

    # Tasks
    def get_tasks(self):
        return self.request('GET', '/tasks')

    def create_task(self, task: Dict[str, Any]):
        return self.request('POST', '/tasks', json=task)

    def update_task(self, task_id: str, task: Dict[str, Any]):
        return self.request('PUT', f'/tasks/{task_id}', json=task)

    def delete_task(self, task_id: str):
        return self.request('DELETE', f'/tasks/{task_id}')

    # Tags
    def get_tags(self):
        return self.request('GET', '/tags')

    def create_tag(self, tag: Dict[str, Any]):
        return self.request('POST', '/tags', json=tag)

    def update_tag(self, tag_id: str, tag: Dict[str, Any]):
        return self.request('PUT', f'/tags/{tag_id}', json=tag)

    def reorder_tags(self, tag_ids: List[str]):
        return self.request('PUT', '/tags/reorder', json={'tagIds': list(tag_ids)})

    def delete_tag(self, tag_id: str):
        return self.request('DELETE', f'/tags/{tag_id}')

    # Shortcuts
    def shortcut_start(self, task_id: str):
        return self.request('POST', f'/shortcuts/start/{task_id}')

    def shortcut_stop(self, task_id: str):
        return self.request('POST', f'/shortcuts/stop/{task_id}')

    def shortcut_toggle(self, task_id: str):
        return self.request('POST', f'/shortcuts/toggle/{task_id}')

    def get_shortcut_tasks(self):
        return self.request('GET', '/shortcuts/tasks')

    # Entries
    def get_entries(self, start_date: Optional[str] = None, end_date: Optional[str] = None,
                    task_id: Optional[str] = None):
        params = {}
        if start_date:
            params['startDate'] = start_date
        if end_date:
            params['endDate'] = end_date
        if task_id:
            params['taskId'] = task_id
        return self.request('GET', '/entries', params=params or None)

    def get_active_entries(self):
        return self.request('GET', '/entries/active')

    def start_task(self, task_id: str):
        return self.request('POST', '/entries/start', json={'taskId': task_id})

    def stop_task(self, task_id: Optional[str] = None, entry_id: Optional[str] = None):
        return self.request('POST', '/entries/stop', json={'taskId': task_id, 'entryId': entry_id})

    def stop_all_tasks(self):
        return self.request('POST', '/entries/stop-all')

    def create_entry(self, entry: Dict[str, Any]):
        return self.request('POST', '/entries', json=entry)

    def update_entry(self, entry_id: str, entry: Dict[str, Any]):
        return self.request('PUT', f'/entries/{entry_id}', json=entry)

    def delete_entry(self, entry_id: str):
        return self.request('DELETE', f'/entries/{entry_id}')

    def export_entries(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> str:
        params = {}
        if start_date:
            params['startDate'] = start_date
        if end_date:
            params['endDate'] = end_date
        return self.request('GET', '/entries/export', params=params or None)
