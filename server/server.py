"""
Traq REST API Server
Tasks and time entries for a single JSON data file, authenticated by API token.
"""

import csv
import io
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from flask import Flask, Response, g, jsonify, request
from flask_cors import CORS
from waitress import serve

from server.json_store import DataStoreError, JsonStore
from shared.logging_config import get_server_logger
from shared.utils import (format_datetime, get_data_path, minutes_between, now_iso,
                          parse_datetime, utc_now)

# Setup standardized logging
logger = get_server_logger()

# Server configuration constants
DEFAULT_SERVER_HOST: str = '127.0.0.1'
DEFAULT_SERVER_PORT: int = 3000
WAITRESS_THREADS: int = 6
WAITRESS_CHANNEL_TIMEOUT: int = 60
WAITRESS_CLEANUP_INTERVAL: int = 30

app = Flask(__name__)
CORS(app, origins=os.environ.get('TRAQ_CORS_ORIGIN', 'http://localhost:5173'), supports_credentials=True)

_store: Optional[JsonStore] = None


def get_db_path() -> Path:
    """Data file location, overridable with TRAQ_DB_PATH"""
    return Path(os.environ.get('TRAQ_DB_PATH') or get_data_path('db.json'))


def init_server_db(path: Optional[Union[str, Path]] = None) -> JsonStore:
    """Open (or create) the data file and make it the active store"""
    global _store
    _store = JsonStore(path or get_db_path())
    return _store


def get_store() -> JsonStore:
    if _store is None:
        return init_server_db()
    return _store


def get_server_config():
    """Get host/port configuration from the environment"""
    return {
        'host': os.environ.get('TRAQ_HOST', DEFAULT_SERVER_HOST),
        'port': int(os.environ.get('TRAQ_PORT', DEFAULT_SERVER_PORT)),
    }


def error_response(message: str, status: int, **extra):
    body = {'error': message}
    body.update(extra)
    return jsonify(body), status


# Admin helpers
def create_user(name: str, email: Optional[str] = None) -> dict:
    """Create a user record"""
    user = {
        'id': str(uuid.uuid4()),
        'name': name,
        'email': email,
        'createdAt': now_iso(),
    }
    return get_store().insert('users', user)


def create_api_token(user_id: str, name: str) -> dict:
    """Issue an API token for user. The plain token is returned only here."""
    store = get_store()
    if not store.find('users', id=user_id):
        raise ValueError(f"User {user_id} not found")

    plain_token = f"{uuid.uuid4()}-{uuid.uuid4()}"
    token = store.insert('apiTokens', {
        'id': str(uuid.uuid4()),
        'userId': user_id,
        'name': name,
        'token': plain_token,
        'createdAt': now_iso(),
        'lastUsedAt': None,
    })
    logger.info(f"Issued API token '{name}' for user {user_id}")
    return token


def authenticate_request():
    """Authenticate API request using Bearer token, returning the user or None"""
    auth_header = request.headers.get('Authorization')
    if not auth_header or not auth_header.startswith('Bearer '):
        logger.debug("Auth failed: No Bearer token in request")
        return None

    token_value = auth_header[7:]
    store = get_store()

    token = store.find('apiTokens', token=token_value)
    if not token:
        logger.warning(f"Auth failed: unknown API token ({token_value[:8]}...)")
        return None

    user = store.find('users', id=token['userId'])
    if not user:
        logger.warning(f"Auth failed: token {token['id']} belongs to a missing user")
        return None

    store.update('apiTokens', token['id'], {'lastUsedAt': now_iso()})
    return user


def require_auth(f):
    """Decorator to require authentication"""
    def decorated_function(*args, **kwargs):
        user = authenticate_request()
        if not user:
            return error_response("Authentication required", 401)
        g.user = user
        return f(*args, **kwargs)
    decorated_function.__name__ = f.__name__
    return decorated_function


@app.errorhandler(400)
def bad_request(error):
    return error_response("Bad request", 400)


@app.errorhandler(404)
def not_found(error):
    return error_response("Not found", 404)


@app.errorhandler(500)
def internal_error(error):
    logger.error(f"Internal error: {error}")
    return error_response("Internal server error", 500)


@app.errorhandler(DataStoreError)
def data_store_error(error):
    logger.error(f"Data store error: {error}")
    return error_response("Internal server error", 500)


# Health check endpoint
@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({'status': 'ok', 'timestamp': now_iso()})


def _is_id_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


# Task endpoints
@app.route('/tasks', methods=['GET'])
@require_auth
def get_tasks():
    return jsonify({'tasks': get_store().list('tasks', userId=g.user['id'])})


@app.route('/tasks', methods=['POST'])
@require_auth
def create_task():
    data = request.get_json(silent=True) or {}
    if not data.get('name'):
        return error_response("Task name is required", 400)

    tags = data.get('tags') or []
    if not _is_id_list(tags):
        return error_response("tags must be a list of tag ids", 400)

    task = get_store().insert('tasks', {
        'id': str(uuid.uuid4()),
        'userId': g.user['id'],
        'name': data['name'],
        'description': data.get('description'),
        'color': data.get('color'),
        'icon': data.get('icon'),
        'tags': tags,
        'active': True,
        'createdAt': now_iso(),
    })
    return jsonify({'task': task}), 201


@app.route('/tasks/<task_id>', methods=['PUT'])
@require_auth
def update_task(task_id):
    data = request.get_json(silent=True) or {}
    if 'tags' in data and not _is_id_list(data['tags']):
        return error_response("tags must be a list of tag ids", 400)
    store = get_store()

    with store.atomic():
        if not store.find('tasks', id=task_id, userId=g.user['id']):
            return error_response("Task not found", 404)

        changes = {key: data[key] for key in ('name', 'description', 'color', 'icon', 'tags', 'active')
                   if key in data}
        task = store.update('tasks', task_id, changes)

    return jsonify({'task': task})


@app.route('/tasks/<task_id>', methods=['DELETE'])
@require_auth
def delete_task(task_id):
    store = get_store()

    with store.atomic():
        if not store.find('tasks', id=task_id, userId=g.user['id']):
            return error_response("Task not found", 404)

        # Entries belong to their task
        removed = store.delete_where('entries', taskId=task_id, userId=g.user['id'])
        store.delete('tasks', task_id)

    logger.info(f"Deleted task {task_id} and {removed} entries")
    return jsonify({'success': True})


# Tag endpoints
DEFAULT_TAG_COLOR: str = '#6B7CFF'
DEFAULT_TAG_ICON: str = 'mdi-tag'


def _user_tags(store: JsonStore, user_id: str):
    return sorted(store.list('tags', userId=user_id), key=lambda tag: tag.get('order', 0))


@app.route('/tags', methods=['GET'])
@require_auth
def get_tags():
    """Get the user's tags in display order"""
    return jsonify({'tags': _user_tags(get_store(), g.user['id'])})


@app.route('/tags', methods=['POST'])
@require_auth
def create_tag():
    data = request.get_json(silent=True) or {}
    if not data.get('name'):
        return error_response("Tag name is required", 400)

    store = get_store()
    user_id = g.user['id']

    with store.atomic():
        orders = [tag.get('order', 0) for tag in store.list('tags', userId=user_id)]
        tag = store.insert('tags', {
            'id': str(uuid.uuid4()),
            'userId': user_id,
            'name': data['name'],
            'color': data.get('color') or DEFAULT_TAG_COLOR,
            'icon': data.get('icon') or DEFAULT_TAG_ICON,
            'order': max(orders) + 1 if orders else 0,
            'createdAt': now_iso(),
        })

    return jsonify({'tag': tag}), 201


@app.route('/tags/reorder', methods=['PUT'])
@require_auth
def reorder_tags():
    """Set tag order from the position of each id in tagIds; unknown ids are ignored"""
    data = request.get_json(silent=True) or {}
    tag_ids = data.get('tagIds')
    if not isinstance(tag_ids, list):
        return error_response("tagIds array is required", 400)

    store = get_store()
    user_id = g.user['id']

    with store.atomic():
        for index, tag_id in enumerate(tag_ids):
            if store.find('tags', id=tag_id, userId=user_id):
                store.update('tags', tag_id, {'order': index})
        tags = _user_tags(store, user_id)

    return jsonify({'tags': tags})


@app.route('/tags/<tag_id>', methods=['PUT'])
@require_auth
def update_tag(tag_id):
    data = request.get_json(silent=True) or {}
    store = get_store()

    with store.atomic():
        if not store.find('tags', id=tag_id, userId=g.user['id']):
            return error_response("Tag not found", 404)

        changes = {key: data[key] for key in ('name', 'color', 'icon') if key in data}
        tag = store.update('tags', tag_id, changes)

    return jsonify({'tag': tag})


@app.route('/tags/<tag_id>', methods=['DELETE'])
@require_auth
def delete_tag(tag_id):
    """Delete a tag and remove it from every task that carries it"""
    store = get_store()
    user_id = g.user['id']

    with store.atomic():
        if not store.find('tags', id=tag_id, userId=user_id):
            return error_response("Tag not found", 404)

        for task in store.list('tasks', lambda t: tag_id in (t.get('tags') or []), userId=user_id):
            store.update('tasks', task['id'], {'tags': [t for t in task['tags'] if t != tag_id]})
        store.delete('tags', tag_id)

    return jsonify({'success': True})


# Entry endpoints
def _filter_by_date(entries, start_date: Optional[str], end_date: Optional[str]):
    start = parse_datetime(start_date) if start_date else None
    end = parse_datetime(end_date) if end_date else None
    if start_date and start is None or end_date and end is None:
        raise ValueError("Invalid date filter")

    filtered = []
    for entry in entries:
        entry_start = parse_datetime(entry['startTime'])
        if start and entry_start < start:
            continue
        if end and entry_start > end:
            continue
        filtered.append(entry)
    return filtered


def _start_key(entry) -> datetime:
    return parse_datetime(entry['startTime'])


def _insert_running_entry(store: JsonStore, user_id: str, task_id: str) -> dict:
    now = now_iso()
    return store.insert('entries', {
        'id': str(uuid.uuid4()),
        'userId': user_id,
        'taskId': task_id,
        'startTime': now,
        'endTime': None,
        'comment': None,
        'createdAt': now,
    })


@app.route('/entries', methods=['GET'])
@require_auth
def get_entries():
    """Get entries with optional date and task filters, newest first"""
    match = {'userId': g.user['id']}
    if request.args.get('taskId'):
        match['taskId'] = request.args['taskId']

    entries = get_store().list('entries', **match)
    try:
        entries = _filter_by_date(entries, request.args.get('startDate'), request.args.get('endDate'))
    except ValueError as e:
        return error_response(str(e), 400)

    entries.sort(key=_start_key, reverse=True)
    return jsonify({'entries': entries})


@app.route('/entries/active', methods=['GET'])
@require_auth
def get_active_entries():
    """Get entries that are currently running"""
    entries = get_store().list('entries', userId=g.user['id'], endTime=None)
    return jsonify({'entries': entries})


@app.route('/entries/start', methods=['POST'])
@require_auth
def start_task():
    """Start a task by creating an entry without an end time"""
    data = request.get_json(silent=True) or {}
    task_id = data.get('taskId')
    if not task_id:
        return error_response("taskId is required", 400)

    store = get_store()
    user_id = g.user['id']

    with store.atomic():
        if not store.find('tasks', id=task_id, userId=user_id):
            return error_response("Task not found", 404)

        existing = store.find('entries', userId=user_id, taskId=task_id, endTime=None)
        if existing:
            return error_response("Task is already running", 400, entry=existing)

        entry = _insert_running_entry(store, user_id, task_id)
        other_active = store.list('entries', lambda e: e['id'] != entry['id'],
                                  userId=user_id, endTime=None)

    logger.info(f"Started task {task_id} (entry {entry['id']})")
    return jsonify({'entry': entry, 'otherActiveEntries': other_active}), 201


@app.route('/entries/stop', methods=['POST'])
@require_auth
def stop_task():
    """Stop a running entry, identified by entryId or else by taskId"""
    data = request.get_json(silent=True) or {}
    task_id = data.get('taskId')
    entry_id = data.get('entryId')

    store = get_store()
    user_id = g.user['id']

    with store.atomic():
        entry = None
        if entry_id:
            entry = store.find('entries', id=entry_id, userId=user_id, endTime=None)
        elif task_id:
            entry = store.find('entries', taskId=task_id, userId=user_id, endTime=None)

        if not entry:
            return error_response("No active entry found", 404)

        entry = store.update('entries', entry['id'], {'endTime': now_iso()})

    logger.info(f"Stopped entry {entry['id']}")
    return jsonify({'entry': entry})


@app.route('/entries/stop-all', methods=['POST'])
@require_auth
def stop_all_tasks():
    """Stop every running entry for the user; a no-op when nothing runs"""
    stopped = get_store().update_where('entries', {'endTime': now_iso()},
                                       userId=g.user['id'], endTime=None)
    return jsonify({'stoppedCount': len(stopped), 'entries': stopped})


@app.route('/entries', methods=['POST'])
@require_auth
def create_entry():
    """Create a completed entry manually"""
    data = request.get_json(silent=True) or {}
    task_id = data.get('taskId')
    if not task_id or not data.get('startTime') or not data.get('endTime'):
        return error_response("taskId, startTime, and endTime are required", 400)

    start = parse_datetime(data['startTime'])
    end = parse_datetime(data['endTime'])
    if start is None or end is None:
        return error_response("startTime and endTime must be ISO-8601 timestamps", 400)
    if end < start:
        return error_response("endTime must not be before startTime", 400)

    store = get_store()
    if not store.find('tasks', id=task_id, userId=g.user['id']):
        return error_response("Task not found", 404)

    entry = store.insert('entries', {
        'id': str(uuid.uuid4()),
        'userId': g.user['id'],
        'taskId': task_id,
        'startTime': format_datetime(start),
        'endTime': format_datetime(end),
        'comment': data.get('comment') or None,
        'createdAt': now_iso(),
    })
    return jsonify({'entry': entry}), 201


@app.route('/entries/<entry_id>', methods=['PUT'])
@require_auth
def update_entry(entry_id):
    data = request.get_json(silent=True) or {}
    store = get_store()

    changes = {}
    if 'startTime' in data:
        start = parse_datetime(data['startTime'])
        if start is None:
            return error_response("startTime must be an ISO-8601 timestamp", 400)
        changes['startTime'] = format_datetime(start)
    if 'endTime' in data:
        end = parse_datetime(data['endTime']) if data['endTime'] else None
        if data['endTime'] and end is None:
            return error_response("endTime must be an ISO-8601 timestamp", 400)
        changes['endTime'] = format_datetime(end) if end else None
    if 'comment' in data:
        changes['comment'] = data['comment']

    with store.atomic():
        if not store.find('entries', id=entry_id, userId=g.user['id']):
            return error_response("Entry not found", 404)
        entry = store.update('entries', entry_id, changes)

    return jsonify({'entry': entry})


@app.route('/entries/<entry_id>', methods=['DELETE'])
@require_auth
def delete_entry(entry_id):
    store = get_store()

    with store.atomic():
        if not store.find('entries', id=entry_id, userId=g.user['id']):
            return error_response("Entry not found", 404)
        store.delete('entries', entry_id)

    return jsonify({'success': True})


@app.route('/entries/export', methods=['GET'])
@require_auth
def export_entries():
    """Export entries as CSV, oldest first"""
    store = get_store()
    user_id = g.user['id']

    try:
        entries = _filter_by_date(store.list('entries', userId=user_id),
                                  request.args.get('startDate'), request.args.get('endDate'))
    except ValueError as e:
        return error_response(str(e), 400)
    entries.sort(key=_start_key)

    tasks = {task['id']: task for task in store.list('tasks', userId=user_id)}
    tag_names = {tag['id']: tag['name'] for tag in store.list('tags', userId=user_id)}

    output = io.StringIO()
    writer = csv.writer(output, lineterminator='\n')
    writer.writerow(['Task', 'Tags', 'Start Time', 'End Time', 'Duration (minutes)', 'Comment'])
    for entry in entries:
        task = tasks.get(entry['taskId'])
        task_tags = [tag_names[tag_id] for tag_id in (task.get('tags') or [])
                     if tag_id in tag_names] if task else []
        start = parse_datetime(entry['startTime'])
        end = parse_datetime(entry['endTime']) if entry['endTime'] else utc_now()
        writer.writerow([
            task['name'] if task else 'Unknown',
            '; '.join(task_tags),
            entry['startTime'],
            entry['endTime'] or '',
            minutes_between(start, end),
            entry.get('comment') or '',
        ])

    return Response(
        output.getvalue(),
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename="traq-export.csv"'}
    )


# Shortcut endpoints: one-call start/stop/toggle for automation tools
# (phone shortcuts, stream decks) holding an API token
def _shortcut_task(store: JsonStore, task_id: str) -> Optional[dict]:
    return store.find('tasks', id=task_id, userId=g.user['id'])


def _stop_running_entry(store: JsonStore, entry: dict):
    """End entry now; returns the updated entry and its length in minutes"""
    entry = store.update('entries', entry['id'], {'endTime': now_iso()})
    duration = minutes_between(parse_datetime(entry['startTime']), parse_datetime(entry['endTime']))
    return entry, duration


@app.route('/shortcuts/start/<task_id>', methods=['POST'])
@require_auth
def shortcut_start(task_id):
    """Start a task; starting a running task reports the running entry"""
    store = get_store()
    user_id = g.user['id']

    with store.atomic():
        task = _shortcut_task(store, task_id)
        if not task:
            return error_response("Task not found", 404)

        existing = store.find('entries', userId=user_id, taskId=task_id, endTime=None)
        if existing:
            return jsonify({'message': 'Task already running', 'entry': existing, 'task': task})

        entry = _insert_running_entry(store, user_id, task_id)

    return jsonify({'message': f"Started: {task['name']}", 'entry': entry, 'task': task}), 201


@app.route('/shortcuts/stop/<task_id>', methods=['POST'])
@require_auth
def shortcut_stop(task_id):
    store = get_store()

    with store.atomic():
        task = _shortcut_task(store, task_id)
        if not task:
            return error_response("Task not found", 404)

        entry = store.find('entries', userId=g.user['id'], taskId=task_id, endTime=None)
        if not entry:
            return jsonify({'message': 'Task not running', 'task': task})

        entry, duration = _stop_running_entry(store, entry)

    return jsonify({
        'message': f"Stopped: {task['name']} ({duration} min)",
        'entry': entry,
        'task': task,
        'duration': duration,
    })


@app.route('/shortcuts/toggle/<task_id>', methods=['POST'])
@require_auth
def shortcut_toggle(task_id):
    """Stop the task if it is running, start it otherwise"""
    store = get_store()
    user_id = g.user['id']

    with store.atomic():
        task = _shortcut_task(store, task_id)
        if not task:
            return error_response("Task not found", 404)

        existing = store.find('entries', userId=user_id, taskId=task_id, endTime=None)
        if existing:
            entry, duration = _stop_running_entry(store, existing)
            return jsonify({
                'action': 'stopped',
                'message': f"Stopped: {task['name']} ({duration} min)",
                'entry': entry,
                'task': task,
                'duration': duration,
            })

        entry = _insert_running_entry(store, user_id, task_id)

    return jsonify({
        'action': 'started',
        'message': f"Started: {task['name']}",
        'entry': entry,
        'task': task,
    }), 201


@app.route('/shortcuts/tasks', methods=['GET'])
@require_auth
def shortcut_tasks():
    """Active tasks, for building shortcuts"""
    return jsonify({'tasks': get_store().list('tasks', userId=g.user['id'], active=True)})


def run_server(host=DEFAULT_SERVER_HOST, port=DEFAULT_SERVER_PORT):
    """Run server with Waitress WSGI server"""
    get_store()
    logger.info(f"Starting Traq Server on {host}:{port}")
    serve(
        app,
        host=host,
        port=port,
        threads=WAITRESS_THREADS,
        channel_timeout=WAITRESS_CHANNEL_TIMEOUT,
        cleanup_interval=WAITRESS_CLEANUP_INTERVAL,
    )


if __name__ == '__main__':
    init_server_db()
    config = get_server_config()
    run_server(config['host'], config['port'])
