#!/usr/bin/env python3
"""
Traq Application Launcher
Provides simple entry points for the server, the sync agent and one-shot client commands.
"""

import signal
import sys
from pathlib import Path

# Add the project root to Python path for clean imports
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

USAGE = """Traq Application Launcher

Usage:
  python launcher.py server                       # Run REST server (Waitress)
  python launcher.py create-token <user> <name>   # Create a user and print an API token
  python launcher.py configure <url> <api_key>    # Save client connection settings
  python launcher.py agent                        # Monitor connectivity and replay queued actions
  python launcher.py status                       # Show connectivity and queue state
  python launcher.py start <task_id>              # Start a task (queued when offline)
  python launcher.py stop <task_id>               # Stop a task (queued when offline)
  python launcher.py stop-all                     # Stop every running task
  python launcher.py sync                         # Replay queued actions now
  python launcher.py clear-queue                  # Discard queued actions
"""


def run_agent():
    """Run the client headless: poll connectivity and replay on reconnect"""
    from PyQt6.QtCore import QCoreApplication

    from client.traq_client import get_client

    app = QCoreApplication(sys.argv)
    client = get_client()
    if not client.start():
        print("Client is not configured; run 'configure' first")
        sys.exit(1)

    # Let Ctrl+C stop the Qt loop
    signal.signal(signal.SIGINT, lambda *args: app.quit())
    sys.exit(app.exec())


def run_client_command(command: str, args):
    from client.api_client import ApiError
    from client.traq_client import TraqClient

    client = TraqClient(background=False)

    if command == 'configure':
        from shared.models import ClientConfig
        if len(args) < 2:
            print("Usage: configure <url> <api_key>")
            sys.exit(1)
        client.update_config(ClientConfig(server_url=args[0], api_key=args[1]))
        print(f"Saved server {client.config.server_url}")
        return

    if command == 'clear-queue':
        client.sync.clear_queue()
        print("Queue cleared")
        return

    # Replays anything queued first when the server is back
    client.check_connection()

    try:
        if command == 'status':
            status = client.get_sync_status()
            print(f"Online: {status.is_online}")
            print(f"Pending actions: {status.pending_count}")
            print(f"Last sync: {status.last_sync_time or 'never'}")

        elif command == 'start':
            result = client.entries.start_task(args[0])
            entry = result['entry']
            suffix = " (queued)" if entry.offline else ""
            print(f"Started {entry.task_id} at {entry.start_time}{suffix}")

        elif command == 'stop':
            if client.sync.is_online:
                client.entries.fetch_active_entries()
            result = client.entries.stop_task(task_id=args[0])
            entry = result['entry']
            if entry is None:
                print(f"{args[0]} is not running")
            else:
                print(f"Stopped {entry.task_id} at {entry.end_time}")

        elif command == 'stop-all':
            if client.sync.is_online:
                client.entries.fetch_active_entries()
            result = client.entries.stop_all_tasks()
            print(f"Stopped {result['stoppedCount']} tasks")

        elif command == 'sync':
            result = client.sync_now()
            if result is None:
                print("Server unreachable, nothing synced")
            else:
                print(f"Synced {result['synced']}, failed {result['failed']}, remaining {result['remaining']}")

    except (ApiError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


def main():
    """Main launcher with command-line arguments"""

    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(1)

    command = sys.argv[1].lower()
    args = sys.argv[2:]

    if command == 'server':
        from server import run_console_server
        from server.server import get_server_config
        config = get_server_config()
        run_console_server(config['host'], config['port'])

    elif command == 'create-token':
        from server import create_api_token, create_user, init_server_db
        if len(args) < 2:
            print("Usage: create-token <user> <name>")
            sys.exit(1)
        init_server_db()
        user = create_user(args[0])
        token = create_api_token(user['id'], args[1])
        print(f"User id: {user['id']}")
        print(f"API token: {token['token']}")

    elif command == 'agent':
        run_agent()

    elif command in ('configure', 'status', 'start', 'stop', 'stop-all', 'sync', 'clear-queue'):
        if command in ('start', 'stop') and not args:
            print(f"Usage: {command} <task_id>")
            sys.exit(1)
        run_client_command(command, args)

    else:
        print(f"Unknown command: {command}")
        print(USAGE)
        sys.exit(1)


if __name__ == '__main__':
    main()
