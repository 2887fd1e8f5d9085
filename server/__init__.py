"""Server package for Traq.

Provides the Flask REST API over the JSON data file and a console entry point.
All server modes use the Waitress WSGI server.
"""
from .server import app as flask_app
from .server import (DEFAULT_SERVER_HOST, DEFAULT_SERVER_PORT,
                     create_api_token, create_user, init_server_db, run_server)

__all__ = [
    "flask_app",
    "init_server_db",
    "run_server",
    "run_console_server",
    "create_user",
    "create_api_token",
]


def run_console_server(host=DEFAULT_SERVER_HOST, port=DEFAULT_SERVER_PORT, db_path=None):
    """Run the server directly in console mode using Waitress"""
    print("Traq Server - Console Mode")
    print(f"Starting server on {host}:{port}")

    store = init_server_db(db_path)
    print(f"Data file: {store.path}")
    run_server(host=host, port=port)
