"""Shared models, utilities and logging for Traq client and server."""

__VERSION__ = "1.0.0"
__API_VERSION__ = "1"
