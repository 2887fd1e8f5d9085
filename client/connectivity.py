"""
Connectivity monitor for the Traq client.

Tracks whether the server is reachable and fires a callback on every
offline -> online transition so queued actions get replayed.
"""

import threading
from typing import Callable, Optional

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from shared.logging_config import get_sync_logger

logger = get_sync_logger()


class ConnectivityMonitor(QObject):
    """
    Wraps a boolean connectivity signal.

    The signal is fed either by set_online() (explicit platform events) or by
    periodic health checks against the server. Going offline only updates
    state; queueing is driven by the actions themselves.
    """

    connectivity_changed = pyqtSignal(bool)

    def __init__(self, probe: Optional[Callable[[], bool]] = None,
                 on_online: Optional[Callable[[], None]] = None,
                 initial: bool = False, interval_seconds: int = 5, parent=None):
        super().__init__(parent)
        self._probe = probe
        self._on_online = on_online
        self._online = initial
        self._state_lock = threading.Lock()
        self.interval_seconds = interval_seconds
        self.check_timer = None

    @property
    def is_online(self) -> bool:
        return self._online

    def set_on_online(self, callback: Optional[Callable[[], None]]):
        self._on_online = callback

    def set_online(self, online: bool) -> bool:
        """Record the current connectivity state.

        Returns True when this call was an offline -> online transition.
        """
        online = bool(online)
        with self._state_lock:
            previous = self._online
            self._online = online

        if previous == online:
            return False

        logger.info("Server reachable" if online else "Server unreachable, actions will be queued")
        self.connectivity_changed.emit(online)

        if online and self._on_online is not None:
            try:
                self._on_online()
            except Exception as e:
                logger.error(f"Reconnect handler failed: {e}")
        return online

    def check_now(self) -> bool:
        """Probe the server once and update state"""
        if self._probe is None:
            return self._online
        try:
            online = bool(self._probe())
        except Exception as e:
            logger.debug(f"Connection check failed: {e}")
            online = False
        self.set_online(online)
        return online

    def _trigger_background_check(self):
        """Run a probe off the caller's thread so timers never block on the network"""
        def background_check():
            self.check_now()

        check_thread = threading.Thread(target=background_check, daemon=True)
        check_thread.start()

    def start(self):
        """Start periodic connectivity checks (requires a running Qt event loop)"""
        if self.check_timer is None:
            self.check_timer = QTimer(self)
            self.check_timer.timeout.connect(self._trigger_background_check)
        self._trigger_background_check()
        self.check_timer.start(self.interval_seconds * 1000)
        logger.info(f"Connectivity monitor started (every {self.interval_seconds}s)")

    def stop(self):
        if self.check_timer is not None:
            self.check_timer.stop()
        logger.info("Connectivity monitor stopped")
