"""Tests for the connectivity monitor."""
from unittest.mock import MagicMock

from client.connectivity import ConnectivityMonitor


def test_online_transition_fires_callback_once():
    on_online = MagicMock()
    monitor = ConnectivityMonitor(on_online=on_online)

    assert monitor.set_online(True) is True
    assert monitor.set_online(True) is False

    on_online.assert_called_once_with()
    assert monitor.is_online is True


def test_going_offline_only_updates_state():
    on_online = MagicMock()
    monitor = ConnectivityMonitor(on_online=on_online, initial=True)
    changes = []
    monitor.connectivity_changed.connect(changes.append)

    monitor.set_online(False)

    on_online.assert_not_called()
    assert monitor.is_online is False
    assert changes == [False]


def test_each_reconnect_fires_again():
    on_online = MagicMock()
    monitor = ConnectivityMonitor(on_online=on_online)

    monitor.set_online(True)
    monitor.set_online(False)
    monitor.set_online(True)

    assert on_online.call_count == 2


def test_check_now_uses_probe():
    probe = MagicMock(return_value=True)
    on_online = MagicMock()
    monitor = ConnectivityMonitor(probe=probe, on_online=on_online)

    assert monitor.check_now() is True
    on_online.assert_called_once_with()

    probe.return_value = False
    assert monitor.check_now() is False
    assert monitor.is_online is False


def test_probe_exception_means_offline():
    probe = MagicMock(side_effect=OSError("network down"))
    monitor = ConnectivityMonitor(probe=probe, initial=True)

    assert monitor.check_now() is False
    assert monitor.is_online is False


def test_callback_error_is_contained():
    monitor = ConnectivityMonitor(on_online=MagicMock(side_effect=RuntimeError("boom")))

    assert monitor.set_online(True) is True
    assert monitor.is_online is True
