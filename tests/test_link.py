"""Tests for exclusive access to the board link."""

import os
import subprocess
import sys
import textwrap
import threading
from pathlib import Path
from unittest.mock import Mock

import pytest

from mpyworkbench.exceptions import ExclusiveAccessError, LinkUnavailableError
from mpyworkbench.link import (
    DeviceLink,
    LinkManager,
    PortLock,
    default_lock_dir,
    new_operation_id,
)

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Tries to take the link from a separate process and reports the outcome
CHILD_ACQUIRE = textwrap.dedent(
    """
    import sys
    from pathlib import Path

    from mpyworkbench.exceptions import ExclusiveAccessError
    from mpyworkbench.link import DeviceLink

    link = DeviceLink(sys.argv[1], lock_dir=Path(sys.argv[2]))
    try:
        token = link.acquire_exclusive("child", timeout=0.2)
    except ExclusiveAccessError as e:
        print(f"busy: {e}")
    else:
        print("acquired")
        link.release(token)
    """
)


def acquire_in_child(port, lock_dir):
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in (str(PROJECT_ROOT), env.get("PYTHONPATH")) if p
    )
    result = subprocess.run(
        [sys.executable, "-c", CHILD_ACQUIRE, port, str(lock_dir)],
        capture_output=True,
        text=True,
        timeout=60,
        env=env,
    )
    assert result.returncode == 0, result.stderr
    return result.stdout.strip()


@pytest.fixture
def link():
    return DeviceLink("/dev/ttyUSB0", default_timeout=0.05)


class TestDeviceLink:
    """Tests for DeviceLink."""

    def test_acquire_and_release(self, link):
        """Test the holder is visible in the state while held."""
        token = link.acquire_exclusive("sync-1")
        assert link.is_held()
        assert link.state.exclusive_holder == "sync-1"
        link.release(token)
        assert not link.is_held()
        assert link.state.exclusive_holder is None

    def test_second_acquire_times_out(self, link):
        """Test a busy link raises after the timeout."""
        token = link.acquire_exclusive("first")
        with pytest.raises(ExclusiveAccessError, match="held by first"):
            link.acquire_exclusive("second", timeout=0.01)
        link.release(token)

    def test_waiter_gets_link_after_release(self, link):
        """Test a waiting acquirer proceeds once the holder releases."""
        token = link.acquire_exclusive("first")
        acquired = []

        def wait():
            second = link.acquire_exclusive("second", timeout=2.0)
            acquired.append(second.operation_id)
            link.release(second)

        thread = threading.Thread(target=wait)
        thread.start()
        link.release(token)
        thread.join(timeout=2.0)
        assert acquired == ["second"]

    def test_release_with_wrong_token(self, link):
        """Test a stale token cannot release the link."""
        token = link.acquire_exclusive("first")
        link.release(token)
        other = link.acquire_exclusive("second")
        with pytest.raises(ExclusiveAccessError, match="does not hold"):
            link.release(token)
        link.release(other)

    def test_ensure_held(self, link):
        """Test a board call without the link is refused."""
        token = link.acquire_exclusive("first")
        link.ensure_held(token)
        link.release(token)
        with pytest.raises(ExclusiveAccessError, match="without exclusive access"):
            link.ensure_held(token)

    def test_try_acquire(self, link):
        """Test try_acquire never waits and never suspends the monitor."""
        monitor = Mock()
        link.attach_monitor(monitor)
        token = link.try_acquire("poll")
        assert token is not None
        assert link.try_acquire("poll") is None
        monitor.suspend.assert_not_called()
        link.release(token)

    def test_monitor_suspended_and_resumed(self, link):
        """Test an exclusive hold pauses the attached monitor."""
        monitor = Mock()
        link.attach_monitor(monitor)
        with link.exclusive("sync"):
            monitor.suspend.assert_called_once()
            monitor.resume.assert_not_called()
        monitor.resume.assert_called_once()

    def test_exclusive_releases_on_error(self, link):
        """Test the context manager releases when the body raises."""
        with pytest.raises(RuntimeError):
            with link.exclusive("sync"):
                raise RuntimeError("boom")
        assert not link.is_held()

    def test_close_stops_monitor_and_refuses(self, link):
        """Test a closed link stops its monitor and cannot be acquired."""
        monitor = Mock()
        link.attach_monitor(monitor)
        link.close()
        monitor.stop.assert_called_once()
        with pytest.raises(ExclusiveAccessError, match="closed"):
            link.acquire_exclusive("late")


class TestLinkManager:
    """Tests for LinkManager."""

    def test_same_port_reuses_link(self):
        """Test the link is kept while the port does not change."""
        manager = LinkManager()
        first = manager.get("/dev/ttyUSB0", default_timeout=1.0)
        assert manager.get("/dev/ttyUSB0", default_timeout=2.0) is first
        assert first.default_timeout == 2.0

    def test_port_change_closes_previous(self):
        """Test a new port tears the old link down."""
        manager = LinkManager()
        first = manager.get("/dev/ttyUSB0")
        monitor = Mock()
        first.attach_monitor(monitor)

        second = manager.get("/dev/ttyACM0")

        assert second is not first
        assert second.port == "/dev/ttyACM0"
        monitor.stop.assert_called_once()


def test_operation_ids_are_unique():
    first = new_operation_id("sync-diffs")
    second = new_operation_id("sync-diffs")
    assert first.startswith("sync-diffs-")
    assert first != second


class TestPortLock:
    """Tests for the lock file shared by every process using a port."""

    def test_lock_file_under_cache_dir(self, port_lock_dir):
        """Test the lock file is named after the port in the cache dir."""
        assert default_lock_dir() == port_lock_dir
        lock = PortLock("/dev/ttyUSB0")
        assert lock.path == port_lock_dir / "dev_ttyUSB0.lock"

    def test_second_link_on_same_port_is_refused(self, link):
        """Test another link object on the same port cannot take it."""
        other = DeviceLink("/dev/ttyUSB0")
        token = link.acquire_exclusive("first")
        with pytest.raises(ExclusiveAccessError, match="another process"):
            other.acquire_exclusive("second", timeout=0.1)
        assert other.try_acquire("poll") is None

        link.release(token)
        second = other.acquire_exclusive("second", timeout=1.0)
        other.release(second)

    def test_other_port_not_blocked(self, link):
        token = link.acquire_exclusive("first")
        other = DeviceLink("/dev/ttyACM0")
        other.release(other.acquire_exclusive("second", timeout=0.1))
        link.release(token)

    def test_waiter_gets_lock_after_other_link_releases(self, link):
        """Test a waiting link polls the lock file until it is free."""
        other = DeviceLink("/dev/ttyUSB0")
        token = link.acquire_exclusive("first")
        timer = threading.Timer(0.2, link.release, (token,))
        timer.start()
        second = other.acquire_exclusive("second", timeout=5.0)
        timer.join()
        assert second.operation_id == "second"
        other.release(second)

    def test_close_releases_lock(self, link):
        """Test closing a link lets other links take the port."""
        link.acquire_exclusive("first")
        link.close()
        other = DeviceLink("/dev/ttyUSB0")
        other.release(other.acquire_exclusive("second", timeout=0.1))

    def test_other_process_is_refused_while_held(self, link, port_lock_dir):
        """Test a second process cannot use the port until it is released."""
        token = link.acquire_exclusive("sync-diffs")
        try:
            outcome = acquire_in_child("/dev/ttyUSB0", port_lock_dir)
        finally:
            link.release(token)
        assert outcome.startswith("busy:")
        assert "another process" in outcome

        assert acquire_in_child("/dev/ttyUSB0", port_lock_dir) == "acquired"

    def test_unusable_lock_dir(self, tmp_path):
        """Test a lock file that cannot be created is a link error."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        link = DeviceLink("/dev/ttyUSB0", lock_dir=blocker / "locks")
        with pytest.raises(LinkUnavailableError, match="Cannot open lock file"):
            link.acquire_exclusive("sync", timeout=0.1)
        assert not link.is_held()
