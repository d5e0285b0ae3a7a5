import os

import pytest

from chainctl.modules.errors import RosterError
from chainctl.modules.locking import PhaseLock


def busy(holder):
    return RosterError(f"held by {holder}")


def test_hold_and_release(tmp_path):
    lock = PhaseLock(tmp_path / 'upgrade.lock')
    assert not lock.held()
    with lock.hold("upgrade to 2.0.0", on_busy=busy):
        assert lock.held()
        assert lock.holder() == f"upgrade to 2.0.0 pid={os.getpid()}"
    assert not lock.held()
    assert not (tmp_path / 'upgrade.lock').exists()


def test_lock_file_from_another_live_process_blocks(tmp_path):
    path = tmp_path / 'upgrade.lock'
    path.write_text(f"upgrade to 3.0.0 pid={os.getppid()}\n")
    lock = PhaseLock(path)
    with pytest.raises(RosterError) as exc:
        with lock.hold("join", on_busy=busy):
            pass
    assert "upgrade to 3.0.0" in str(exc.value)
    assert path.exists()


def test_stale_lock_file_is_replaced(tmp_path):
    path = tmp_path / 'upgrade.lock'
    path.write_text("upgrade to 3.0.0 pid=999999999\n")
    lock = PhaseLock(path)
    with lock.hold("join", on_busy=busy):
        assert "join" in lock.holder()
    assert not path.exists()


def test_released_after_error(tmp_path):
    lock = PhaseLock(tmp_path / 'upgrade.lock')
    with pytest.raises(ValueError):
        with lock.hold("leave node-2", on_busy=busy):
            raise ValueError("boom")
    with lock.hold("again", on_busy=busy):
        pass
