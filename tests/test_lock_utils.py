"""Tests for heartbeat.lock_utils module."""

from heartbeat.lock_utils import acquire_lock, locked_or_skip, release_lock


class TestLocking:

    def test_second_acquire_fails_until_released(self, temp_dir):
        path = temp_dir / "locks" / "dispatch.lock"

        fd = acquire_lock(path)
        assert fd is not None
        assert acquire_lock(path) is None

        release_lock(fd)
        again = acquire_lock(path)
        assert again is not None
        release_lock(again)

    def test_locked_or_skip(self, temp_dir):
        path = temp_dir / "dispatch.lock"

        with locked_or_skip(path) as outer:
            assert outer is True
            with locked_or_skip(path) as inner:
                assert inner is False

        with locked_or_skip(path) as after:
            assert after is True
