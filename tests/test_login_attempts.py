"""Tests for failed-login tracking and lockout."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from payportal.service.login_attempts import LoginAttemptTracker


class SteppingNow:
    def __init__(self):
        self.value = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs) -> None:
        self.value += timedelta(**kwargs)


@pytest.fixture
def now():
    return SteppingNow()


@pytest.fixture
def tracker(now):
    return LoginAttemptTracker(threshold=5, window=timedelta(minutes=15), now=now)


class TestLockout:
    def test_four_failures_do_not_lock(self, tracker):
        for _ in range(4):
            tracker.record_failure("alice")
        assert not tracker.is_locked("alice")
        assert tracker.retry_after("alice") == 0

    def test_fifth_failure_locks(self, tracker):
        counts = [tracker.record_failure("alice") for _ in range(5)]
        assert counts == [1, 2, 3, 4, 5]
        assert tracker.is_locked("alice")

    def test_lock_expires_after_window_from_first_failure(self, tracker, now):
        tracker.record_failure("alice")
        now.advance(minutes=10)
        for _ in range(4):
            tracker.record_failure("alice")
        assert tracker.is_locked("alice")

        # Later failures do not extend the window
        now.advance(minutes=5)
        assert not tracker.is_locked("alice")

    def test_failure_after_window_starts_new_count(self, tracker, now):
        for _ in range(5):
            tracker.record_failure("alice")
        now.advance(minutes=16)
        assert tracker.record_failure("alice") == 1
        assert not tracker.is_locked("alice")

    def test_retry_after_counts_down(self, tracker, now):
        for _ in range(5):
            tracker.record_failure("alice")
        assert tracker.retry_after("alice") == 15 * 60
        now.advance(minutes=14, seconds=59, microseconds=500_000)
        assert tracker.retry_after("alice") == 1

    def test_clear_resets_identifier(self, tracker):
        for _ in range(5):
            tracker.record_failure("alice")
        tracker.clear("alice")
        assert not tracker.is_locked("alice")
        assert tracker.record_failure("alice") == 1

    def test_identifiers_are_case_insensitive(self, tracker):
        for name in ["Alice", "ALICE", "alice", " alice ", "aLiCe"]:
            tracker.record_failure(name)
        assert tracker.is_locked("alice")

    def test_identifiers_are_independent(self, tracker):
        for _ in range(5):
            tracker.record_failure("alice")
        assert not tracker.is_locked("bob")


class TestConcurrency:
    def test_parallel_failures_are_all_counted(self):
        tracker = LoginAttemptTracker(threshold=1000, window=timedelta(minutes=15))

        def worker():
            for _ in range(100):
                tracker.record_failure("alice")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert tracker.record_failure("alice") == 801


class TestMaintenance:
    def test_sweep_drops_elapsed_records(self, tracker, now):
        tracker.record_failure("alice")
        now.advance(minutes=10)
        tracker.record_failure("bob")
        now.advance(minutes=6)

        assert tracker.sweep() == 1
        assert tracker.record_failure("bob") == 2

    def test_sweep_bounds_unknown_identifiers(self, tracker, now):
        for i in range(200):
            tracker.record_failure(f"nobody{i}")
        assert len(tracker) == 200

        now.advance(minutes=15)

        assert tracker.sweep() == 200
        assert len(tracker) == 0

    @pytest.mark.parametrize(
        "kwargs",
        [{"threshold": 0}, {"threshold": -1}, {"window": timedelta(0)}],
    )
    def test_rejects_non_positive_settings(self, kwargs):
        with pytest.raises(ValueError):
            LoginAttemptTracker(**kwargs)
