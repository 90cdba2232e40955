"""Login attempt ledger: rolling window, lockout and reset on success."""

from datetime import datetime, timedelta, timezone

import pytest

from lostfound.service.ledger import LoginAttemptLedger


class _Clock:
    def __init__(self):
        self.now = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def ledger(store, clock):
    ledger = LoginAttemptLedger(store, max_failures=5, window_seconds=300, lockout_seconds=300)
    ledger._now = clock
    return ledger


class TestLockout:
    def test_fifth_failure_locks(self, ledger, clock):
        for expected_remaining in (4, 3, 2, 1):
            state = ledger.record_attempt("student@plv.edu.ph", False)
            assert not state.locked
            assert state.remaining_attempts == expected_remaining

        state = ledger.record_attempt("student@plv.edu.ph", False)
        assert state.locked
        assert state.unlock_at == clock.now + timedelta(seconds=300)
        assert ledger.check_lock("student@plv.edu.ph").locked

    def test_attempts_while_locked_do_not_extend_lock(self, ledger, store, clock):
        for _ in range(5):
            ledger.record_attempt("student@plv.edu.ph", False)
        unlock_at = ledger.check_lock("student@plv.edu.ph").unlock_at
        rows_before = len(store.list_login_attempts("student@plv.edu.ph"))

        clock.advance(60)
        state = ledger.record_attempt("student@plv.edu.ph", False)

        assert state.locked
        assert state.unlock_at == unlock_at
        assert len(store.list_login_attempts("student@plv.edu.ph")) == rows_before

    def test_lock_expires_and_counter_restarts(self, ledger, clock):
        for _ in range(5):
            ledger.record_attempt("student@plv.edu.ph", False)

        clock.advance(301)
        state = ledger.check_lock("student@plv.edu.ph")

        assert not state.locked
        assert state.remaining_attempts == 5

    def test_remaining_minutes_rounds_up(self, ledger):
        ledger._now = lambda: datetime.now(timezone.utc)
        for _ in range(5):
            ledger.record_attempt("student@plv.edu.ph", False)
        assert ledger.check_lock("student@plv.edu.ph").remaining_minutes == 5


class TestWindow:
    def test_failures_outside_window_are_ignored(self, ledger, clock):
        for _ in range(3):
            ledger.record_attempt("student@plv.edu.ph", False)

        clock.advance(301)
        state = ledger.record_attempt("student@plv.edu.ph", False)

        assert not state.locked
        assert state.remaining_attempts == 4

    def test_identity_key_is_case_and_space_insensitive(self, ledger):
        ledger.record_attempt(" Student@PLV.edu.ph ", False)
        state = ledger.check_lock("student@plv.edu.ph")
        assert state.remaining_attempts == 4

    def test_identities_are_tracked_separately(self, ledger):
        for _ in range(5):
            ledger.record_attempt("a@plv.edu.ph", False)
        assert ledger.check_lock("a@plv.edu.ph").locked
        assert not ledger.check_lock("b@plv.edu.ph").locked

    def test_aged_rows_are_pruned_for_identities_that_never_return(self, ledger, store, clock):
        ledger.record_attempt("ghost@plv.edu.ph", False)
        ledger.record_attempt("ghost@plv.edu.ph", False)

        clock.advance(301)
        ledger.record_attempt("student@plv.edu.ph", False)

        assert store.list_login_attempts("ghost@plv.edu.ph") == []
        assert len(store.list_login_attempts("student@plv.edu.ph")) == 1

    def test_pruning_keeps_an_active_lock(self, store, clock):
        ledger = LoginAttemptLedger(store, max_failures=5, window_seconds=60, lockout_seconds=300)
        ledger._now = clock
        for _ in range(5):
            ledger.record_attempt("student@plv.edu.ph", False)

        clock.advance(120)
        ledger.record_attempt("other@plv.edu.ph", False)

        assert ledger.check_lock("student@plv.edu.ph").locked
        assert len(store.list_login_attempts("student@plv.edu.ph")) == 1


class TestReset:
    def test_success_clears_history(self, ledger, store):
        for _ in range(3):
            ledger.record_attempt("student@plv.edu.ph", False)

        state = ledger.record_attempt("student@plv.edu.ph", True)

        assert state.remaining_attempts == 5
        assert store.list_login_attempts("student@plv.edu.ph") == []

    def test_clear_reports_removed_rows(self, ledger):
        ledger.record_attempt("student@plv.edu.ph", False)
        ledger.record_attempt("student@plv.edu.ph", False)
        assert ledger.clear("student@plv.edu.ph") == 2
        assert ledger.clear("student@plv.edu.ph") == 0
