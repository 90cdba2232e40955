from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from lostfound.logging import get_logger
from lostfound.storage.models import LoginAttempt

logger = get_logger(__name__)


def normalize_identity_key(identity_key: str) -> str:
    return (identity_key or "").strip().lower()


@dataclass(frozen=True)
class LockState:
    locked: bool
    unlock_at: Optional[datetime] = None
    remaining_attempts: Optional[int] = None

    @property
    def remaining_minutes(self) -> int:
        if not self.locked or self.unlock_at is None:
            return 0
        seconds = (self.unlock_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, math.ceil(seconds / 60))


class LoginAttemptLedger:
    """Append-only record of sign-in attempts per identity key.

    A lockout is a failed-attempt row carrying ``locked_until``; it is written
    when the failures inside the rolling window reach ``max_failures``. Only
    failures newer than the latest lockout row count toward the next one. A
    successful attempt deletes every row for the identity.
    """

    def __init__(
        self,
        store,
        *,
        max_failures: int = 5,
        window_seconds: int = 300,
        lockout_seconds: int = 300,
    ) -> None:
        self.store = store
        self.max_failures = max_failures
        self.window = timedelta(seconds=window_seconds)
        self.lockout = timedelta(seconds=lockout_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _evaluate(self, key: str, now: datetime) -> tuple[LockState, int]:
        rows = self.store.list_login_attempts(key, since=now - self.window)
        lock_rows = [row for row in rows if row.locked_until is not None]
        latest_lock = max(lock_rows, key=lambda row: row.attempted_at) if lock_rows else None
        if latest_lock is not None and latest_lock.locked_until > now:
            return LockState(locked=True, unlock_at=latest_lock.locked_until), 0
        window_start = now - self.window
        failures = [
            row
            for row in rows
            if not row.successful
            and row.attempted_at >= window_start
            and (latest_lock is None or row.attempted_at > latest_lock.attempted_at)
        ]
        remaining = max(0, self.max_failures - len(failures))
        return LockState(locked=False, remaining_attempts=remaining), len(failures)

    def check_lock(self, identity_key: str) -> LockState:
        key = normalize_identity_key(identity_key)
        state, _ = self._evaluate(key, self._now())
        return state

    def record_attempt(self, identity_key: str, successful: bool) -> LockState:
        key = normalize_identity_key(identity_key)
        now = self._now()
        if successful:
            self.store.clear_login_attempts(key)
            logger.info("login_ledger_reset", identity_key=key)
            return LockState(locked=False, remaining_attempts=self.max_failures)

        state, failures = self._evaluate(key, now)
        if state.locked:
            return state
        failures += 1
        locked_until = now + self.lockout if failures >= self.max_failures else None
        self.store.append_login_attempt(
            LoginAttempt(
                id=str(uuid.uuid4()),
                identity_key=key,
                attempted_at=now,
                successful=False,
                locked_until=locked_until,
            ),
            prune_before=now - self.window,
        )
        if locked_until is not None:
            logger.warning(
                "login_lockout_engaged",
                identity_key=key,
                failures=failures,
                locked_until=locked_until.isoformat(),
            )
            return LockState(locked=True, unlock_at=locked_until)
        return LockState(locked=False, remaining_attempts=self.max_failures - failures)

    def clear(self, identity_key: str) -> int:
        key = normalize_identity_key(identity_key)
        removed = self.store.clear_login_attempts(key)
        logger.info("login_ledger_cleared", identity_key=key, removed=removed)
        return removed
