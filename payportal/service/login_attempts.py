from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict

from payportal.logging import get_logger

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 5
DEFAULT_WINDOW = timedelta(minutes=15)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AttemptRecord:
    count: int
    first_failure_at: datetime
    last_failure_at: datetime


class LoginAttemptTracker:
    """Counts failed logins per identifier inside a fixed window.

    The window starts at the first failure and is not extended by later ones.
    Records whose window has elapsed are void and are dropped lazily on access
    or eagerly via :meth:`sweep`.
    """

    def __init__(
        self,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        window: timedelta = DEFAULT_WINDOW,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        self.threshold = threshold
        self.window = window
        self._now = now
        self._records: Dict[str, AttemptRecord] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(identifier: str) -> str:
        return identifier.strip().lower()

    def _live_record(self, key: str, now: datetime) -> AttemptRecord | None:
        # Caller holds the lock
        record = self._records.get(key)
        if record is not None and now - record.first_failure_at >= self.window:
            del self._records[key]
            return None
        return record

    def record_failure(self, identifier: str) -> int:
        key = self._key(identifier)
        now = self._now()
        with self._lock:
            record = self._live_record(key, now)
            if record is None:
                record = AttemptRecord(count=0, first_failure_at=now, last_failure_at=now)
                self._records[key] = record
            record.count += 1
            record.last_failure_at = now
            count = record.count
        if count >= self.threshold:
            logger.warning("login_lockout_engaged", identifier=key, failures=count)
        return count

    def is_locked(self, identifier: str) -> bool:
        key = self._key(identifier)
        with self._lock:
            record = self._live_record(key, self._now())
            return record is not None and record.count >= self.threshold

    def retry_after(self, identifier: str) -> int:
        """Seconds until a locked identifier unlocks; 0 if not locked."""
        key = self._key(identifier)
        now = self._now()
        with self._lock:
            record = self._live_record(key, now)
            if record is None or record.count < self.threshold:
                return 0
            remaining = (record.first_failure_at + self.window - now).total_seconds()
        return max(1, math.ceil(remaining))

    def clear(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(self._key(identifier), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def sweep(self) -> int:
        """Evict every void record; returns how many were removed."""
        now = self._now()
        with self._lock:
            stale = [
                key
                for key, record in self._records.items()
                if now - record.first_failure_at >= self.window
            ]
            for key in stale:
                del self._records[key]
        return len(stale)
