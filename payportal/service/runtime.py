from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Tuple, Union

from payportal.config import get_settings, reset_settings_cache
from payportal.logging import get_logger
from payportal.service.auth import AuthService
from payportal.service.guard import AuthGuard, RoleGuard
from payportal.service.login_attempts import LoginAttemptTracker
from payportal.service.sessions import SessionStore
from payportal.service.tokens import TokenCodec
from payportal.storage.memory import MemoryStore
from payportal.storage.models import Role

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        # Raises ConfigurationError without a signing key, so the app cannot start
        self.codec = TokenCodec.from_settings(self.settings)
        self.store = MemoryStore()
        self.sessions = SessionStore()
        self.attempts = LoginAttemptTracker(
            threshold=self.settings.login_lockout_threshold,
            window=timedelta(seconds=self.settings.login_lockout_window_seconds),
        )
        self.guard = AuthGuard(
            self.codec,
            self.sessions,
            allow_loopback_equivalence=self.settings.allow_loopback_equivalence,
        )
        self.employee_guard = RoleGuard(Role.EMPLOYEE)
        self.customer_guard = RoleGuard(Role.CUSTOMER)
        self.auth = AuthService(
            self.store,
            self.settings,
            codec=self.codec,
            sessions=self.sessions,
            attempts=self.attempts,
        )
        if self.settings.employee_username and self.settings.employee_password:
            self.auth.ensure_employee(
                self.settings.employee_username, self.settings.employee_password
            )

        self._local_rate_limits: Dict[str, Tuple[float, datetime, int]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        self._last_rate_limit_prune = datetime.now(timezone.utc)

        logger.info(
            "runtime_initialized",
            token_ttl_minutes=self.settings.access_token_ttl_minutes,
            lockout_threshold=self.settings.login_lockout_threshold,
            lockout_window_seconds=self.settings.login_lockout_window_seconds,
            trusted_proxies=len(self.settings.trusted_proxies),
            employee_seeded=bool(self.settings.employee_username),
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _prune_rate_limits(runtime: Runtime, now: datetime) -> int:
    # Caller holds the bucket lock; a bucket idle for its whole window has refilled
    idle = [
        key
        for key, (_, last_ts, window) in runtime._local_rate_limits.items()
        if (now - last_ts).total_seconds() >= window
    ]
    for key in idle:
        del runtime._local_rate_limits[key]
    runtime._last_rate_limit_prune = now
    if idle:
        logger.debug("rate_limit_buckets_pruned", count=len(idle))
    return len(idle)


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """In-memory token bucket.

    Args:
        runtime: Runtime instance holding the bucket table
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        if (now - runtime._last_rate_limit_prune).total_seconds() >= window_seconds:
            _prune_rate_limits(runtime, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, window_seconds))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            runtime._local_rate_limits[key] = (tokens, now, window_seconds)
        reset_seconds = int(((cost - tokens) / refill_rate)) if not allowed and refill_rate > 0 else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
