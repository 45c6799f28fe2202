"""In-memory fixed-window rate limiting.

State is process local and resets on restart. Identifiers must already be
opaque (see ``utils.hash_identifier``); the limiter never sees raw IPs.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import Settings
from .utils import Clock, utcnow

logger = logging.getLogger("uvicorn.error")

MAX_REGISTRATION_ATTEMPTS_PER_HOUR = 5
MAX_MANAGE_ATTEMPTS_PER_HOUR = 10
MAX_RESEND_ATTEMPTS_PER_HOUR = 3
MAX_ADMIN_LOGIN_ATTEMPTS_PER_15MIN = 5

# Without the scheduler nothing else prunes, so check() does it itself.
DEFAULT_PRUNE_EVERY = 1000


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime

    def retry_after_seconds(self, now: datetime) -> int:
        """Whole seconds until the window resets, never less than one."""
        return max(math.ceil((self.reset_at - now).total_seconds()), 1)


@dataclass
class _Window:
    count: int
    window_start: datetime


class RateLimiter:
    def __init__(
        self,
        max_attempts: int,
        window: timedelta,
        *,
        clock: Clock = utcnow,
        disabled: bool = False,
        name: str = "default",
        prune_every: int = DEFAULT_PRUNE_EVERY,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        self.max_attempts = max_attempts
        self.window = window
        self.disabled = disabled
        self.name = name
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self.prune_every = prune_every
        self._checks = 0

    def _lock_for(self, identifier: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(identifier)
            if lock is None:
                lock = self._locks[identifier] = threading.Lock()
            return lock

    def _prune_due(self) -> bool:
        if self.prune_every < 1:
            return False
        with self._guard:
            self._checks += 1
            if self._checks < self.prune_every:
                return False
            self._checks = 0
            return True

    def check(self, identifier: str) -> RateLimitResult:
        """Count one attempt for ``identifier`` and report whether it is allowed."""
        now = self._clock()
        if self.disabled:
            return RateLimitResult(
                allowed=True, remaining=self.max_attempts, reset_at=now + self.window
            )

        if self._prune_due():
            self.prune()

        while True:
            lock = self._lock_for(identifier)
            with lock:
                # prune() may have retired this lock between lookup and acquire.
                if self._locks.get(identifier) is lock:
                    return self._count(identifier, now)

    def _count(self, identifier: str, now: datetime) -> RateLimitResult:
        entry = self._windows.get(identifier)
        if entry is None or now >= entry.window_start + self.window:
            entry = _Window(count=1, window_start=now)
            self._windows[identifier] = entry
            return RateLimitResult(
                allowed=True,
                remaining=self.max_attempts - 1,
                reset_at=now + self.window,
            )

        entry.count += 1
        reset_at = entry.window_start + self.window
        if entry.count > self.max_attempts:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)
        return RateLimitResult(
            allowed=True,
            remaining=self.max_attempts - entry.count,
            reset_at=reset_at,
        )

    def prune(self) -> int:
        """Forget windows that have already ended. Returns how many were dropped."""
        now = self._clock()
        dropped = 0
        with self._guard:
            for identifier in list(self._windows):
                lock = self._locks.get(identifier)
                if lock is None or not lock.acquire(blocking=False):
                    continue
                try:
                    entry = self._windows.get(identifier)
                    if entry is not None and now >= entry.window_start + self.window:
                        del self._windows[identifier]
                        del self._locks[identifier]
                        dropped += 1
                finally:
                    lock.release()
        return dropped

    def __len__(self) -> int:
        return len(self._windows)


@dataclass(frozen=True)
class Limiters:
    """One limiter per endpoint group, built once per process."""

    registration: RateLimiter
    # View, update and cancel through a manage link share this instance.
    manage: RateLimiter
    resend: RateLimiter
    admin_login: RateLimiter

    def all(self) -> tuple[RateLimiter, ...]:
        return (self.registration, self.manage, self.resend, self.admin_login)

    def prune(self) -> int:
        return sum(limiter.prune() for limiter in self.all())


def build_limiters(settings: Settings, *, clock: Clock = utcnow) -> Limiters:
    disabled = settings.rate_limit_disabled
    if disabled:
        logger.warning(
            "Rate limiting is DISABLED by configuration "
            "(rate_limit_disabled / GUESTPASS_RATE_LIMIT_DISABLED); "
            "do not run this way in production"
        )
    hour = timedelta(hours=1)
    return Limiters(
        registration=RateLimiter(
            MAX_REGISTRATION_ATTEMPTS_PER_HOUR,
            hour,
            clock=clock,
            disabled=disabled,
            name="registration",
        ),
        manage=RateLimiter(
            MAX_MANAGE_ATTEMPTS_PER_HOUR,
            hour,
            clock=clock,
            disabled=disabled,
            name="manage",
        ),
        resend=RateLimiter(
            MAX_RESEND_ATTEMPTS_PER_HOUR,
            hour,
            clock=clock,
            disabled=disabled,
            name="resend",
        ),
        admin_login=RateLimiter(
            MAX_ADMIN_LOGIN_ATTEMPTS_PER_15MIN,
            timedelta(minutes=15),
            clock=clock,
            disabled=disabled,
            name="admin_login",
        ),
    )
