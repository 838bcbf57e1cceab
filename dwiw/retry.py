"""Retry policies consulted when a connect or execute call hits a transient fault."""

from __future__ import annotations

import logging
import random
import ssl
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Protocol, runtime_checkable

LOG = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL = 30.0

# SQLSTATE codes reported by the server for conditions that usually clear up.
CONNECT_RETRY_SQLSTATES = frozenset({"53300", "57P03", "08001", "08004", "08006"})
EXECUTE_RETRY_SQLSTATES = frozenset({"57P01", "57P02", "08003", "08006"})

# Checked in order against the lower-cased error text when no code matches.
CONNECT_RETRY_PATTERNS = (
    "can't connect",
    "too many connections",
    "too many clients",
    "connection refused",
    "connect call failed",
    "could not connect",
    "the database system is starting up",
)
EXECUTE_RETRY_PATTERNS = (
    "lost connection",
    "server has gone away",
    "server shutdown in progress",
    "connection was closed",
    "connection is closed",
    "terminating connection due to administrator command",
)

Sleeper = Callable[[float], None]


@dataclass(slots=True)
class RetryState:
    """Bookkeeping for the current outage streak of one connection."""

    description: str = ""
    quiet: bool = False
    attempts: int = 0
    down_since: datetime | None = None
    label: str | None = None

    @property
    def elapsed(self) -> float:
        """Seconds since the first failure of the current streak."""

        if self.down_since is None:
            return 0.0
        return (datetime.now(tz=timezone.utc) - self.down_since).total_seconds()

    def begin(self) -> None:
        """Mark the start of a streak; later calls keep the original timestamp."""

        if self.down_since is None:
            self.down_since = datetime.now(tz=timezone.utc)
            self.label = f"(waiting on db) {self.description}"

    def reset(self) -> None:
        self.attempts = 0
        self.down_since = None
        self.label = None


@runtime_checkable
class RetryPolicy(Protocol):
    """Strategy deciding whether a retryable failure should be attempted again."""

    def should_retry(self, error: str, state: RetryState) -> bool:
        """Return True to retry the failed operation, False to give up."""


class FixedIntervalRetryPolicy:
    """Sleep a fixed interval between attempts.

    With ``max_attempts=None`` (the default) the policy never gives up, so a
    connection waits for a downed server indefinitely.
    """

    def __init__(
        self,
        interval: float = DEFAULT_RETRY_INTERVAL,
        *,
        max_attempts: int | None = None,
        sleep: Sleeper = time.sleep,
    ) -> None:
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    def should_retry(self, error: str, state: RetryState) -> bool:
        if self.max_attempts is not None and state.attempts >= self.max_attempts:
            return False
        state.begin()
        if not state.quiet:
            LOG.warning(
                "db connection down (%s), retry in %s seconds",
                error,
                self.interval,
                extra={"connection": state.description, "attempt": state.attempts + 1},
            )
        state.attempts += 1
        self._sleep(self.interval)
        return True


class ExponentialBackoffRetryPolicy:
    """Bounded retries with exponentially growing delays."""

    def __init__(
        self,
        *,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        max_attempts: int | None = 5,
        max_elapsed: float | None = None,
        jitter: bool = True,
        sleep: Sleeper = time.sleep,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.max_attempts = max_attempts
        self.max_elapsed = max_elapsed
        self.jitter = jitter
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""

        delay = min(self.max_delay, self.base_delay * (self.multiplier**attempt))
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return max(0.0, delay)

    def should_retry(self, error: str, state: RetryState) -> bool:
        if self.max_attempts is not None and state.attempts >= self.max_attempts:
            return False
        if self.max_elapsed is not None and state.elapsed >= self.max_elapsed:
            return False
        state.begin()
        delay = self.delay_for(state.attempts)
        if not state.quiet:
            LOG.warning(
                "db connection down (%s), retry %d in %.2f seconds",
                error,
                state.attempts + 1,
                delay,
                extra={"connection": state.description},
            )
        state.attempts += 1
        self._sleep(delay)
        return True


def is_retryable_connect_error(exc: BaseException) -> bool:
    """True when a failed connect attempt looks transient."""

    if getattr(exc, "sqlstate", None) in CONNECT_RETRY_SQLSTATES:
        return True
    # Socket level failures (refused, unreachable, missing unix socket, the
    # combined "Multiple exceptions" of a dual-stack host); TLS setup errors
    # do not clear up on their own.
    if isinstance(exc, OSError) and not isinstance(exc, ssl.SSLError):
        return True
    return _matches_any(str(exc), CONNECT_RETRY_PATTERNS)


def is_retryable_execute_error(exc: BaseException) -> bool:
    """True when a failed execute looks like a dropped or restarting server."""

    if getattr(exc, "sqlstate", None) in EXECUTE_RETRY_SQLSTATES:
        return True
    if isinstance(exc, (ConnectionResetError, BrokenPipeError)):
        return True
    return _matches_any(str(exc), EXECUTE_RETRY_PATTERNS)


def _matches_any(message: str, patterns: Iterable[str]) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in patterns)


__all__ = [
    "CONNECT_RETRY_PATTERNS",
    "DEFAULT_RETRY_INTERVAL",
    "EXECUTE_RETRY_PATTERNS",
    "ExponentialBackoffRetryPolicy",
    "FixedIntervalRetryPolicy",
    "RetryPolicy",
    "RetryState",
    "is_retryable_connect_error",
    "is_retryable_execute_error",
]
