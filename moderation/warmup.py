"""
Cold -> Loading -> Warm gate for the lite tier.

Only one load attempt runs at a time. The first caller to find the machine
cold performs the load in its own thread; everyone arriving while it is
loading waits on the same attempt future. A failed attempt reverts to cold
and starts a backoff window; after `max_failures` consecutive failures the
machine gives up for the life of the process.
"""
from __future__ import annotations
import enum
import logging
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import InitError, LiteTimeoutError, ModerationError

log = logging.getLogger(__name__)


class WarmupState(str, enum.Enum):
    COLD = "cold"
    LOADING = "loading"
    WARM = "warm"


class Deadline:
    def __init__(self, budget_s: float, clock: Callable[[], float] = time.monotonic):
        self.budget_s = budget_s
        self._clock = clock
        self.expires_at = clock() + budget_s

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def check(self, step: str) -> None:
        if self._clock() > self.expires_at:
            raise LiteTimeoutError(f"Lite warmup timeout ({self.budget_s:g}s) during {step}.", phase="warmup")


@dataclass(frozen=True)
class WarmupSnapshot:
    state: WarmupState
    last_error: Optional[str]
    failures: int
    retry_after: Optional[float]
    gave_up: bool


# loader(deadline, on_progress) -> loaded value
Loader = Callable[[Deadline, Optional[Callable[[dict], None]]], Any]


class WarmupStateMachine:
    def __init__(self, loader: Loader, *, timeout_s: float = 60.0, max_failures: int = 3,
                 backoff_base_s: float = 5.0, backoff_max_s: float = 300.0,
                 clock: Callable[[], float] = time.monotonic):
        self._loader = loader
        self.timeout_s = timeout_s
        self.max_failures = max_failures
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self._clock = clock
        self._cond = threading.Condition()
        self._state = WarmupState.COLD
        self._value = None
        self._attempt: Optional[Future] = None
        self._last_error: Optional[str] = None
        self._failures = 0
        self._retry_after: Optional[float] = None

    @property
    def state(self) -> WarmupState:
        with self._cond:
            return self._state

    @property
    def is_warm(self) -> bool:
        return self.state is WarmupState.WARM

    @property
    def last_error(self) -> Optional[str]:
        with self._cond:
            return self._last_error

    @property
    def gave_up(self) -> bool:
        with self._cond:
            return self._failures >= self.max_failures

    def snapshot(self) -> WarmupSnapshot:
        with self._cond:
            return WarmupSnapshot(self._state, self._last_error, self._failures,
                                  self._retry_after, self._failures >= self.max_failures)

    def can_attempt(self) -> bool:
        """True when a cold machine may start a new attempt right now."""
        with self._cond:
            return self._state is WarmupState.COLD and self._retry_blocker() is None

    def _retry_blocker(self) -> Optional[str]:
        if self._failures >= self.max_failures:
            return f"lite warmup gave up after {self._failures} failures: {self._last_error}"
        if self._retry_after is not None and self._clock() < self._retry_after:
            wait = self._retry_after - self._clock()
            return f"lite warmup backing off for {wait:.1f}s: {self._last_error}"
        return None

    def ensure_warm(self, on_progress: Optional[Callable[[dict], None]] = None,
                    timeout: Optional[float] = None):
        with self._cond:
            if self._state is WarmupState.WARM:
                return self._value
            if self._state is WarmupState.LOADING:
                attempt, owner = self._attempt, False
            else:
                blocker = self._retry_blocker()
                if blocker:
                    raise InitError(blocker)
                attempt = self._attempt = Future()
                self._state = WarmupState.LOADING
                owner = True
                log.info("lite warmup: cold -> loading")

        if not owner:
            try:
                return attempt.result(timeout=timeout if timeout is not None else self.timeout_s)
            except FutureTimeout:
                raise LiteTimeoutError(f"Lite warmup timeout ({self.timeout_s:g}s).", phase="warmup")
        return self._load(attempt, on_progress)

    def _load(self, attempt: Future, on_progress):
        deadline = Deadline(self.timeout_s, clock=self._clock)
        try:
            value = self._loader(deadline, on_progress)
            deadline.check("health check")
        except Exception as e:
            err = e if isinstance(e, ModerationError) else InitError(f"lite warmup failed: {e}")
            with self._cond:
                self._state = WarmupState.COLD
                self._value = None
                self._last_error = str(err)
                self._failures += 1
                delay = min(self.backoff_max_s, self.backoff_base_s * (2 ** (self._failures - 1)))
                self._retry_after = self._clock() + delay
                self._cond.notify_all()
            log.warning("lite warmup failed (%d/%d), loading -> cold: %s",
                        self._failures, self.max_failures, err)
            attempt.set_exception(err)
            if err is e:
                raise
            raise err from e

        with self._cond:
            self._state = WarmupState.WARM
            self._value = value
            self._last_error = None
            self._failures = 0
            self._retry_after = None
            self._cond.notify_all()
        log.info("lite warmup: loading -> warm")
        attempt.set_result(value)
        return value

    def demote(self, reason: str) -> bool:
        """Drop a warm session back to cold so the next attempt reloads it."""
        with self._cond:
            if self._state is not WarmupState.WARM:
                return False
            self._state = WarmupState.COLD
            self._value = None
            self._last_error = reason
            self._retry_after = None
        log.warning("lite session demoted to cold: %s", reason)
        return True

    def wait_until_settled(self, timeout: Optional[float] = None) -> WarmupState:
        """Block until no attempt is in flight; returns the resulting state."""
        with self._cond:
            self._cond.wait_for(lambda: self._state is not WarmupState.LOADING, timeout=timeout)
            return self._state
