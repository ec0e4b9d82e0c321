"""Rotating pool of model API keys with failure counting and cooldown."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from payroll_recon.config import settings

logger = logging.getLogger(__name__)

MAX_FAILURES = 5
RATE_LIMIT_COOLDOWN = 60.0  # seconds


@dataclass
class ApiKeyState:
    """Usage state of one API key. Owned by KeyPool."""

    key: str
    last_used_at: float = 0.0
    failure_count: int = 0
    cooldown_until: float = 0.0


class KeyPool:
    """
    Round-robin API key pool shared by every extraction worker.

    `next()` skips keys that are cooling down or at the failure threshold.
    When no key is usable the whole pool is reset and rotation restarts at
    index 0, so callers always get a key. All state changes happen under a
    lock.
    """

    def __init__(
        self,
        keys: list[str],
        *,
        max_failures: int = MAX_FAILURES,
        cooldown_seconds: float = RATE_LIMIT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not keys:
            raise ValueError("KeyPool needs at least one key")
        self._states = [ApiKeyState(key=key) for key in keys]
        self._max_failures = max_failures
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._index = 0
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, config=None, clock: Callable[[], float] = time.monotonic) -> "KeyPool":
        """Build a pool from configured keys. Providers without keys get one empty key."""
        config = config or settings
        return cls(
            config.api_keys or [""],
            max_failures=config.max_key_failures,
            cooldown_seconds=config.rate_limit_cooldown_seconds,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._states)

    @property
    def current_index(self) -> int:
        return self._index

    def _usable(self, state: ApiKeyState, now: float) -> bool:
        if state.cooldown_until > now:
            return False
        return state.failure_count < self._max_failures

    def next(self) -> str:
        """Return the next usable key in rotation order."""
        with self._lock:
            now = self._clock()
            count = len(self._states)
            for offset in range(count):
                index = (self._index + offset) % count
                state = self._states[index]

                cooled_down = 0 < state.cooldown_until <= now
                idle = now - state.last_used_at >= self._cooldown
                if state.failure_count and state.cooldown_until <= now and (cooled_down or idle):
                    logger.debug("Key %d past cooldown, clearing %d failures", index, state.failure_count)
                    state.failure_count = 0
                    state.cooldown_until = 0.0

                if self._usable(state, now):
                    state.last_used_at = now
                    self._index = index
                    return state.key

            logger.warning("All %d API keys exhausted, resetting pool", count)
            for state in self._states:
                state.failure_count = 0
                state.cooldown_until = 0.0
            self._index = 0
            self._states[0].last_used_at = now
            return self._states[0].key

    def report_failure(self, key: str) -> None:
        """Count a failed call; at the threshold the key enters cooldown."""
        with self._lock:
            now = self._clock()
            for index, state in enumerate(self._states):
                if state.key != key:
                    continue
                state.failure_count += 1
                state.last_used_at = now
                if state.failure_count >= self._max_failures:
                    state.cooldown_until = now + self._cooldown
                    logger.warning(
                        "Key %d hit %d failures, cooling down for %ss", index, state.failure_count, self._cooldown
                    )
                return

    def report_success(self, key: str) -> None:
        """Clear the failure count of a key that just worked."""
        with self._lock:
            for state in self._states:
                if state.key == key:
                    state.failure_count = 0
                    state.last_used_at = self._clock()
                    return

    def rotate(self) -> None:
        """Advance rotation so the next call starts from the following key."""
        with self._lock:
            self._index = (self._index + 1) % len(self._states)

    def snapshot(self) -> list[ApiKeyState]:
        """Copies of every key's state, for diagnostics."""
        with self._lock:
            return [replace(state) for state in self._states]
