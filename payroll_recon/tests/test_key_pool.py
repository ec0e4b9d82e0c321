"""Tests for the API key pool."""

import pytest

from payroll_recon.config import Settings
from payroll_recon.services.key_pool import KeyPool


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pool(clock):
    return KeyPool(["key-a", "key-b", "key-c"], max_failures=5, cooldown_seconds=60, clock=clock)


class TestKeyPoolRotation:
    """Test key selection order."""

    def test_requires_keys(self):
        """An empty pool is a configuration error."""
        with pytest.raises(ValueError):
            KeyPool([])

    def test_sticks_with_current_key(self, pool):
        """Without failures the same key keeps being used."""
        assert pool.next() == "key-a"
        assert pool.next() == "key-a"
        assert pool.current_index == 0

    def test_rotate_advances_and_wraps(self, pool):
        """rotate() moves to the following key and wraps around."""
        pool.rotate()
        assert pool.next() == "key-b"
        pool.rotate()
        pool.rotate()
        assert pool.next() == "key-a"

    def test_len(self, pool):
        """Pool length is the number of keys."""
        assert len(pool) == 3


class TestKeyPoolFailures:
    """Test failure counting and cooldown."""

    def test_key_skipped_after_max_failures(self, pool, clock):
        """After five failures a key is skipped until its cooldown elapses."""
        for _ in range(5):
            pool.report_failure("key-a")

        assert pool.next() == "key-b"
        assert pool.next() == "key-b"

        state = pool.snapshot()[0]
        assert state.failure_count == 5
        assert state.cooldown_until == clock.now + 60

    def test_below_threshold_key_still_used(self, pool):
        """Fewer than five failures do not take a key out of rotation."""
        for _ in range(4):
            pool.report_failure("key-a")
        assert pool.next() == "key-a"

    def test_key_returns_after_cooldown(self, pool, clock):
        """Once the cooldown passes the key is usable again with a clean count."""
        for _ in range(5):
            pool.report_failure("key-a")
        assert pool.next() == "key-b"

        clock.advance(61)
        pool.rotate()
        pool.rotate()
        assert pool.next() == "key-a"
        assert pool.snapshot()[0].failure_count == 0

    def test_key_returns_exactly_at_cooldown_end(self, pool, clock):
        """At the instant the cooldown ends the key is back with a clean count."""
        for _ in range(5):
            pool.report_failure("key-a")
        cooldown_until = pool.snapshot()[0].cooldown_until
        assert pool.next() == "key-b"

        clock.now = cooldown_until
        pool.rotate()
        pool.rotate()
        assert pool.next() == "key-a"
        assert pool.snapshot()[0].failure_count == 0

    def test_all_keys_exhausted_resets_to_first(self, pool):
        """If every key is cooling down, the pool resets and returns index 0."""
        for key in ("key-a", "key-b", "key-c"):
            for _ in range(5):
                pool.report_failure(key)
        pool.rotate()

        assert pool.next() == "key-a"
        assert pool.current_index == 0
        assert all(state.failure_count == 0 for state in pool.snapshot())
        assert all(state.cooldown_until == 0.0 for state in pool.snapshot())

    def test_success_clears_failures(self, pool):
        """A successful call resets the key's failure count."""
        pool.report_failure("key-a")
        pool.report_failure("key-a")
        pool.report_success("key-a")
        assert pool.snapshot()[0].failure_count == 0

    def test_unknown_key_reports_are_ignored(self, pool):
        """Reports for keys outside the pool change nothing."""
        pool.report_failure("other")
        pool.report_success("other")
        assert all(state.failure_count == 0 for state in pool.snapshot())

    def test_snapshot_is_a_copy(self, pool):
        """Mutating a snapshot must not touch pool state."""
        pool.snapshot()[0].failure_count = 99
        assert pool.snapshot()[0].failure_count == 0


class TestKeyPoolFromSettings:
    """Test building a pool from configuration."""

    def test_reads_comma_separated_keys(self):
        """Gemini keys are split on commas in order."""
        config = Settings(llm_provider="gemini", gemini_api_keys="one, two,,three", max_key_failures=2)
        pool = KeyPool.from_settings(config)
        assert len(pool) == 3
        assert pool.next() == "one"

    def test_keyless_provider_gets_single_empty_key(self):
        """Providers without keys still get a usable pool."""
        pool = KeyPool.from_settings(Settings(llm_provider="ollama"))
        assert len(pool) == 1
        assert pool.next() == ""
