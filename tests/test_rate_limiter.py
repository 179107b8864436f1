"""Unit tests for the rolling-window rate limiter."""
import pytest

from dexarb.infrastructure.rate_limiter import RateLimiter
from dexarb.infrastructure.error_handling import RateLimitExceeded


class TestRateLimiter:
    """Test rate limiter functionality."""

    @pytest.fixture
    def limiter(self, clock):
        """Create a limiter allowing 5 requests per second."""
        return RateLimiter(max_requests=5, time_window=1.0, name="test", clock=clock)

    def test_exactly_max_requests_per_window(self, limiter):
        """Test only max_requests acquisitions succeed within one window."""
        results = [limiter.try_acquire() for _ in range(6)]

        assert results == [True] * 5 + [False]

    def test_window_rolls(self, limiter, clock):
        """Test permits free up once the window has passed."""
        for _ in range(5):
            assert limiter.try_acquire()

        clock.advance(0.999)
        assert limiter.try_acquire() is False

        clock.advance(0.001)
        assert limiter.try_acquire() is True

    def test_rolling_not_fixed_window(self, limiter, clock):
        """Test old permits expire individually."""
        limiter.try_acquire()
        clock.advance(0.5)
        for _ in range(4):
            limiter.try_acquire()

        clock.advance(0.5)

        # only the first permit has expired
        assert limiter.remaining() == 1

    def test_remaining(self, limiter):
        """Test remaining permit count."""
        assert limiter.remaining() == 5
        limiter.try_acquire()
        limiter.try_acquire()
        assert limiter.remaining() == 3

    def test_time_until_available(self, limiter, clock):
        """Test wait estimate when saturated."""
        assert limiter.time_until_available() == 0.0

        for _ in range(5):
            limiter.try_acquire()
        clock.advance(0.25)

        assert limiter.time_until_available() == pytest.approx(0.75)

    def test_reset(self, limiter):
        """Test reset clears all permits."""
        for _ in range(5):
            limiter.try_acquire()

        limiter.reset()

        assert limiter.remaining() == 5

    def test_get_stats(self, limiter):
        """Test statistics."""
        limiter.try_acquire()

        stats = limiter.get_stats()

        assert stats['name'] == "test"
        assert stats['current_requests'] == 1
        assert stats['max_requests'] == 5
        assert stats['utilization'] == pytest.approx(0.2)

    def test_invalid_max_requests(self):
        """Test a non-positive limit is rejected."""
        with pytest.raises(ValueError):
            RateLimiter(max_requests=0)

    @pytest.mark.asyncio
    async def test_acquire_waits_for_window(self):
        """Test acquire blocks until the window rolls."""
        limiter = RateLimiter(max_requests=1, time_window=0.1)
        assert await limiter.acquire()

        assert await limiter.acquire(timeout=1.0, poll_interval=0.02) is True

    @pytest.mark.asyncio
    async def test_acquire_timeout(self):
        """Test acquire gives up after the timeout."""
        limiter = RateLimiter(max_requests=1, time_window=10.0)
        limiter.try_acquire()

        assert await limiter.acquire(timeout=0.05, poll_interval=0.01) is False

    @pytest.mark.asyncio
    async def test_acquire_timeout_raises(self):
        """Test acquire raises when asked to."""
        limiter = RateLimiter(max_requests=1, time_window=10.0)
        limiter.try_acquire()

        with pytest.raises(RateLimitExceeded):
            await limiter.acquire(timeout=0.05, poll_interval=0.01, raise_on_timeout=True)
