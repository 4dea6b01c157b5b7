"""
Tests for precision scheduler and backoff policy (camprush/common/scheduler.py)
"""
import pytest
import asyncio
import time
from datetime import timedelta

import pytz

from camprush.common.models import BarrierType
from camprush.common.scheduler import PrecisionScheduler, RateLimiter, BackoffPolicy


class TestPrecisionScheduler:
    def test_now_is_in_configured_timezone(self):
        scheduler = PrecisionScheduler("America/Los_Angeles")
        assert str(scheduler.now().tzinfo) == "America/Los_Angeles"

    def test_now_with_utc(self):
        assert PrecisionScheduler("UTC").now().tzinfo == pytz.UTC

    @pytest.mark.asyncio
    async def test_wait_until_past_time_returns_immediately(self):
        scheduler = PrecisionScheduler("UTC")
        reached = await scheduler.wait_until(scheduler.now() - timedelta(seconds=1))
        assert reached is True

    @pytest.mark.asyncio
    async def test_wait_until_future_time(self):
        scheduler = PrecisionScheduler("UTC")
        target = scheduler.now() + timedelta(milliseconds=50)
        start = time.monotonic()
        reached = await scheduler.wait_until(target)
        assert reached is True
        assert time.monotonic() - start >= 0.045

    @pytest.mark.asyncio
    async def test_wait_until_lands_close_to_target(self):
        scheduler = PrecisionScheduler("UTC")
        target = scheduler.now() + timedelta(milliseconds=200)
        await scheduler.wait_until(target)
        late = (scheduler.now() - target).total_seconds()
        assert 0 <= late < 0.02

    @pytest.mark.asyncio
    async def test_wait_until_can_be_cancelled(self):
        scheduler = PrecisionScheduler("UTC")
        target = scheduler.now() + timedelta(seconds=10)

        async def cancel_after_delay():
            await asyncio.sleep(0.05)
            scheduler.cancel()

        asyncio.create_task(cancel_after_delay())
        assert await scheduler.wait_until(target) is False

    @pytest.mark.asyncio
    async def test_wait_until_with_early_ms(self):
        scheduler = PrecisionScheduler("UTC")
        target = scheduler.now() + timedelta(milliseconds=100)
        start = time.monotonic()
        await scheduler.wait_until(target, early_ms=50)
        assert 0.03 <= time.monotonic() - start <= 0.09

    def test_format_countdown_now_for_past_time(self):
        scheduler = PrecisionScheduler("UTC")
        assert scheduler.format_countdown(scheduler.now() - timedelta(seconds=5)) == "NOW!"

    def test_format_countdown_hours(self):
        scheduler = PrecisionScheduler("UTC")
        countdown = scheduler.format_countdown(scheduler.now() + timedelta(hours=2, minutes=15, seconds=30))
        assert countdown.startswith("2h")


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_acquire_immediate_when_tokens_available(self):
        limiter = RateLimiter(requests_per_second=10.0)
        start = time.monotonic()
        await limiter.acquire()
        assert time.monotonic() - start < 0.1

    @pytest.mark.asyncio
    async def test_acquire_waits_when_no_tokens(self):
        limiter = RateLimiter(requests_per_second=2.0)
        await limiter.acquire()
        await limiter.acquire()

        start = time.monotonic()
        await limiter.acquire()
        assert time.monotonic() - start >= 0.3

    @pytest.mark.asyncio
    async def test_context_manager_acquire(self):
        async with RateLimiter(requests_per_second=10.0):
            pass


class TestBackoffPolicy:
    def test_delay_doubles_per_attempt(self):
        policy = BackoffPolicy()
        assert [policy.delay_for(n, 1000) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_delay_is_capped(self):
        policy = BackoffPolicy(max_delay_ms=5000)
        assert policy.delay_for(10, 1000) == 5000
        assert policy.delay_for(10_000, 1000) == 5000

    def test_delay_is_monotonic_up_to_cap(self):
        policy = BackoffPolicy(max_delay_ms=60000)
        delays = [
            policy.decide(n, BarrierType.QUEUE, 100, 250, auto_resumable=True).delay_ms
            for n in range(1, 40)
        ]
        assert delays == sorted(delays)
        assert max(delays) == 60000

    def test_retries_transient_failure(self):
        decision = BackoffPolicy().decide(1, BarrierType.UNKNOWN_ERROR, 4, 1000, transient=True)
        assert decision.retry is True
        assert decision.delay_ms == 1000

    def test_stops_when_attempts_exhausted(self):
        decision = BackoffPolicy().decide(4, BarrierType.QUEUE, 4, 1000, auto_resumable=True)
        assert decision.retry is False

    def test_does_not_retry_non_resumable_failure(self):
        decision = BackoffPolicy().decide(1, BarrierType.PAYMENT_REQUIRED, 4, 1000)
        assert decision.retry is False

    def test_captcha_never_retries_even_if_resumable(self):
        decision = BackoffPolicy().decide(
            1, BarrierType.CAPTCHA, 4, 1000, auto_resumable=True, transient=True
        )
        assert decision.retry is False
        assert "CAPTCHA" in decision.reason

    @pytest.mark.asyncio
    async def test_wait_sleeps_for_delay(self):
        policy = BackoffPolicy()
        decision = policy.decide(1, BarrierType.QUEUE, 4, 50, auto_resumable=True)
        start = time.monotonic()
        await policy.wait(decision)
        assert time.monotonic() - start >= 0.045
