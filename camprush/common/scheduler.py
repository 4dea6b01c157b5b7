"""
Precision timing and backoff for the registration engine

Handles timing-critical operations with millisecond accuracy.
"""
import asyncio
import time
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
import pytz

from .models import BarrierType, RetryDecision

logger = logging.getLogger(__name__)


class PrecisionScheduler:
    """
    High-precision scheduler for timing-critical operations.

    Sleeps in shrinking chunks as the target approaches and busy-waits for
    the last few milliseconds.
    """

    def __init__(self, timezone: str = "UTC"):
        self.tz = pytz.timezone(timezone)
        self._cancel_event = asyncio.Event()

    def now(self) -> datetime:
        """Get current time in configured timezone"""
        return datetime.now(self.tz)

    def cancel(self):
        """Cancel any pending waits"""
        self._cancel_event.set()

    def localize(self, target: datetime) -> datetime:
        if target.tzinfo is None:
            return self.tz.localize(target)
        return target

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled first. Returns True if cancelled."""
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def wait_until(
        self,
        target: datetime,
        callback: Optional[Callable[[], None]] = None,
        early_ms: float = 0
    ) -> bool:
        """
        Wait until the target time with high precision.

        Args:
            target: Target datetime (naive values are localized)
            callback: Optional callback invoked on every coarse tick
            early_ms: Milliseconds before target to trigger (negative = after)

        Returns:
            True if reached target time, False if cancelled
        """
        self._cancel_event.clear()
        adjusted_target = self.localize(target) - timedelta(milliseconds=early_ms)

        logger.debug(f"Waiting until {adjusted_target.isoformat()}")

        while not self._cancel_event.is_set():
            remaining = (adjusted_target - datetime.now(self.tz)).total_seconds()

            if remaining <= 0:
                return True

            if callback:
                callback()

            if remaining > 60:
                chunk = 30
            elif remaining > 5:
                chunk = 1
            elif remaining > 0.5:
                chunk = 0.1
            elif remaining > 0.01:
                chunk = 0.001
            else:
                # Under 10ms: busy-wait for precision
                while (adjusted_target - datetime.now(self.tz)).total_seconds() > 0:
                    pass
                return True

            if await self._sleep(min(chunk, remaining - 0.005)):
                break

        logger.info("Wait cancelled")
        return False

    def time_until(self, target: datetime) -> timedelta:
        """Get timedelta until target"""
        return self.localize(target) - datetime.now(self.tz)

    def format_countdown(self, target: datetime) -> str:
        """Format remaining time as human-readable string"""
        total_seconds = int(self.time_until(target).total_seconds())

        if total_seconds < 0:
            return "NOW!"

        days = total_seconds // 86400
        hours = (total_seconds % 86400) // 3600
        minutes = (total_seconds % 3600) // 60
        seconds = total_seconds % 60

        parts = []
        if days > 0:
            parts.append(f"{days}d")
        if hours > 0:
            parts.append(f"{hours}h")
        if minutes > 0:
            parts.append(f"{minutes}m")
        parts.append(f"{seconds}s")

        return " ".join(parts)


class RateLimiter:
    """
    Token bucket shared by everything that polls a provider.
    """

    def __init__(self, requests_per_second: float = 2.0):
        self.rate = requests_per_second
        self.tokens = requests_per_second
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait until a request can be made"""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.tokens = min(self.rate, self.tokens + elapsed * self.rate)
            self.last_update = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.rate
                await asyncio.sleep(wait_time)
                self.tokens = 0
                self.last_update = time.monotonic()
            else:
                self.tokens -= 1

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, *args):
        pass


class BackoffPolicy:
    """
    Decides whether and when a failed step is retried.

    Delays grow as base * 2^(attempt - 1) and are capped at max_delay_ms.
    CAPTCHA barriers never retry on their own, whatever the caller claims.
    """

    def __init__(self, max_delay_ms: int = 60000):
        self.max_delay_ms = max_delay_ms

    def delay_for(self, attempt_number: int, base_delay_ms: int) -> int:
        exponent = max(attempt_number - 1, 0)
        # Cap the exponent so huge attempt numbers don't build giant ints
        delay = base_delay_ms * (2 ** min(exponent, 32))
        return int(min(delay, self.max_delay_ms))

    def decide(
        self,
        attempt_number: int,
        barrier: Optional[BarrierType],
        max_attempts: int,
        base_delay_ms: int,
        auto_resumable: bool = False,
        transient: bool = False,
    ) -> RetryDecision:
        if attempt_number >= max_attempts:
            return RetryDecision(retry=False, reason=f"{attempt_number}/{max_attempts} attempts used")

        if barrier == BarrierType.CAPTCHA:
            return RetryDecision(retry=False, reason="CAPTCHA needs a human")

        if not (auto_resumable or transient):
            return RetryDecision(retry=False, reason="Failure is not auto-resumable")

        return RetryDecision(
            retry=True,
            delay_ms=self.delay_for(attempt_number, base_delay_ms),
            reason="transient failure" if transient else "auto-resumable",
        )

    async def wait(self, decision: RetryDecision):
        """Sleep for the decided delay"""
        if decision.retry and decision.delay_ms > 0:
            await asyncio.sleep(decision.delay_ms / 1000)


async def countdown_display(
    target: datetime,
    scheduler: PrecisionScheduler,
    update_interval: float = 1.0
):
    """
    Display a countdown to the registration window.

    Useful for CLI feedback.
    """
    from rich.live import Live
    from rich.text import Text
    from rich.panel import Panel

    with Live(refresh_per_second=4) as live:
        while scheduler.time_until(target).total_seconds() > 0:
            countdown = scheduler.format_countdown(target)
            panel = Panel(
                Text(countdown, style="bold green", justify="center"),
                title="⏰ Registration Opens In",
                border_style="green"
            )
            live.update(panel)
            await asyncio.sleep(update_interval)
