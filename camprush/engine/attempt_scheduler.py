"""
Attempt scheduler

Arms one asyncio task per plan and walks it through
idle -> armed -> preparing -> firing. Exact plans fire at T0 corrected for
clock drift; polling plans watch the detection URL until it reports open.
A published plan whose page announces its open time switches to exact
firing at that time.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..common.config import ScheduleConfig
from ..common.errors import DetectionTimeout
from ..common.models import OpenStrategy, RegistrationPlan, SchedulerState
from ..common.scheduler import PrecisionScheduler, RateLimiter
from .detection import OpenDetector

logger = logging.getLogger(__name__)

# Published times at or below this confidence keep the plan polling
MIN_PUBLISHED_CONFIDENCE = 0.5

FireFn = Callable[[RegistrationPlan], Awaitable[Any]]
PrepareFn = Callable[[RegistrationPlan], Awaitable[Optional[float]]]


class PlanTimer:
    """Bookkeeping for one armed plan"""

    def __init__(self, plan: RegistrationPlan, lead_time_s: float):
        self.plan = plan
        self.lead_time_s = lead_time_s
        self.state = SchedulerState.IDLE
        self.history: List[Tuple[SchedulerState, datetime]] = [(SchedulerState.IDLE, datetime.now().astimezone())]
        self.task: Optional[asyncio.Task] = None
        self.drift_ms = 0.0
        self.fired_at: Optional[datetime] = None
        self.polls = 0
        self.published_open_at: Optional[datetime] = None


class AttemptScheduler:
    """
    Per-plan timers for registration attempts.

    Only one timer is armed per plan; arming again replaces the old one
    under the plan's lock, and cancel() returns only after the timer task
    has been torn down, so nothing fires after it.
    """

    def __init__(self, config: ScheduleConfig, detector: Optional[OpenDetector] = None):
        self.config = config
        self.detector = detector or OpenDetector(
            rate_limiter=RateLimiter(config.max_polls_per_second)
        )
        self._timers: Dict[str, PlanTimer] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ========================================
    # Read-only state
    # ========================================

    def lead_time_for(self, plan: RegistrationPlan) -> float:
        if plan.is_exact:
            return self.config.exact_lead_time_s
        return self.config.polling_lead_time_s

    def state(self, plan_id: str) -> SchedulerState:
        timer = self._timers.get(plan_id)
        return timer.state if timer else SchedulerState.IDLE

    def history(self, plan_id: str) -> List[SchedulerState]:
        timer = self._timers.get(plan_id)
        return [state for state, _ in timer.history] if timer else []

    def timer(self, plan_id: str) -> Optional[PlanTimer]:
        return self._timers.get(plan_id)

    def is_armed(self, plan_id: str) -> bool:
        timer = self._timers.get(plan_id)
        return bool(timer and timer.task and not timer.task.done())

    # ========================================
    # Arm / cancel
    # ========================================

    async def arm(
        self,
        plan: RegistrationPlan,
        fire: FireFn,
        prepare: Optional[PrepareFn] = None,
        lead_time_s: Optional[float] = None,
    ) -> asyncio.Task:
        """Arm a timer for the plan, replacing any existing one"""
        lead = self.lead_time_for(plan) if lead_time_s is None else lead_time_s

        async with self._locks[plan.id]:
            if await self._teardown(plan.id):
                logger.info(f"Re-arming plan {plan.id}; previous timer cancelled")

            timer = PlanTimer(plan, lead)
            self._timers[plan.id] = timer
            timer.task = asyncio.create_task(
                self._run(timer, fire, prepare),
                name=f"camprush-plan-{plan.id}",
            )
            return timer.task

    async def cancel(self, plan_id: str) -> bool:
        """Tear down the plan's timer. Returns True if a live timer was cancelled."""
        async with self._locks[plan_id]:
            return await self._teardown(plan_id)

    async def _teardown(self, plan_id: str) -> bool:
        timer = self._timers.get(plan_id)
        if not timer or not timer.task or timer.task.done():
            return False

        timer.task.cancel()
        if timer.task is not asyncio.current_task():
            try:
                await timer.task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Timer for plan {plan_id} ended with {e!r} during cancel")

        self._set_state(timer, SchedulerState.IDLE)
        logger.info(f"Timer for plan {plan_id} cancelled")
        return True

    async def wait(self, plan_id: str) -> Any:
        """Wait for the plan's timer task and return what fire() returned"""
        timer = self._timers.get(plan_id)
        if not timer or not timer.task:
            return None
        return await timer.task

    def forget(self, plan_id: str):
        """Drop an idle plan's timer and lock"""
        if self.is_armed(plan_id):
            return
        self._timers.pop(plan_id, None)
        lock = self._locks.get(plan_id)
        if lock is not None and not lock.locked():
            del self._locks[plan_id]

    async def close(self):
        for plan_id in list(self._timers):
            await self.cancel(plan_id)
        await self.detector.aclose()

    # ========================================
    # Timer task
    # ========================================

    def _set_state(self, timer: PlanTimer, state: SchedulerState):
        if timer.state == state:
            return
        logger.debug(f"Plan {timer.plan.id}: {timer.state.value} -> {state.value}")
        timer.state = state
        timer.history.append((state, datetime.now().astimezone()))

    async def _run(self, timer: PlanTimer, fire: FireFn, prepare: Optional[PrepareFn]) -> Any:
        plan = timer.plan
        clock = PrecisionScheduler(plan.timezone)

        try:
            self._set_state(timer, SchedulerState.ARMED)
            if plan.open_at is not None:
                wake_at = plan.open_at - timedelta(seconds=timer.lead_time_s)
                logger.info(
                    f"Plan {plan.id} armed: opens {plan.open_at.isoformat()}, "
                    f"preparing at {wake_at.isoformat()} ({clock.format_countdown(wake_at)})"
                )
                await clock.wait_until(wake_at)

            self._set_state(timer, SchedulerState.PREPARING)
            await self._prepare(timer, prepare)

            if plan.is_exact:
                # A provider clock running ahead means its T0 arrives earlier on ours
                fire_at = plan.open_at - timedelta(milliseconds=timer.drift_ms)
                await clock.wait_until(fire_at, early_ms=self.config.early_start_ms)
            else:
                await self._poll_until_open(timer, clock, prepare)

            self._set_state(timer, SchedulerState.FIRING)
            timer.fired_at = clock.now()
            logger.info(f"🚀 Firing plan {plan.id} at {timer.fired_at.isoformat()}")
            return await fire(timer.plan)

        except DetectionTimeout as e:
            logger.error(str(e))
            raise
        finally:
            if self._timers.get(plan.id) is timer:
                self._set_state(timer, SchedulerState.IDLE)

    async def _prepare(self, timer: PlanTimer, prepare: Optional[PrepareFn]):
        if not prepare:
            return
        try:
            timer.drift_ms = await prepare(timer.plan) or 0.0
        except Exception as e:
            logger.warning(f"Preparation for plan {timer.plan.id} failed, continuing: {e}")

    async def _poll_until_open(
        self,
        timer: PlanTimer,
        clock: PrecisionScheduler,
        prepare: Optional[PrepareFn] = None,
    ):
        plan = timer.plan
        window = timedelta(seconds=self.config.polling_window_s)
        deadline = (plan.open_at + window) if plan.open_at is not None else clock.now() + window
        interval = self.config.poll_interval_ms / 1000
        watch_published = plan.open_strategy == OpenStrategy.PUBLISHED and plan.open_at is None

        logger.info(f"Polling {plan.detect_url} for plan {plan.id} until {deadline.isoformat()}")

        while True:
            timer.polls += 1
            result = await self.detector.probe(plan.detect_url, plan.timezone)
            if result.is_open:
                logger.info(f"Plan {plan.id}: registration open after {timer.polls} polls")
                return

            published = result.published
            if watch_published and published and published.confidence > MIN_PUBLISHED_CONFIDENCE:
                await self._wait_for_published(timer, clock, published.open_at, prepare)
                return

            if timer.polls >= self.config.max_polls or clock.now() >= deadline:
                raise DetectionTimeout(
                    f"Plan {plan.id}: registration never opened after {timer.polls} polls"
                )
            await asyncio.sleep(interval)

    async def _wait_for_published(
        self,
        timer: PlanTimer,
        clock: PrecisionScheduler,
        open_at: datetime,
        prepare: Optional[PrepareFn],
    ):
        """Switch a published plan from polling to firing at the time its page announced"""
        timer.published_open_at = open_at
        timer.plan = timer.plan.model_copy(update={"open_at": open_at})
        logger.info(
            f"Plan {timer.plan.id}: page publishes open time {open_at.isoformat()}, "
            f"switching to exact firing ({clock.format_countdown(open_at)})"
        )

        # Clock sync goes stale over a long wait; measure again one lead time out
        wake_at = open_at - timedelta(seconds=timer.lead_time_s)
        if clock.now() < wake_at:
            await clock.wait_until(wake_at)
            await self._prepare(timer, prepare)

        fire_at = open_at - timedelta(milliseconds=timer.drift_ms)
        await clock.wait_until(fire_at, early_ms=self.config.early_start_ms)
