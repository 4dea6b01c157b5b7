"""
Tests for attempt scheduler (camprush/engine/attempt_scheduler.py)
"""
import pytest
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx

from camprush.common.config import ScheduleConfig
from camprush.common.errors import DetectionTimeout
from camprush.common.models import (
    DetectionResult,
    OpenStrategy,
    PublishedOpenTime,
    RegistrationPlan,
    SchedulerState,
    utcnow,
)
from camprush.engine.attempt_scheduler import AttemptScheduler
from camprush.engine.detection import OpenDetector


def exact_plan(seconds_ahead: float, plan_id: str = "plan-a") -> RegistrationPlan:
    return RegistrationPlan(
        id=plan_id,
        user_id="parent-1",
        session_id="week-1",
        open_strategy=OpenStrategy.MANUAL,
        open_at=utcnow() + timedelta(seconds=seconds_ahead),
    )


def fake_detector(answers):
    """Detector whose probe replays answers; plain bools become open/closed results"""
    detector = MagicMock()
    detector.probe = AsyncMock(side_effect=[
        answer if isinstance(answer, DetectionResult) else DetectionResult(is_open=answer)
        for answer in answers
    ])
    detector.aclose = AsyncMock()
    return detector


@pytest.fixture()
def schedule_config():
    return ScheduleConfig(poll_interval_ms=5, polling_window_s=5, max_polls=50)


class TestLeadTime:
    def test_defaults_per_strategy(self, schedule_config, polling_plan):
        scheduler = AttemptScheduler(schedule_config, detector=fake_detector([]))
        assert scheduler.lead_time_for(exact_plan(10)) == 60
        assert scheduler.lead_time_for(polling_plan) == 120


class TestExactStrategy:
    @pytest.mark.asyncio
    async def test_fires_within_50ms_of_target(self, schedule_config):
        scheduler = AttemptScheduler(schedule_config, detector=fake_detector([]))
        plan = exact_plan(2)
        fired = {}

        async def fire(p):
            fired["at"] = utcnow()
            return "fired"

        await scheduler.arm(plan, fire, lead_time_s=1)
        assert scheduler.state(plan.id) == SchedulerState.ARMED or scheduler.is_armed(plan.id)

        assert await scheduler.wait(plan.id) == "fired"
        offset = abs((fired["at"] - plan.open_at).total_seconds())
        assert offset < 0.05
        assert scheduler.history(plan.id) == [
            SchedulerState.IDLE,
            SchedulerState.ARMED,
            SchedulerState.PREPARING,
            SchedulerState.FIRING,
            SchedulerState.IDLE,
        ]

    @pytest.mark.asyncio
    async def test_prepare_runs_before_fire_and_drift_shifts_target(self, schedule_config):
        scheduler = AttemptScheduler(schedule_config, detector=fake_detector([]))
        plan = exact_plan(0.5)
        order = []

        async def prepare(p):
            order.append("prepare")
            return 200.0  # provider clock 200ms ahead

        async def fire(p):
            order.append("fire")
            return utcnow()

        await scheduler.arm(plan, fire, prepare=prepare, lead_time_s=0.4)
        fired_at = await scheduler.wait(plan.id)

        assert order == ["prepare", "fire"]
        early = (plan.open_at - fired_at).total_seconds()
        assert 0.15 <= early <= 0.25

    @pytest.mark.asyncio
    async def test_failed_prepare_does_not_block_fire(self, schedule_config):
        scheduler = AttemptScheduler(schedule_config, detector=fake_detector([]))
        plan = exact_plan(0.1)

        await scheduler.arm(
            plan,
            AsyncMock(return_value="ok"),
            prepare=AsyncMock(side_effect=RuntimeError("probe down")),
            lead_time_s=0.05,
        )
        assert await scheduler.wait(plan.id) == "ok"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_fire(self, schedule_config):
        scheduler = AttemptScheduler(schedule_config, detector=fake_detector([]))
        plan = exact_plan(0.3)
        fire = AsyncMock()

        await scheduler.arm(plan, fire, lead_time_s=0.1)
        await asyncio.sleep(0.05)
        assert await scheduler.cancel(plan.id) is True

        await asyncio.sleep(0.4)
        fire.assert_not_called()
        assert scheduler.state(plan.id) == SchedulerState.IDLE
        assert not scheduler.is_armed(plan.id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_plan(self, schedule_config):
        scheduler = AttemptScheduler(schedule_config, detector=fake_detector([]))
        assert await scheduler.cancel("nope") is False

    @pytest.mark.asyncio
    async def test_rearm_replaces_timer(self, schedule_config):
        scheduler = AttemptScheduler(schedule_config, detector=fake_detector([]))
        first = AsyncMock(return_value="first")
        second = AsyncMock(return_value="second")

        await scheduler.arm(exact_plan(0.3), first, lead_time_s=0.1)
        await scheduler.arm(exact_plan(0.2), second, lead_time_s=0.1)

        assert await scheduler.wait("plan-a") == "second"
        first.assert_not_called()
        second.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_arms_leave_one_timer(self, schedule_config):
        scheduler = AttemptScheduler(schedule_config, detector=fake_detector([]))
        fire = AsyncMock(return_value="ok")

        await asyncio.gather(*[
            scheduler.arm(exact_plan(0.2), fire, lead_time_s=0.1) for _ in range(10)
        ])
        await scheduler.wait("plan-a")
        await asyncio.sleep(0.1)
        assert fire.await_count == 1

    @pytest.mark.asyncio
    async def test_plans_run_independently(self, schedule_config):
        scheduler = AttemptScheduler(schedule_config, detector=fake_detector([]))
        fire = AsyncMock(side_effect=lambda p: p.id)

        await scheduler.arm(exact_plan(0.1, "a"), fire, lead_time_s=0.05)
        await scheduler.arm(exact_plan(0.15, "b"), fire, lead_time_s=0.05)
        await scheduler.cancel("a")

        assert await scheduler.wait("b") == "b"
        assert fire.await_count == 1


class TestPollingStrategy:
    @pytest.mark.asyncio
    async def test_fires_when_detector_reports_open(self, schedule_config, polling_plan):
        detector = fake_detector([False, False, True])
        scheduler = AttemptScheduler(schedule_config, detector=detector)

        await scheduler.arm(polling_plan, AsyncMock(return_value="fired"))
        assert await scheduler.wait(polling_plan.id) == "fired"
        assert detector.probe.await_count == 3
        assert scheduler.timer(polling_plan.id).polls == 3

    @pytest.mark.asyncio
    async def test_detection_timeout_after_max_polls(self, polling_plan):
        detector = fake_detector([False] * 10)
        scheduler = AttemptScheduler(
            ScheduleConfig(poll_interval_ms=1, max_polls=5), detector=detector
        )
        fire = AsyncMock()

        await scheduler.arm(polling_plan, fire)
        with pytest.raises(DetectionTimeout):
            await scheduler.wait(polling_plan.id)
        fire.assert_not_called()
        assert detector.probe.await_count == 5

    @pytest.mark.asyncio
    async def test_detection_timeout_after_window(self, polling_plan):
        detector = MagicMock()
        detector.probe = AsyncMock(return_value=DetectionResult(is_open=False))
        scheduler = AttemptScheduler(
            ScheduleConfig(poll_interval_ms=10, polling_window_s=0.05), detector=detector
        )

        await scheduler.arm(polling_plan, AsyncMock())
        with pytest.raises(DetectionTimeout):
            await scheduler.wait(polling_plan.id)

    @pytest.mark.asyncio
    async def test_page_without_open_signal_never_fires(self, polling_plan):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<h1>Summer Camp 2030</h1><p>Details</p>")
        ))
        scheduler = AttemptScheduler(
            ScheduleConfig(poll_interval_ms=1, max_polls=5), detector=OpenDetector(client=client)
        )
        plan = polling_plan.model_copy(update={"open_at": utcnow() + timedelta(seconds=60)})
        fire = AsyncMock()

        await scheduler.arm(plan, fire)
        with pytest.raises(DetectionTimeout):
            await scheduler.wait(plan.id)
        fire.assert_not_called()
        assert scheduler.timer(plan.id).polls == 5


def published_at(open_at, confidence=0.9):
    return DetectionResult(
        is_open=False,
        status_code=200,
        published=PublishedOpenTime(open_at=open_at, confidence=confidence),
    )


class TestPublishedOpenTime:
    @pytest.mark.asyncio
    async def test_switches_to_exact_firing(self, schedule_config, polling_plan):
        open_at = utcnow() + timedelta(milliseconds=300)
        detector = fake_detector([published_at(open_at)])
        scheduler = AttemptScheduler(schedule_config, detector=detector)
        prepare = AsyncMock(return_value=0.0)
        fired = {}

        async def fire(p):
            fired["at"] = utcnow()
            fired["plan"] = p
            return "fired"

        await scheduler.arm(polling_plan, fire, prepare=prepare, lead_time_s=0.1)
        assert await scheduler.wait(polling_plan.id) == "fired"

        assert detector.probe.await_count == 1
        assert abs((fired["at"] - open_at).total_seconds()) < 0.05
        assert fired["plan"].open_at == open_at
        assert scheduler.timer(polling_plan.id).published_open_at == open_at
        # measured once on arming and again one lead time before the published time
        assert prepare.await_count == 2

    @pytest.mark.asyncio
    async def test_low_confidence_time_keeps_polling(self, schedule_config, polling_plan):
        detector = fake_detector([published_at(utcnow() + timedelta(hours=1), confidence=0.5), True])
        scheduler = AttemptScheduler(schedule_config, detector=detector)

        await scheduler.arm(polling_plan, AsyncMock(return_value="fired"))
        assert await scheduler.wait(polling_plan.id) == "fired"
        assert detector.probe.await_count == 2
        assert scheduler.timer(polling_plan.id).published_open_at is None

    @pytest.mark.asyncio
    async def test_auto_plans_ignore_published_time(self, schedule_config, polling_plan):
        plan = polling_plan.model_copy(update={"open_strategy": OpenStrategy.AUTO})
        detector = fake_detector([published_at(utcnow() + timedelta(hours=1)), True])
        scheduler = AttemptScheduler(schedule_config, detector=detector)

        await scheduler.arm(plan, AsyncMock(return_value="fired"))
        assert await scheduler.wait(plan.id) == "fired"
        assert detector.probe.await_count == 2
