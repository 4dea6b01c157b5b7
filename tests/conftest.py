import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from camprush.common.config import Config, PlanConfig, ScheduleConfig, WorkflowConfig
from camprush.common.interfaces import AutomationExecutor
from camprush.common.models import (
    AutomationResult,
    NotificationResult,
    OpenStrategy,
    RegistrationPlan,
    utcnow,
)
from camprush.engine.store import InMemoryStore


class FakeAutomation(AutomationExecutor):
    """Automation executor that replays canned results"""

    def __init__(self, results=None, delay: float = 0.0):
        self.results = list(results or [])
        self.delay = delay
        self.calls = []
        self.preconnects = 0

    async def preconnect(self, plan):
        self.preconnects += 1
        return True

    async def submit(self, plan, nonce):
        self.calls.append((plan.id, nonce))
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if self.results else SUCCESS
        if isinstance(result, Exception):
            raise result
        return result


SUCCESS = AutomationResult(
    http_status=200,
    success_indicator=True,
    confirmation_id="CONF-12345",
    url="https://camp.example.com/register/done",
)

CAPTCHA = AutomationResult(
    http_status=200,
    detected_markers=["recaptcha"],
    url="https://camp.example.com/register",
)

QUEUE = AutomationResult(
    http_status=200,
    detected_markers=["waiting_room"],
    queue_position=42,
    url="https://camp.example.com/queue",
)


@pytest.fixture()
def plan():
    return RegistrationPlan(
        id="plan-1",
        user_id="parent-1",
        session_id="week-1",
        open_strategy=OpenStrategy.MANUAL,
        open_at=utcnow() + timedelta(hours=1),
        registration_url="https://camp.example.com/register",
        retry_attempts=3,
        retry_delay_ms=10,
    )


@pytest.fixture()
def polling_plan():
    return RegistrationPlan(
        id="plan-2",
        user_id="parent-1",
        session_id="week-2",
        open_strategy=OpenStrategy.PUBLISHED,
        detect_url="https://camp.example.com/programs",
    )


@pytest.fixture()
def config():
    return Config(
        plan=PlanConfig(
            user_id="parent-1",
            session_id="week-1",
            open_at="2030-08-01 09:00:00",
            registration_url="https://camp.example.com/register",
        ),
        schedule=ScheduleConfig(poll_interval_ms=10, max_polls_per_second=1000),
        workflow=WorkflowConfig(base_delay_ms=10),
    )


@pytest.fixture()
def store():
    return InMemoryStore()


@pytest.fixture()
def notifier():
    notifier = MagicMock()
    notifier.notify = AsyncMock(return_value=NotificationResult(delivered=True, channels=1))
    return notifier
