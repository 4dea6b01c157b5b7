"""
Tests for configuration management (camprush/common/config.py)
"""
import pytest
from datetime import datetime

import pytz

from camprush.common.config import (
    Config,
    PlanConfig,
    BrowserConfig,
    ScheduleConfig,
    NotificationsConfig,
    StorageConfig,
    WorkflowConfig,
    load_config,
)
from camprush.common.models import OpenStrategy


class TestPlanConfig:
    def test_required_fields(self):
        with pytest.raises(Exception):
            PlanConfig(user_id="parent-1")

    def test_open_datetime_localized(self):
        plan = PlanConfig(
            user_id="parent-1",
            session_id="week-1",
            open_at="2030-08-01 09:00:00",
            timezone="America/Los_Angeles",
        )
        expected = pytz.timezone("America/Los_Angeles").localize(datetime(2030, 8, 1, 9, 0, 0))
        assert plan.open_datetime == expected

    def test_open_datetime_none_without_open_at(self):
        plan = PlanConfig(
            user_id="parent-1",
            session_id="week-1",
            open_strategy=OpenStrategy.AUTO,
            detect_url="https://camp.example.com",
        )
        assert plan.open_datetime is None

    def test_to_plan(self):
        plan = PlanConfig(
            id="fixed-id",
            user_id="parent-1",
            session_id="week-1",
            open_at="2030-08-01T09:00:00-07:00",
            retry_attempts=2,
        ).to_plan()
        assert plan.id == "fixed-id"
        assert plan.is_exact
        assert plan.max_attempts == 3
        assert plan.open_at.utcoffset().total_seconds() == -7 * 3600

    def test_plan_id_is_stable_without_explicit_id(self):
        config = PlanConfig(user_id="parent-1", session_id="week-1", open_at="2030-08-01 09:00")
        first = config.to_plan()
        second = config.to_plan()

        assert first.id == second.id == "week-1--parent-1"
        assert config.plan_id == first.id

    def test_to_plan_validates_strategy(self):
        with pytest.raises(Exception):
            PlanConfig(user_id="parent-1", session_id="week-1", open_strategy="published").to_plan()


class TestSectionDefaults:
    def test_schedule_defaults(self):
        schedule = ScheduleConfig()
        assert schedule.exact_lead_time_s == 60
        assert schedule.polling_lead_time_s == 120
        assert schedule.poll_interval_ms == 750
        assert schedule.polling_window_s == 300

    def test_notifications_default_to_console_only(self):
        notifications = NotificationsConfig()
        assert notifications.console is True
        assert notifications.email.enabled is False
        assert notifications.sms.enabled is False
        assert notifications.webhook.enabled is False

    def test_browser_targets_registration_controls(self):
        selectors = BrowserConfig().submit_selectors
        assert 'button:has-text("Enroll")' in selectors
        assert not any("Cart" in s for s in selectors)

    def test_workflow_event_history_default(self):
        assert WorkflowConfig().event_history == 500

    def test_storage_defaults(self):
        assert StorageConfig().checkpoint_retention == 5


class TestConfig:
    def test_yaml_round_trip(self, tmp_path, config):
        path = tmp_path / "config.yaml"
        config.to_yaml(path)
        loaded = Config.from_yaml(path)
        assert loaded.plan.session_id == "week-1"
        assert loaded.schedule.poll_interval_ms == config.schedule.poll_interval_ms
        assert loaded.plan.open_datetime == config.plan.open_datetime

    def test_from_yaml_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "nope.yaml")

    def test_from_yaml_partial_sections(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "plan:\n"
            "  user_id: parent-1\n"
            "  session_id: week-1\n"
            "  open_at: '2030-08-01 09:00:00'\n"
            "workflow:\n"
            "  max_retries: 5\n"
        )
        cfg = Config.from_yaml(path)
        assert cfg.workflow.max_retries == 5
        assert cfg.workflow.base_delay_ms == 1000
        assert cfg.clock_sync.time_header == "Date"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CAMPRUSH_USER_ID", "parent-9")
        monkeypatch.setenv("CAMPRUSH_SESSION_ID", "week-9")
        monkeypatch.setenv("CAMPRUSH_OPEN_STRATEGY", "auto")
        monkeypatch.setenv("CAMPRUSH_DETECT_URL", "https://camp.example.com")
        cfg = Config.from_env()
        assert cfg.plan.user_id == "parent-9"
        assert cfg.plan.open_strategy == OpenStrategy.AUTO

    def test_load_config_explicit_path(self, tmp_path, config):
        path = tmp_path / "config.yaml"
        config.to_yaml(path)
        assert load_config(str(path)).plan.user_id == "parent-1"

    def test_load_config_without_file_or_env(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.delenv("CAMPRUSH_USER_ID", raising=False)
        with pytest.raises(RuntimeError):
            load_config()
