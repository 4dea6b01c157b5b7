"""
Tests for browser automation helpers (camprush/browser/automation.py)
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from camprush.browser.automation import (
    BrowserAutomationExecutor,
    parse_confirmation,
    parse_queue_position,
)
from camprush.common.config import BrowserConfig


class TestParseQueuePosition:
    def test_people_ahead(self):
        assert parse_queue_position("There are 42 people ahead of you") == 42

    def test_position_in_line(self):
        assert parse_queue_position("Your position in line: 1,204") == 1204

    def test_no_position(self):
        assert parse_queue_position("Welcome to summer camp registration") is None


class TestParseConfirmation:
    pattern = BrowserConfig().confirmation_pattern

    def test_confirmation_number(self):
        text = "Thank you! Confirmation #: CR-2024-88123"
        assert parse_confirmation(text, self.pattern) == "CR-2024-88123"

    def test_order_id(self):
        assert parse_confirmation("Order ID 7781234", self.pattern) == "7781234"

    def test_words_are_not_confirmations(self):
        assert parse_confirmation("Registration complete. Registration opens soon", self.pattern) is None


def page_with(present):
    """Mock page whose query_selector finds only the given selectors"""
    page = MagicMock()

    async def query_selector(selector):
        return MagicMock() if selector in present else None

    page.query_selector = AsyncMock(side_effect=query_selector)
    return page


class TestPageInspection:
    @pytest.mark.asyncio
    async def test_detect_markers(self):
        executor = BrowserAutomationExecutor(BrowserConfig())
        executor.page = page_with({'.g-recaptcha', 'input[type="password"]'})

        assert await executor.detect_markers() == ["recaptcha", "login_form"]

    @pytest.mark.asyncio
    async def test_clean_page_has_no_markers(self):
        executor = BrowserAutomationExecutor(BrowserConfig())
        executor.page = page_with(set())
        assert await executor.detect_markers() == []

    @pytest.mark.asyncio
    async def test_click_submit_skips_disabled_controls(self):
        config = BrowserConfig(submit_selectors=["#disabled", "#enabled"])
        executor = BrowserAutomationExecutor(config)

        disabled = MagicMock()
        disabled.get_attribute = AsyncMock(return_value="")
        disabled.click = AsyncMock()
        enabled = MagicMock()
        enabled.get_attribute = AsyncMock(return_value=None)
        enabled.click = AsyncMock()

        buttons = {"#disabled": disabled, "#enabled": enabled}
        executor.page = MagicMock()
        executor.page.query_selector = AsyncMock(side_effect=lambda s: buttons.get(s))

        assert await executor._click_submit() is True
        disabled.click.assert_not_called()
        enabled.click.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_click_submit_without_controls(self):
        executor = BrowserAutomationExecutor(BrowserConfig(submit_selectors=["#missing"]))
        executor.page = page_with(set())
        assert await executor._click_submit() is False
