"""
Tests for open-window detection (camprush/engine/detection.py)
"""
import pytest
import httpx
import pytz
from datetime import datetime

from camprush.engine.detection import OpenDetector, extract_open_time, page_is_open

PACIFIC = pytz.timezone("America/Los_Angeles")
NOW = PACIFIC.localize(datetime(2030, 2, 1, 12, 0))


class TestPageIsOpen:
    def test_open_indicator(self):
        assert page_is_open(200, "<h1>Registration is open!</h1><a>Register now</a>")

    def test_closed_indicator_wins(self):
        assert not page_is_open(200, "Registration opens soon. Register now to get notified")

    def test_sold_out(self):
        assert not page_is_open(200, "Week 1 - SOLD OUT")

    def test_page_without_signal_is_closed(self):
        assert not page_is_open(200, "<h1>Summer Camp 2030</h1><p>Details</p>")

    def test_registration_form_counts_as_open(self):
        assert page_is_open(200, '<form action="/enroll"><input name="child_name"></form>')

    def test_registration_button_counts_as_open(self):
        assert page_is_open(200, '<div><button class="btn">Register</button></div>')

    def test_unrelated_links_are_not_buttons(self):
        assert not page_is_open(200, '<a href="https://facebook.com/camp">Facebook</a>')

    def test_closed_wording_beats_button(self):
        assert not page_is_open(200, "<p>Stay tuned!</p><button>Register</button>")

    def test_non_200_is_closed(self):
        assert not page_is_open(503, "Register now")


class TestExtractOpenTime:
    def test_date_and_time(self):
        found = extract_open_time(
            "<p>Registration opens on Friday, March 1, 2030 at 9:00 AM.</p>",
            "America/Los_Angeles",
            now=NOW,
        )
        assert found.open_at == PACIFIC.localize(datetime(2030, 3, 1, 9, 0))
        assert found.confidence == 0.9
        assert found.text.startswith("opens on Friday")

    def test_iso_date(self):
        found = extract_open_time("Enrollment begins 2030-03-01 08:30", "America/Los_Angeles", now=NOW)
        assert found.open_at == PACIFIC.localize(datetime(2030, 3, 1, 8, 30))

    def test_numeric_date_with_short_time(self):
        found = extract_open_time("Registration opens 03/01/2030 9am", "America/Los_Angeles", now=NOW)
        assert found.open_at == PACIFIC.localize(datetime(2030, 3, 1, 9, 0))

    def test_date_only_has_low_confidence(self):
        found = extract_open_time("Registration opens March 1, 2030", "America/Los_Angeles", now=NOW)
        assert found.open_at == PACIFIC.localize(datetime(2030, 3, 1, 9, 0))
        assert found.confidence == 0.5

    def test_past_time_is_ignored(self):
        html = "Registration opens January 5, 2030 at 9:00 AM"
        assert extract_open_time(html, "America/Los_Angeles", now=NOW) is None

    def test_no_time_on_page(self):
        assert extract_open_time("<p>Details coming soon</p>", now=NOW) is None


class TestOpenDetector:
    @pytest.mark.asyncio
    async def test_check_open_page(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="Registration open - sign up now")
        ))
        assert await OpenDetector(client=client).check("https://camp.example.com") is True

    @pytest.mark.asyncio
    async def test_check_sends_user_agent(self):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers["User-Agent"]
            return httpx.Response(200, text="coming soon")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert await OpenDetector(client=client).check("https://camp.example.com") is False
        assert seen["ua"] == "CampRush-Prewarm/1.0"

    @pytest.mark.asyncio
    async def test_probe_reads_published_time(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<p>Registration opens on March 1, 2099 at 9:00 AM</p>")
        ))
        result = await OpenDetector(client=client).probe("https://camp.example.com", "America/New_York")

        assert result.is_open is False
        assert result.status_code == 200
        expected = pytz.timezone("America/New_York").localize(datetime(2099, 3, 1, 9, 0))
        assert result.published.open_at == expected

    @pytest.mark.asyncio
    async def test_network_error_counts_as_closed(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert await OpenDetector(client=client).check("https://camp.example.com") is False
