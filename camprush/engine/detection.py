"""
Open-window detection for polling strategies

A page counts as open only on a positive signal (open wording, a
registration form or a registration button) with no closed wording.
Closed pages that publish their open time let published plans switch to
exact-time firing.
"""
import re
import logging
from datetime import datetime
from typing import Optional

import httpx
import pytz
from dateutil import parser as date_parser

from ..common.models import DetectionResult, PublishedOpenTime
from ..common.scheduler import RateLimiter

logger = logging.getLogger(__name__)

OPEN_INDICATORS = (
    "register now",
    "register today",
    "registration open",
    "registration is open",
    "sign up now",
    "enroll now",
    "enroll today",
    "enrollment open",
    "register your child",
    "click here to register",
    "registration form",
    "submit registration",
    "apply now",
    "book now",
    "reserve now",
    "register for",
    "sign up for",
    "registration-open",
    'class="register-button"',
    "submit-registration",
)

# Closed wins over open: pages often say "registration opens soon - register now"
CLOSED_INDICATORS = (
    "registration closed",
    "registration is closed",
    "registration not open",
    "registration opens",
    "registration coming soon",
    "registration full",
    "registration begins",
    "registration starts",
    "registration-closed",
    "waitlist only",
    "sold out",
    "no longer accepting",
    "opens on",
    "opens at",
    "coming soon",
    "stay tuned",
)

FORM_KEYWORDS = ("registration", "enroll", "signup")

BUTTON_PATTERN = re.compile(
    r"<button[^>]*>[^<]*\b(?:register|enroll|sign up|apply|book|reserve)\b[^<]*</button>"
    r"|<input[^>]*value=\"[^\"]*\b(?:register|enroll|sign up|apply|book|reserve)\b[^\"]*\""
    r"|<a[^>]*>[^<]*\b(?:register|enroll|sign up|apply|book|reserve)\b[^<]*</a>",
    re.IGNORECASE,
)

_DATE = (
    r"(?:[a-z]+,?\s+)?"
    r"(?:[a-z]{3,9}\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}"
    r"|\d{1,2}/\d{1,2}/\d{4}"
    r"|\d{4}-\d{2}-\d{2})"
)
_TIME = r"\d{1,2}:\d{2}\s*(?:[ap]\.?m\.?)?|\d{1,2}\s*[ap]\.?m\.?"

OPEN_TIME_PATTERN = re.compile(
    r"\b(?:opens?|begins|starts)\b(?:\s+(?:on|at))?\s*:?\s*"
    rf"(?P<date>{_DATE})(?:\s*(?:at|@|,)?\s*(?P<time>{_TIME}))?",
    re.IGNORECASE,
)

# Date-only matches default to 9am and are reported but not trusted
DATE_ONLY_CONFIDENCE = 0.5
DATE_TIME_CONFIDENCE = 0.9


def page_is_open(status_code: int, html: str) -> bool:
    """Decide from a provider page whether registration is open"""
    if status_code != 200 or not html:
        return False

    text = html.lower()
    if any(indicator in text for indicator in CLOSED_INDICATORS):
        return False

    has_open_text = any(indicator in text for indicator in OPEN_INDICATORS)
    has_form = "<form" in text and any(word in text for word in FORM_KEYWORDS)
    has_button = BUTTON_PATTERN.search(html) is not None
    return has_open_text or has_form or has_button


def _page_text(html: str) -> str:
    text = re.sub(r"<[^>]+>", " ", html)
    return re.sub(r"\s+", " ", text)


def extract_open_time(
    html: str,
    timezone: str = "UTC",
    now: Optional[datetime] = None,
) -> Optional[PublishedOpenTime]:
    """
    Find a published open time such as "Registration opens March 1, 2030 at 9:00 AM".

    Only future times count. Times without a zone are read in the plan's
    timezone.
    """
    tz = pytz.timezone(timezone)
    now = now or datetime.now(tz)

    for match in OPEN_TIME_PATTERN.finditer(_page_text(html)):
        time_text = match.group("time")
        candidate = f"{match.group('date')} {time_text or ''}".replace(".", "").strip()
        try:
            parsed = date_parser.parse(candidate, fuzzy=True, default=datetime(2000, 1, 1, 9, 0))
        except (ValueError, OverflowError):
            logger.debug(f"Could not parse open time from {match.group(0)!r}")
            continue

        open_at = tz.localize(parsed) if parsed.tzinfo is None else parsed
        if open_at <= now:
            continue

        return PublishedOpenTime(
            open_at=open_at,
            confidence=DATE_TIME_CONFIDENCE if time_text else DATE_ONLY_CONFIDENCE,
            text=match.group(0).strip(),
        )

    return None


class OpenDetector:
    """Polls a provider page for the registration window opening"""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 5.0,
        user_agent: str = "CampRush-Prewarm/1.0",
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=True)
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.user_agent = user_agent

    async def probe(self, url: str, timezone: str = "UTC") -> DetectionResult:
        """
        Fetch the page once and report whether it is open.

        A closed page is also searched for a published open time. Errors
        count as closed.
        """
        if self.rate_limiter:
            await self.rate_limiter.acquire()

        try:
            response = await self.client.get(
                url,
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Open check for {url} failed: {e}")
            return DetectionResult(is_open=False)

        html = response.text
        is_open = page_is_open(response.status_code, html)
        published = None
        if not is_open and response.status_code == 200:
            published = extract_open_time(html, timezone)

        logger.debug(f"Open check {url}: status={response.status_code} open={is_open}")
        return DetectionResult(is_open=is_open, status_code=response.status_code, published=published)

    async def check(self, url: str) -> bool:
        """Return True when the page signals an open window"""
        return (await self.probe(url)).is_open

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()
