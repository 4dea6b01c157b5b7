"""
Browser automation executor

Drives a provider's registration page through a real Chromium browser with
Playwright. Provider-specific scripting is out of scope; this executor opens
the registration URL, clicks the first usable submit control and reports what
the page shows afterwards. Barriers are reported as markers and never solved.
"""
import asyncio
import logging
import re
from typing import List, Optional

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    Response,
    TimeoutError as PlaywrightTimeout,
)

from ..common.config import BrowserConfig
from ..common.interfaces import AutomationExecutor
from ..common.models import AutomationResult, RegistrationPlan

logger = logging.getLogger(__name__)

# Selectors that reveal a barrier on the current page, by marker name
MARKER_SELECTORS = {
    "recaptcha": ['iframe[src*="recaptcha"]', '.g-recaptcha'],
    "hcaptcha": ['iframe[src*="hcaptcha"]', '.h-captcha'],
    "turnstile": ['iframe[src*="challenges.cloudflare.com"]', '.cf-turnstile'],
    "captcha": ['#captcha', '[data-callback="onCaptchaSuccess"]'],
    "login_form": ['form[action*="login"]', 'input[type="password"]'],
    "payment_form": [
        'input[name*="card"]',
        'input[autocomplete="cc-number"]',
        'iframe[src*="stripe"]',
    ],
    "waiting_room": ['#queue-it_log', '[data-queueit]', 'iframe[src*="queue-it"]'],
    "error_message": ['.error-message', '.alert-danger'],
}

QUEUE_POSITION_PATTERNS = (
    re.compile(r"(\d[\d,]*)\s+(?:people|users|visitors)?\s*ahead of you", re.IGNORECASE),
    re.compile(r"(?:position|place|number) in (?:line|queue)\D{0,10}(\d[\d,]*)", re.IGNORECASE),
)


def parse_queue_position(text: str) -> Optional[int]:
    """Pull a waiting-room position out of page text"""
    for pattern in QUEUE_POSITION_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1).replace(",", ""))
    return None


def parse_confirmation(text: str, pattern: str) -> Optional[str]:
    match = re.search(pattern, text, re.IGNORECASE)
    return match.group(1) if match else None


class BrowserAutomationExecutor(AutomationExecutor):
    """
    Playwright implementation of the automation executor.

    The browser is started lazily and reused across attempts, so the
    pre-connect during lead time leaves a warm page for the T0 submit.
    """

    def __init__(self, config: BrowserConfig):
        self.config = config
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._last_status: Optional[int] = None
        self._start_lock = asyncio.Lock()

    async def start(self):
        """Start the browser"""
        async with self._start_lock:
            if self.page is not None:
                return

            logger.info("Starting browser...")
            self.playwright = await async_playwright().start()
            self.browser = await self.playwright.chromium.launch(
                headless=self.config.headless,
                slow_mo=self.config.slow_mo,
            )
            self.context = await self.browser.new_context(
                user_agent=self.config.user_agent,
                viewport={"width": 1920, "height": 1080},
                locale="en-US",
            )
            self.page = await self.context.new_page()
            self.page.set_default_timeout(self.config.navigation_timeout_ms)
            self.page.on("response", self._on_response)
            logger.info("Browser started")

    async def stop(self):
        """Stop the browser"""
        if self.context:
            await self.context.close()
        if self.browser:
            await self.browser.close()
        if self.playwright:
            await self.playwright.stop()
        self.page = self.context = self.browser = self.playwright = None
        logger.info("Browser stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *args):
        await self.stop()

    def _on_response(self, response: Response):
        if response.request.is_navigation_request() and response.frame == self.page.main_frame:
            self._last_status = response.status

    # ========================================
    # AutomationExecutor
    # ========================================

    async def preconnect(self, plan: RegistrationPlan) -> bool:
        """Open the registration page ahead of T0"""
        try:
            await self.start()
            await self.page.goto(plan.submit_url, wait_until="domcontentloaded")
            logger.info(f"Pre-connected to {plan.submit_url}")
            return True
        except (PlaywrightTimeout, PlaywrightError) as e:
            logger.warning(f"Pre-connect to {plan.submit_url} failed: {e}")
            return False

    async def submit(self, plan: RegistrationPlan, nonce: str) -> AutomationResult:
        """
        Submit the registration form.

        The nonce is sent as an Idempotency-Key header on every request the
        page makes from here on, so a provider that honors it can drop a
        duplicate of a submission that already went through.
        """
        await self.start()
        await self.context.set_extra_http_headers({"Idempotency-Key": nonce})

        try:
            # Reload so the page reflects the window opening
            await self.page.goto(plan.submit_url, wait_until="domcontentloaded")

            markers = await self.detect_markers()
            if not markers and await self._click_submit():
                await self.page.wait_for_load_state("networkidle")
                markers = await self.detect_markers()

            text = await self.page.inner_text("body")
        except PlaywrightTimeout as e:
            raise asyncio.TimeoutError(f"Browser timed out: {e}") from e

        success = await self._has_any(self.config.success_selectors)
        confirmation = parse_confirmation(text, self.config.confirmation_pattern)

        result = AutomationResult(
            http_status=self._last_status,
            detected_markers=markers,
            success_indicator=success or confirmation is not None,
            confirmation_id=confirmation,
            url=self.page.url,
            page_text=text[:5000],
            queue_position=parse_queue_position(text),
        )
        logger.info(
            f"Submit for plan {plan.id}: status={result.http_status} "
            f"markers={markers} success={result.success_indicator}"
        )
        return result

    # ========================================
    # Page inspection
    # ========================================

    async def detect_markers(self) -> List[str]:
        """Names of every barrier marker present on the page"""
        found = []
        for marker, selectors in MARKER_SELECTORS.items():
            if await self._has_any(selectors):
                found.append(marker)
        return found

    async def _has_any(self, selectors: List[str]) -> bool:
        for selector in selectors:
            try:
                if await self.page.query_selector(selector):
                    return True
            except PlaywrightError:
                continue
        return False

    async def _click_submit(self) -> bool:
        for selector in self.config.submit_selectors:
            try:
                button = await self.page.query_selector(selector)
            except PlaywrightError:
                continue
            if not button:
                continue
            if await button.get_attribute("disabled") is not None:
                logger.warning(f"Submit control {selector} is disabled")
                continue
            await button.click()
            return True

        logger.warning("No usable submit control found")
        return False
