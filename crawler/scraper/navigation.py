"""Navigation to canonical URLs with ready-marker waits and bounded retry."""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional

from playwright.async_api import Page
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from crawler.antibot.retry import is_transient_error
from crawler.antibot.stealth import AntiDetection
from crawler.errors import BotChallengeError, NavigationError

LOGGER = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 45_000
ELEMENT_TIMEOUT_MS = 15_000


class NavigationHandler:
    """Drives one page to target URLs.

    A navigation only counts as done once ``ready_selector`` is attached,
    never after a fixed sleep.
    """

    def __init__(
        self,
        page: Page,
        anti: AntiDetection,
        *,
        navigation_timeout_ms: int = NAVIGATION_TIMEOUT_MS,
        element_timeout_ms: int = ELEMENT_TIMEOUT_MS,
        max_attempts: int = 3,
        request_delay_ms: int = 2000,
        simulate_mouse: bool = True,
    ) -> None:
        self.page = page
        self.anti = anti
        self.navigation_timeout_ms = navigation_timeout_ms
        self.element_timeout_ms = element_timeout_ms
        self.max_attempts = max_attempts
        self.request_delay_ms = request_delay_ms
        self.simulate_mouse = simulate_mouse
        self.requests_made = 0

    async def goto(self, url: str, ready_selector: Optional[str] = None) -> None:
        """Navigate to ``url`` and wait for ``ready_selector``.

        Raises
        ------
        BotChallengeError
            If the loaded page is an anti-bot interstitial
        NavigationError
            If every attempt timed out or failed
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception(is_transient_error),
                reraise=True,
            ):
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    if attempt_number > 1:
                        LOGGER.info("Retrying navigation to %s (attempt %d)", url, attempt_number)
                    self.requests_made += 1
                    await self.page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
                    if ready_selector:
                        await self.page.wait_for_selector(
                            ready_selector, state="attached", timeout=self.element_timeout_ms
                        )
        except Exception as exc:
            await self.check_challenge(url=url)
            raise NavigationError(f"Navigation to {url} failed after {self.max_attempts} attempt(s): {exc}") from exc

        await self.check_challenge(url=url)
        LOGGER.debug("Navigated to %s", url)

    async def check_challenge(self, page: Optional[Page] = None, url: Optional[str] = None) -> None:
        """Raise :class:`BotChallengeError` if ``page`` shows an anti-bot interstitial.

        Called after every load or click that may land on a new document.
        """
        page = page or self.page
        signature = await self.anti.detect_challenge(page)
        if signature:
            raise BotChallengeError(signature, url or page.url)

    async def wait_for_marker(self, selector: str, timeout_ms: Optional[int] = None) -> bool:
        """True once ``selector`` is visible, False on timeout."""
        try:
            await self.page.wait_for_selector(
                selector, state="visible", timeout=timeout_ms or self.element_timeout_ms
            )
            return True
        except Exception as exc:
            LOGGER.debug("Marker %s not visible: %s", selector, exc)
            return False

    async def pause(self) -> None:
        """Randomized inter-action delay around ``request_delay_ms``."""
        if self.simulate_mouse:
            await self.anti.humanize(self.page)
        if self.request_delay_ms <= 0:
            return
        base = self.request_delay_ms / 1000
        await asyncio.sleep(random.uniform(base * 0.5, base * 1.5))
