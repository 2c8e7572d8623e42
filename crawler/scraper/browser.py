"""Stealth browser lifecycle for one execution."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from crawler.antibot.fingerprint import DeviceFingerprint
from crawler.antibot.stealth import AntiDetection

LOGGER = logging.getLogger(__name__)


class BrowserSession:
    """Async context manager owning playwright, browser, context and page.

    Example
    -------
    >>> async with BrowserSession(anti, headless=True) as session:
    ...     await session.page.goto(url)
    """

    def __init__(
        self,
        anti: AntiDetection,
        *,
        headless: bool = True,
        storage_state: Optional[Dict[str, Any]] = None,
        fingerprint: Optional[DeviceFingerprint] = None,
    ) -> None:
        self.anti = anti
        self.headless = headless
        self.storage_state = storage_state
        self.fingerprint = fingerprint
        self._playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    async def __aenter__(self) -> "BrowserSession":
        params = self.anti.launch_params(headless=self.headless, fingerprint=self.fingerprint)
        self._playwright = await async_playwright().start()
        try:
            self.browser = await self._playwright.chromium.launch(**params.launch)
            self.context = await self.anti.new_context(self.browser, params, storage_state=self.storage_state)
            self.page = await self.context.new_page()
        except Exception:
            await self.close()
            raise
        LOGGER.info(
            "Browser started (headless=%s, ua=%s)", self.headless, params.fingerprint.user_agent[:60]
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        for name, closer in (
            ("context", self.context.close if self.context else None),
            ("browser", self.browser.close if self.browser else None),
            ("playwright", self._playwright.stop if self._playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                LOGGER.debug("Error closing %s: %s", name, exc)
        self.context = None
        self.browser = None
        self._playwright = None
        self.page = None
