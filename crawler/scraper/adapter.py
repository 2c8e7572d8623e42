"""Site adapter interface shared by every supported site."""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from bs4 import BeautifulSoup
from playwright.async_api import BrowserContext, Page

from crawler.antibot.behavior import BehaviorConfig
from crawler.antibot.stealth import AntiDetection, SiteProfile
from crawler.models import CandidateRecord, ExtractedRecord, ScraperOptions, TaskDefinition

from .detail import DetailExtractor
from .login import Credentials, LoginConfig
from .navigation import NavigationHandler
from .results import ResultsPage, ResultsParser
from .search import SearchForm, SearchHandler
from .selectors import SelectorCatalog

LOGGER = logging.getLogger(__name__)


@dataclass
class ScrapeContext:
    """Everything one execution's phases share."""

    definition: TaskDefinition
    execution_id: str
    options: ScraperOptions
    page: Page
    browser_context: BrowserContext
    anti: AntiDetection
    navigation: NavigationHandler
    reporter: Any = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    detail_requests: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def requests_made(self) -> int:
        return self.navigation.requests_made + self.detail_requests

    async def new_page(self) -> Page:
        page = await self.browser_context.new_page()
        self.detail_requests += 1
        return page

    def warn(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        if self.reporter is not None:
            self.reporter.warn(message, **(context or {}))
        else:
            LOGGER.warning("[%s] %s", self.execution_id, message)


class SiteAdapter(ABC):
    """Site-specific half of a scrape.

    The orchestrator drives the generic flow; an adapter supplies the
    selectors, the login and search configuration, and detail parsing.
    Defaults cover table-style listings with a "next" control.
    """

    site_id: str = ""
    catalog: SelectorCatalog
    profile: SiteProfile = SiteProfile()
    default_start_url: str = ""

    def __init__(self) -> None:
        self.parser = ResultsParser(self.catalog)
        self.extractor = DetailExtractor(self.site_id, self.parse_detail, base_url=self.catalog.base_url)

    # -- configuration --------------------------------------------------

    def anti_detection(self, behavior: Optional[BehaviorConfig] = None) -> AntiDetection:
        return AntiDetection(self.profile, behavior)

    def login_config(self) -> Optional[LoginConfig]:
        """Login flow for the site, or None if browsing is anonymous."""
        return None

    def credentials(self, settings, definition: TaskDefinition) -> Optional[Credentials]:
        return None

    def search_form(self) -> Optional[SearchForm]:
        return None

    def start_url(self, definition: TaskDefinition) -> str:
        if definition.start_urls:
            return definition.start_urls[0]
        return self.default_start_url

    # -- phases ---------------------------------------------------------

    async def navigate(self, ctx: ScrapeContext) -> None:
        await ctx.navigation.goto(self.start_url(ctx.definition), self.catalog.results_ready)

    async def search(self, ctx: ScrapeContext) -> Dict[str, Any]:
        form = self.search_form()
        if form is None or not ctx.definition.search_params:
            return {}
        handler = SearchHandler(ctx.page, ctx.anti, form, ctx.navigation)
        return await handler.apply(ctx.definition.search_params)

    async def parse_results(self, ctx: ScrapeContext, page_index: int) -> ResultsPage:
        html = await ctx.page.content()
        return self.parser.parse(html, page_index)

    async def next_page(self, ctx: ScrapeContext, page_index: int) -> bool:
        """Advance the listing in place; False when there is no next page.

        Waits until the listing marker (info text, else first row link)
        changes so the next parse never re-reads the previous page.
        """
        button = None
        for selector in self.catalog.next_page:
            button = await ctx.page.query_selector(selector)
            if button is not None:
                break
        if button is None:
            return False
        classes = (await button.get_attribute("class")) or ""
        if "disabled" in classes or (await button.get_attribute("aria-disabled")) == "true":
            return False

        before = await self._listing_marker(ctx.page)
        await ctx.anti.humanize(ctx.page)
        await button.click()
        ctx.navigation.requests_made += 1

        changed = False
        deadline = asyncio.get_running_loop().time() + ctx.navigation.element_timeout_ms / 1000
        while asyncio.get_running_loop().time() < deadline:
            await asyncio.sleep(0.25)
            if await self._listing_marker(ctx.page) != before:
                changed = True
                break
        await ctx.navigation.check_challenge()
        if not changed:
            LOGGER.warning("%s: listing did not change after next-page click on page %d", self.site_id, page_index)
            return False
        await ctx.navigation.pause()
        return True

    async def _listing_marker(self, page: Page) -> Optional[str]:
        for selector in self.catalog.info_text:
            node = await page.query_selector(selector)
            if node is not None:
                return (await node.inner_text()).strip()
        rows = f"{self.catalog.results_container[0]} {self.catalog.result_row}"
        node = await page.query_selector(f"{rows} a[href]")
        return await node.get_attribute("href") if node is not None else None

    async def extract_detail(self, ctx: ScrapeContext, candidate: CandidateRecord, page: Page) -> ExtractedRecord:
        """Load ``candidate``'s detail page in ``page`` and build its record.

        Raises
        ------
        BotChallengeError
            If the detail URL served an anti-bot interstitial
        """
        await page.goto(candidate.detail_url, wait_until="domcontentloaded", timeout=ctx.navigation.navigation_timeout_ms)
        await ctx.navigation.check_challenge(page, candidate.detail_url)
        if self.catalog.detail_ready:
            await page.wait_for_selector(
                self.catalog.detail_ready, state="attached", timeout=ctx.navigation.element_timeout_ms
            )
        html = await page.content()
        record = self.extractor.extract(candidate, html, execution_id=ctx.execution_id, on_warning=ctx.warn)
        return self._with_defaults(ctx, record)

    def record_from_candidate(self, ctx: ScrapeContext, candidate: CandidateRecord) -> ExtractedRecord:
        record = self.extractor.build_record(
            candidate, self.candidate_fields(candidate), execution_id=ctx.execution_id, on_warning=ctx.warn
        )
        return self._with_defaults(ctx, record)

    def candidate_fields(self, candidate: CandidateRecord) -> Dict[str, Any]:
        """Record fields derivable from the listing row alone."""
        return {}

    @abstractmethod
    def parse_detail(self, soup: BeautifulSoup, candidate: CandidateRecord) -> Dict[str, Any]:
        """Extract record fields from a parsed detail page."""

    @staticmethod
    def _with_defaults(ctx: ScrapeContext, record: ExtractedRecord) -> ExtractedRecord:
        if not record.inventory and ctx.options.default_inventory:
            return record.model_copy(update={"inventory": ctx.options.default_inventory})
        return record
