"""Crawl pipeline: login, navigation, search, then page-by-page extraction.

Each phase is a coroutine ``(ctx, state) -> (state, events)``. Events are
a side channel (progress, log lines, record batches) dispatched by the
orchestrator in the order they were produced, so phases never talk to the
reporter or the store directly.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from crawler.antibot.retry import ConsecutiveFailureGuard
from crawler.antibot.storage import SessionManager
from crawler.errors import AuthenticationError, BotChallengeError, CaptchaError, ParsingError
from crawler.models import CandidateRecord, ExtractedRecord, LogLevel, ProgressPhase, TaskDefinition
from crawler.tasks.execution import TaskExecution, TaskStatus

from .adapter import ScrapeContext, SiteAdapter
from .browser import BrowserSession
from .login import CaptchaPolicy, Credentials, LoginHandler
from .navigation import NavigationHandler

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    phase: Optional[ProgressPhase] = None
    message: Optional[str] = None
    counters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LogEvent:
    level: LogLevel
    message: str
    context: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class RecordsEvent:
    records: Tuple[ExtractedRecord, ...]


Event = Any


@dataclass
class RunState:
    """Counters carried from phase to phase."""

    page_index: int = 1
    pages_processed: int = 0
    candidates: int = 0
    records: int = 0
    errors: int = 0
    total: Optional[int] = None
    has_next_page: bool = True
    page_counts: List[int] = field(default_factory=list)
    seen_urls: Set[str] = field(default_factory=set)
    applied_filters: Dict[str, Any] = field(default_factory=dict)
    stop_reason: Optional[str] = None
    login_reused: Optional[bool] = None

    def counters(self) -> Dict[str, Any]:
        return {
            "current_page": self.page_index,
            "pages_processed": self.pages_processed,
            "candidates_found": self.candidates,
            "records_extracted": self.records,
            "errors": self.errors,
            "total": self.total,
        }


@dataclass
class ScrapeResult:
    status: TaskStatus
    metrics: Dict[str, Any]
    stop_reason: Optional[str] = None


PhaseResult = Tuple[RunState, List[Event]]
RecordSink = Callable[[Sequence[ExtractedRecord]], Any]


def _progress(state: RunState, phase: ProgressPhase, message: Optional[str] = None) -> ProgressEvent:
    return ProgressEvent(phase=phase, message=message, counters=state.counters())


class CrawlerOrchestrator:
    """Runs one site adapter through the crawl pipeline for one execution.

    Parameters
    ----------
    adapter : SiteAdapter
        Site-specific selectors and parsing
    ctx : ScrapeContext
        Page, anti-detection layer, options and cancel event
    record_sink : callable, optional
        Receives each page's records; called before the next page starts
    login_handler : LoginHandler, optional
        Required when the adapter has a login flow
    credentials : Credentials, optional
        Account to log in with
    challenge_guard : ConsecutiveFailureGuard, optional
        Escalates repeated anti-bot challenges to a failure
    """

    def __init__(
        self,
        adapter: SiteAdapter,
        ctx: ScrapeContext,
        *,
        record_sink: Optional[RecordSink] = None,
        login_handler: Optional[LoginHandler] = None,
        credentials: Optional[Credentials] = None,
        challenge_guard: Optional[ConsecutiveFailureGuard] = None,
    ) -> None:
        self.adapter = adapter
        self.ctx = ctx
        self.record_sink = record_sink
        self.login_handler = login_handler
        self.credentials = credentials
        self.challenge_guard = challenge_guard or ConsecutiveFailureGuard(name=f"{adapter.site_id} challenges")

    # -- driver ---------------------------------------------------------

    async def run(self) -> ScrapeResult:
        state = RunState()
        for phase in (self.login_phase, self.navigation_phase, self.search_phase):
            state = await self._step(phase, state)
            if self.ctx.cancelled:
                return self._finish(state, TaskStatus.CANCELLED, "cancelled")

        while True:
            if self.ctx.cancelled:
                return self._finish(state, TaskStatus.CANCELLED, "cancelled")
            state = await self._step(self.page_phase, state)
            if state.stop_reason:
                break
            state = await self._step(self.advance_phase, state)
            if state.stop_reason:
                break

        return self._finish(state, TaskStatus.COMPLETED, state.stop_reason)

    async def _step(self, phase: Callable[[ScrapeContext, RunState], Awaitable[PhaseResult]], state: RunState) -> RunState:
        state, events = await phase(self.ctx, state)
        self._dispatch(events)
        if self.ctx.reporter is not None:
            await self.ctx.reporter.flush()
        return state

    def _dispatch(self, events: Sequence[Event]) -> None:
        reporter = self.ctx.reporter
        for event in events:
            if isinstance(event, RecordsEvent):
                if self.record_sink is not None and event.records:
                    self.record_sink(event.records)
            elif reporter is None:
                if isinstance(event, LogEvent):
                    LOGGER.info("[%s] %s", self.ctx.execution_id, event.message)
            elif isinstance(event, ProgressEvent):
                reporter.progress(event.phase, event.message, **event.counters)
            elif isinstance(event, LogEvent):
                reporter.log(event.level, event.message, event.context)

    def _finish(self, state: RunState, status: TaskStatus, reason: Optional[str]) -> ScrapeResult:
        metrics = {
            "pages_processed": state.pages_processed,
            "candidates_found": state.candidates,
            "records_extracted": state.records,
            "errors": state.errors,
            "total": state.total,
            "page_counts": list(state.page_counts),
            "requests": self.ctx.requests_made,
            "applied_filters": state.applied_filters,
            "stop_reason": reason,
            "login_reused": state.login_reused,
        }
        message = "Cancelled" if status == TaskStatus.CANCELLED else f"Finished: {reason or 'done'}"
        self._dispatch(
            [
                _progress(state, ProgressPhase.COMPLETED, message),
                LogEvent(
                    LogLevel.INFO,
                    f"{message}; {state.records} record(s) from {state.pages_processed} page(s)",
                    {"errors": state.errors},
                ),
            ]
        )
        return ScrapeResult(status=status, metrics=metrics, stop_reason=reason)

    async def _guarded(
        self,
        action: Callable[[], Awaitable[Any]],
        *,
        resume: Optional[Callable[[], Awaitable[Any]]] = None,
        reload: bool = True,
    ) -> Any:
        """Run ``action``, cooling down on anti-bot challenges.

        After each cooldown the listing page is reloaded (unless ``reload``
        is False) and ``resume`` runs in place of ``action``; ``resume``
        defaults to ``action``. The challenge guard re-raises once it trips.
        """
        step = action
        while True:
            try:
                result = await step()
            except BotChallengeError as exc:
                if self.challenge_guard.record_failure():
                    raise
                self._dispatch(
                    [
                        LogEvent(
                            LogLevel.WARN,
                            f"Bot challenge ({exc.signature}); cooling down {self.challenge_guard.cooldown:.0f}s",
                            {"url": exc.url, "consecutive": self.challenge_guard.failure_count},
                        )
                    ]
                )
                await asyncio.sleep(self.challenge_guard.cooldown)
                if reload:
                    try:
                        await self.ctx.page.reload(wait_until="domcontentloaded")
                    except Exception as reload_exc:
                        LOGGER.debug("Reload after challenge failed: %s", reload_exc)
                step = resume or action
                continue
            self.challenge_guard.record_success()
            return result

    async def _listing_cleared(self) -> bool:
        # The click that hit the challenge already advanced the listing.
        await self.ctx.navigation.check_challenge()
        return True

    # -- phases ---------------------------------------------------------

    async def login_phase(self, ctx: ScrapeContext, state: RunState) -> PhaseResult:
        if self.adapter.login_config() is None:
            return state, []
        if self.login_handler is None or self.credentials is None:
            raise AuthenticationError(f"{self.adapter.site_id}: login required but no credentials configured")

        events: List[Event] = [_progress(state, ProgressPhase.LOGIN, "Logging in")]
        result = await self.login_handler.ensure_session(self.credentials)
        if not result.success:
            if result.requires_captcha:
                raise CaptchaError(result.error or "CAPTCHA could not be solved")
            raise AuthenticationError(result.error or "Login failed", result.error_type)
        state = replace(state, login_reused=result.reused_session)
        events.append(
            LogEvent(
                LogLevel.INFO,
                "Reused stored session" if result.reused_session else "Logged in",
                {"attempts": result.attempts},
            )
        )
        return state, events

    async def navigation_phase(self, ctx: ScrapeContext, state: RunState) -> PhaseResult:
        events: List[Event] = [_progress(state, ProgressPhase.NAVIGATION, "Opening listing")]
        await self._guarded(lambda: self.adapter.navigate(ctx))
        events.append(LogEvent(LogLevel.INFO, f"Opened {ctx.page.url}"))
        return state, events

    async def search_phase(self, ctx: ScrapeContext, state: RunState) -> PhaseResult:
        if not ctx.definition.search_params:
            return state, []
        events: List[Event] = [_progress(state, ProgressPhase.SEARCH, "Applying filters")]
        applied = await self._guarded(lambda: self.adapter.search(ctx))
        state = replace(state, applied_filters=dict(applied))
        if applied:
            events.append(LogEvent(LogLevel.INFO, "Search filters applied", {"filters": applied}))
        return state, events

    async def page_phase(self, ctx: ScrapeContext, state: RunState) -> PhaseResult:
        events: List[Event] = [_progress(state, ProgressPhase.SCRAPING, f"Parsing page {state.page_index}")]
        try:
            results = await self._guarded(lambda: self.adapter.parse_results(ctx, state.page_index))
        except ParsingError as exc:
            state = replace(state, errors=state.errors + 1, pages_processed=state.pages_processed + 1)
            events.append(LogEvent(LogLevel.ERROR, str(exc), {"page": state.page_index}))
            return self._check_bounds(state), events

        for warning in results.warnings:
            events.append(LogEvent(LogLevel.WARN, warning, {"page": state.page_index}))

        fresh = [c for c in results.candidates if c.detail_url not in state.seen_urls]
        remaining = ctx.options.max_products - state.records
        capped = len(fresh) > remaining
        fresh = fresh[: max(remaining, 0)]

        seen = set(state.seen_urls)
        seen.update(c.detail_url for c in fresh)
        pagination = results.pagination
        state = replace(
            state,
            seen_urls=seen,
            candidates=state.candidates + len(fresh),
            total=pagination.total if pagination.total is not None else state.total,
            has_next_page=pagination.has_next_page,
            page_counts=state.page_counts + [len(fresh)],
        )
        events.append(
            _progress(state, ProgressPhase.PROCESSING, f"Page {state.page_index}: {len(fresh)} candidate(s)")
        )

        records, failures = await self._extract(ctx, fresh)
        for candidate, error in failures:
            events.append(
                LogEvent(
                    LogLevel.WARN,
                    f"Detail extraction failed, kept listing data: {error}",
                    {"url": candidate.detail_url},
                )
            )
        events.append(RecordsEvent(tuple(records)))

        state = replace(
            state,
            records=state.records + len(records),
            errors=state.errors + len(failures),
            pages_processed=state.pages_processed + 1,
        )
        events.append(_progress(state, ProgressPhase.SCRAPING, f"Page {state.page_index} done"))
        if capped:
            state = replace(state, stop_reason="max_products")
        return self._check_bounds(state), events

    async def advance_phase(self, ctx: ScrapeContext, state: RunState) -> PhaseResult:
        if not state.has_next_page and state.pages_processed:
            return replace(state, stop_reason="last_page"), []
        advanced = await self._guarded(
            lambda: self.adapter.next_page(ctx, state.page_index), resume=self._listing_cleared
        )
        if not advanced:
            return replace(state, has_next_page=False, stop_reason="last_page"), []
        return replace(state, page_index=state.page_index + 1), []

    def _check_bounds(self, state: RunState) -> RunState:
        if state.stop_reason:
            return state
        options = self.ctx.options
        if state.records >= options.max_products:
            return replace(state, stop_reason="max_products")
        if state.pages_processed >= options.max_pages:
            return replace(state, stop_reason="max_pages")
        if self.ctx.requests_made >= options.max_requests:
            return replace(state, stop_reason="max_requests")
        if not state.has_next_page:
            return replace(state, stop_reason="last_page")
        return state

    async def _extract(
        self, ctx: ScrapeContext, candidates: List[CandidateRecord]
    ) -> Tuple[List[ExtractedRecord], List[Tuple[CandidateRecord, str]]]:
        """Fetch detail pages with at most ``max_concurrency`` open pages.

        Records come back in listing order. Candidates past the request
        budget keep their listing data only. A failed detail page degrades
        to listing data; an anti-bot challenge is cooled down and retried,
        and aborts the page once the challenge guard trips.
        """
        if not ctx.options.enable_detail_extraction or not candidates:
            return [self.adapter.record_from_candidate(ctx, c) for c in candidates], []

        budget = max(ctx.options.max_requests - ctx.requests_made, 0)
        semaphore = asyncio.Semaphore(ctx.options.max_concurrency)

        async def fetch(index: int, candidate: CandidateRecord) -> Tuple[ExtractedRecord, Optional[str]]:
            if index >= budget:
                return self.adapter.record_from_candidate(ctx, candidate), None
            async with semaphore:
                page = None
                try:
                    page = await ctx.new_page()
                    record = await self._guarded(
                        lambda: self.adapter.extract_detail(ctx, candidate, page), reload=False
                    )
                    if ctx.options.request_delay_ms:
                        await ctx.anti.pause()
                    return record, None
                except BotChallengeError:
                    raise
                except Exception as exc:
                    LOGGER.warning("%s: detail failed for %s: %s", self.adapter.site_id, candidate.detail_url, exc)
                    return self.adapter.record_from_candidate(ctx, candidate), str(exc)
                finally:
                    if page is not None:
                        try:
                            await page.close()
                        except Exception as exc:
                            LOGGER.debug("Error closing detail page: %s", exc)

        tasks = [asyncio.ensure_future(fetch(i, c)) for i, c in enumerate(candidates)]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BotChallengeError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        records = [record for record, _ in outcomes]
        failures = [(candidates[i], error) for i, (_, error) in enumerate(outcomes) if error]
        return records, failures


class SiteScraper:
    """Runner the task queue calls for each execution.

    Opens a stealth browser, wires the handlers for the definition's site
    and drives a :class:`CrawlerOrchestrator` to completion. Records are
    saved page by page through ``store``.
    """

    def __init__(
        self,
        settings,
        store=None,
        sessions: Optional[SessionManager] = None,
        *,
        captcha_provider=None,
        adapter_factory: Optional[Callable[[str], SiteAdapter]] = None,
        browser_factory: Callable[..., Any] = BrowserSession,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions or SessionManager(
            settings.storage_dir, max_age_seconds=settings.session_max_age_seconds
        )
        self.captcha_provider = captcha_provider
        self.browser_factory = browser_factory
        if adapter_factory is None:
            from crawler.sites import get_adapter

            adapter_factory = get_adapter
        self.adapter_factory = adapter_factory
        # One manager per directory: its login locks are what serialize
        # concurrent logins for the same account.
        self._session_managers: Dict[Path, SessionManager] = {
            Path(self.sessions.storage_dir).resolve(): self.sessions
        }

    def sessions_for(self, storage_dir: Optional[str]) -> SessionManager:
        """Session manager for a definition's ``storage_dir`` override."""
        if not storage_dir:
            return self.sessions
        key = Path(storage_dir).resolve()
        manager = self._session_managers.get(key)
        if manager is None:
            manager = SessionManager(key, max_age_seconds=self.settings.session_max_age_seconds)
            self._session_managers[key] = manager
        return manager

    async def __call__(
        self,
        definition: TaskDefinition,
        execution: TaskExecution,
        reporter=None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ScrapeResult:
        adapter = self.adapter_factory(definition.site)
        options = definition.options
        sessions = self.sessions_for(options.storage_dir)
        anti = adapter.anti_detection()

        async with self.browser_factory(anti, headless=options.headless and self.settings.headless) as browser:
            navigation = NavigationHandler(
                browser.page,
                anti,
                request_delay_ms=options.request_delay_ms,
                simulate_mouse=not options.debug,
            )
            ctx = ScrapeContext(
                definition=definition,
                execution_id=execution.id,
                options=options,
                page=browser.page,
                browser_context=browser.context,
                anti=anti,
                navigation=navigation,
                reporter=reporter,
                cancel_event=cancel_event or asyncio.Event(),
            )

            login_handler = None
            credentials = None
            login_config = adapter.login_config()
            if login_config is not None:
                credentials = adapter.credentials(self.settings, definition)
                login_handler = LoginHandler(
                    browser.page,
                    adapter.site_id,
                    login_config,
                    sessions,
                    anti,
                    captcha_policy=CaptchaPolicy(self.settings.captcha_mode),
                    captcha_provider=self.captcha_provider,
                    manual_captcha_timeout=self.settings.captcha_manual_timeout,
                )

            sink = None
            if self.store is not None:

                def sink(records: Sequence[ExtractedRecord]) -> int:
                    return self.store.save_records(execution.id, records)

            orchestrator = CrawlerOrchestrator(
                adapter,
                ctx,
                record_sink=sink,
                login_handler=login_handler,
                credentials=credentials,
                challenge_guard=ConsecutiveFailureGuard(
                    threshold=self.settings.max_consecutive_challenges,
                    cooldown=self.settings.challenge_cooldown_seconds,
                    name=f"{adapter.site_id} challenges",
                ),
            )
            return await orchestrator.run()
