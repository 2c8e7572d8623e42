import asyncio
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, List, Optional

import pytest

from crawler.antibot.retry import ConsecutiveFailureGuard
from crawler.errors import AuthenticationError, BotChallengeError, CaptchaError, LoginErrorType, ParsingError
from crawler.models import CandidateRecord, ExtractedRecord, ScraperOptions, TaskDefinition
from crawler.scraper.login import Credentials, LoginResult
from crawler.scraper.orchestrator import CrawlerOrchestrator, RunState
from crawler.scraper.results import Pagination, ResultsPage
from crawler.sites.fmtc import LOGIN
from crawler.tasks import TaskStatus


class ListingPage:
    url = "https://shop.example/list"

    def __init__(self):
        self.reloads = 0

    async def reload(self, wait_until=None):
        self.reloads += 1


class DetailPage:
    def __init__(self, ctx):
        self.ctx = ctx
        self.closed = False

    async def close(self):
        self.closed = True
        self.ctx.open_pages -= 1


class QuietNavigation:
    async def check_challenge(self, page=None, url=None):
        pass


async def _no_pause():
    pass


@dataclass
class FakeContext:
    definition: TaskDefinition
    options: ScraperOptions
    execution_id: str = "exec-1"
    reporter: Any = None
    cancelled: bool = False
    requests_made: int = 0
    page: Any = field(default_factory=ListingPage)
    navigation: Any = field(default_factory=QuietNavigation)
    anti: Any = field(default_factory=lambda: SimpleNamespace(pause=_no_pause))
    open_pages: int = 0
    peak_pages: int = 0

    async def new_page(self):
        self.requests_made += 1
        self.open_pages += 1
        self.peak_pages = max(self.peak_pages, self.open_pages)
        return DetailPage(self)


class PagedAdapter:
    """Serves canned listing pages; ``None`` stands for an unparseable page."""

    site_id = "fake"

    def __init__(self, pages: List[Optional[List[str]]], total: Optional[int] = None, cancel_after: int = 0):
        self.pages = pages
        self.total = total
        self.cancel_after = cancel_after

    def login_config(self):
        return None

    async def navigate(self, ctx):
        ctx.requests_made += 1

    async def search(self, ctx):
        return {}

    async def parse_results(self, ctx, page_index):
        urls = self.pages[page_index - 1]
        if urls is None:
            raise ParsingError(f"page {page_index} is broken")
        candidates = [
            CandidateRecord(name=url.rsplit("/", 1)[-1], detail_url=url, page_index=page_index, position=i)
            for i, url in enumerate(urls)
        ]
        return ResultsPage(
            candidates=candidates,
            pagination=Pagination(
                current_page=page_index,
                has_next_page=page_index < len(self.pages),
                total=self.total,
            ),
        )

    async def next_page(self, ctx, page_index):
        if self.cancel_after and page_index >= self.cancel_after:
            ctx.cancelled = True
        ctx.requests_made += 1
        return True

    def record_from_candidate(self, ctx, candidate):
        return ExtractedRecord(url=candidate.detail_url, site=self.site_id, name=candidate.name)


def _urls(page, count):
    return [f"https://shop.example/p/{page}-{i}" for i in range(count)]


def _context(**options):
    options.setdefault("enable_detail_extraction", False)
    return FakeContext(
        definition=TaskDefinition(id="t", name="T", site="fake"),
        options=ScraperOptions(**options),
    )


def _run(adapter, guard=None, **options):
    ctx = _context(**options)
    batches = []
    orchestrator = CrawlerOrchestrator(adapter, ctx, record_sink=batches.append, challenge_guard=guard)
    return asyncio.run(orchestrator.run()), batches


def test_page_counts_add_up_to_known_total():
    result, batches = _run(PagedAdapter([_urls(1, 3), _urls(2, 3), _urls(3, 2)], total=8))

    assert result.status == TaskStatus.COMPLETED
    assert result.stop_reason == "last_page"
    assert result.metrics["page_counts"] == [3, 3, 2]
    assert sum(result.metrics["page_counts"]) == result.metrics["total"] == 8
    assert [len(batch) for batch in batches] == [3, 3, 2]
    assert result.metrics["records_extracted"] == 8


def test_unknown_total_follows_next_page():
    result, _ = _run(PagedAdapter([_urls(1, 2), _urls(2, 2), _urls(3, 1)]))

    assert result.metrics["total"] is None
    assert result.metrics["pages_processed"] == 3
    assert result.stop_reason == "last_page"


def test_max_pages_bound():
    result, _ = _run(PagedAdapter([_urls(1, 2), _urls(2, 2), _urls(3, 2)]), max_pages=2)
    assert result.stop_reason == "max_pages"
    assert result.metrics["pages_processed"] == 2


def test_max_products_caps_last_page():
    result, batches = _run(PagedAdapter([_urls(1, 3), _urls(2, 3)]), max_products=4)
    assert result.stop_reason == "max_products"
    assert result.metrics["page_counts"] == [3, 1]
    assert sum(len(batch) for batch in batches) == 4


def test_max_requests_bound():
    result, _ = _run(PagedAdapter([_urls(1, 1)] * 5), max_requests=3)
    assert result.stop_reason == "max_requests"
    assert result.metrics["requests"] >= 3


def test_grown_listing_only_yields_new_candidates():
    first = _urls(1, 2)
    result, batches = _run(PagedAdapter([first, first + _urls(2, 2)]))
    assert result.metrics["page_counts"] == [2, 2]
    assert [record.url for record in batches[1]] == _urls(2, 2)


def test_unparseable_page_counts_as_error():
    result, _ = _run(PagedAdapter([None, _urls(2, 2)]))
    assert result.status == TaskStatus.COMPLETED
    assert result.metrics["errors"] == 1
    assert result.metrics["pages_processed"] == 2
    assert result.metrics["records_extracted"] == 2


def test_cancellation_stops_at_page_boundary():
    result, batches = _run(PagedAdapter([_urls(1, 2), _urls(2, 2), _urls(3, 2)], cancel_after=1))
    assert result.status == TaskStatus.CANCELLED
    assert result.metrics["pages_processed"] == 1
    assert len(batches) == 1


class ChallengedAdapter(PagedAdapter):
    """Listing that serves an interstitial for the first ``challenges`` parses."""

    def __init__(self, pages, challenges):
        super().__init__(pages)
        self.challenges = challenges
        self.parses = 0

    async def parse_results(self, ctx, page_index):
        self.parses += 1
        if self.challenges:
            self.challenges -= 1
            raise BotChallengeError("Just a moment...", ctx.page.url)
        return await super().parse_results(ctx, page_index)


def _orchestrator(adapter, guard=None, **options):
    ctx = _context(**options)
    batches = []
    return CrawlerOrchestrator(adapter, ctx, record_sink=batches.append, challenge_guard=guard), ctx, batches


def test_challenge_is_cooled_down_and_retried():
    guard = ConsecutiveFailureGuard(threshold=2, cooldown=0)
    adapter = ChallengedAdapter([_urls(1, 2), _urls(2, 1)], challenges=1)
    orchestrator, ctx, batches = _orchestrator(adapter, guard)

    result = asyncio.run(orchestrator.run())

    assert result.status == TaskStatus.COMPLETED
    assert result.metrics["records_extracted"] == 3
    assert ctx.page.reloads == 1
    assert adapter.parses == 3
    assert guard.failure_count == 0
    assert guard.total_failures == 1


def test_repeated_challenges_abort_the_run():
    guard = ConsecutiveFailureGuard(threshold=2, cooldown=0)
    adapter = ChallengedAdapter([_urls(1, 2)], challenges=10)
    orchestrator, ctx, batches = _orchestrator(adapter, guard)

    with pytest.raises(BotChallengeError):
        asyncio.run(orchestrator.run())

    assert adapter.parses == 2
    assert guard.tripped
    assert batches == []


class ChallengedPaging(PagedAdapter):
    def __init__(self, pages):
        super().__init__(pages)
        self.clicks = 0

    async def next_page(self, ctx, page_index):
        self.clicks += 1
        if self.clicks == 1:
            raise BotChallengeError("Just a moment...", ctx.page.url)
        return await super().next_page(ctx, page_index)


def test_challenge_after_next_page_click_does_not_click_again():
    adapter = ChallengedPaging([_urls(1, 2), _urls(2, 2)])
    result, batches = _run(adapter, ConsecutiveFailureGuard(threshold=2, cooldown=0))

    assert result.status == TaskStatus.COMPLETED
    assert adapter.clicks == 1
    assert result.metrics["pages_processed"] == 2
    assert [record.url for record in batches[1]] == _urls(2, 2)


class DetailAdapter(PagedAdapter):
    """Detail pages finish in reverse order; ``broken`` URLs raise."""

    def __init__(self, pages, broken=()):
        super().__init__(pages)
        self.broken = set(broken)

    async def extract_detail(self, ctx, candidate, page):
        await asyncio.sleep(0.01 * (5 - candidate.position))
        if candidate.detail_url in self.broken:
            raise RuntimeError("detail layout changed")
        return ExtractedRecord(url=candidate.detail_url, site=self.site_id, name=f"{candidate.name} (detail)")


def test_detail_pool_keeps_listing_order():
    urls = _urls(1, 4)
    orchestrator, ctx, batches = _orchestrator(
        DetailAdapter([urls]), enable_detail_extraction=True, max_concurrency=3
    )

    result = asyncio.run(orchestrator.run())

    assert [record.url for record in batches[0]] == urls
    assert all(record.name.endswith("(detail)") for record in batches[0])
    assert 1 < ctx.peak_pages <= 3
    assert ctx.open_pages == 0
    assert result.metrics["errors"] == 0


def test_detail_pool_respects_request_budget():
    urls = _urls(1, 4)
    result, batches = _run(DetailAdapter([urls]), enable_detail_extraction=True, max_requests=3)

    # One request went to the listing, leaving two for detail pages.
    assert [record.name.endswith("(detail)") for record in batches[0]] == [True, True, False, False]
    assert [record.url for record in batches[0]] == urls
    assert result.stop_reason == "max_requests"


def test_failed_detail_page_keeps_listing_data():
    urls = _urls(1, 3)
    result, batches = _run(DetailAdapter([urls], broken=[urls[1]]), enable_detail_extraction=True)

    assert result.status == TaskStatus.COMPLETED
    assert result.metrics["errors"] == 1
    assert result.metrics["records_extracted"] == 3
    assert [record.name for record in batches[0]] == ["1-0 (detail)", "1-1", "1-2 (detail)"]


class LoginAdapter(PagedAdapter):
    def login_config(self):
        return LOGIN


def _login_phase(result, credentials=Credentials("user@example.com", "pw")):
    async def ensure_session(creds):
        return result

    handler = SimpleNamespace(ensure_session=ensure_session)
    orchestrator = CrawlerOrchestrator(
        LoginAdapter([_urls(1, 1)]), _context(), login_handler=handler, credentials=credentials
    )
    return asyncio.run(orchestrator.login_phase(orchestrator.ctx, RunState()))


def test_rejected_login_raises_authentication_error():
    rejected = LoginResult(success=False, error="Invalid credentials", error_type=LoginErrorType.ACCOUNT_LOCKED)
    with pytest.raises(AuthenticationError) as excinfo:
        _login_phase(rejected)
    assert excinfo.value.error_type == LoginErrorType.ACCOUNT_LOCKED


def test_unsolved_captcha_raises_captcha_error():
    blocked = LoginResult(success=False, error="CAPTCHA required", requires_captcha=True)
    with pytest.raises(CaptchaError):
        _login_phase(blocked)


def test_login_without_credentials_is_an_authentication_error():
    with pytest.raises(AuthenticationError):
        _login_phase(LoginResult(success=True), credentials=None)


def test_reused_session_is_reported():
    state, events = _login_phase(LoginResult(success=True, reused_session=True, attempts=0))
    assert state.login_reused is True
    assert events[-1].message == "Reused stored session"
