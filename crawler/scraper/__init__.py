"""Browser-driven scraping: login, navigation, search, parsing and orchestration."""
from .adapter import ScrapeContext, SiteAdapter
from .browser import BrowserSession
from .detail import DetailExtractor, dedupe_images
from .login import CaptchaPolicy, Credentials, LoginConfig, LoginHandler, LoginResult
from .navigation import NavigationHandler
from .orchestrator import CrawlerOrchestrator, RunState, ScrapeResult, SiteScraper
from .results import Pagination, ResultsPage, ResultsParser
from .search import SearchField, SearchForm, SearchHandler
from .selectors import SelectorCatalog

__all__ = [
    "BrowserSession",
    "CaptchaPolicy",
    "CrawlerOrchestrator",
    "Credentials",
    "DetailExtractor",
    "LoginConfig",
    "LoginHandler",
    "LoginResult",
    "NavigationHandler",
    "Pagination",
    "ResultsPage",
    "ResultsParser",
    "RunState",
    "ScrapeContext",
    "ScrapeResult",
    "SearchField",
    "SearchForm",
    "SearchHandler",
    "SelectorCatalog",
    "SiteAdapter",
    "SiteScraper",
    "dedupe_images",
]
