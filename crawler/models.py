"""Pydantic models shared across crawler components."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Accepts both snake_case and the camelCase keys the control plane sends."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScraperOptions(CamelModel):
    max_requests: int = Field(default=100, ge=1)
    max_load_clicks: int = Field(default=10, ge=0)
    max_pages: int = Field(default=10, ge=1)
    max_products: int = Field(default=1000, ge=1)
    max_concurrency: int = Field(default=1, ge=1, le=5)
    headless: bool = True
    storage_dir: Optional[str] = None  # None: Settings.storage_dir (SCRAPER_STORAGE_DIR, ./storage)
    enable_detail_extraction: bool = True
    request_delay_ms: int = Field(default=2000, ge=0)
    default_inventory: int = 0
    debug: bool = False


class TaskDefinition(CamelModel):
    id: str
    name: str
    site: str
    start_urls: List[str] = Field(default_factory=list)
    search_params: Dict[str, Any] = Field(default_factory=dict)
    cron: Optional[str] = None
    enabled: bool = True
    account: Optional[str] = None
    options: ScraperOptions = Field(default_factory=ScraperOptions)
    debug: bool = False


class CandidateRecord(BaseModel):
    """Row from a listing page, pending detail extraction."""

    name: str
    detail_url: str
    source_id: Optional[str] = None
    page_index: int = 1
    position: int = 0
    attributes: Dict[str, Any] = Field(default_factory=dict)


class Price(BaseModel):
    amount: float
    currency: Optional[str] = None


class ExtractedRecord(BaseModel):
    """Canonical product or merchant record."""

    url: str
    site: str
    execution_id: Optional[str] = None
    source_id: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None
    description: Optional[str] = None
    current_price: Optional[Price] = None
    original_price: Optional[Price] = None
    images: List[str] = Field(default_factory=list)
    availability: Optional[str] = None
    identifiers: Dict[str, Any] = Field(default_factory=dict)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    inventory: int = 0
    scraped_at: datetime = Field(default_factory=utcnow)


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogEntry(CamelModel):
    id: Optional[int] = None
    execution_id: str
    level: LogLevel = LogLevel.INFO
    message: str
    context: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ProgressPhase(str, Enum):
    LOGIN = "login"
    NAVIGATION = "navigation"
    SEARCH = "search"
    SCRAPING = "scraping"
    PROCESSING = "processing"
    COMPLETED = "completed"


class ProgressSnapshot(CamelModel):
    execution_id: str
    phase: ProgressPhase = ProgressPhase.NAVIGATION
    current_page: int = 0
    pages_processed: int = 0
    candidates_found: int = 0
    records_extracted: int = 0
    errors: int = 0
    total: Optional[int] = None
    message: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
