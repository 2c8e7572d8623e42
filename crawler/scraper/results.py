"""Listing-page parsing: candidates plus pagination state."""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from bs4 import Tag

from crawler.errors import ParsingError
from crawler.models import CandidateRecord

from .html import absolute_url, first, make_soup, node_text, slugify, text_of
from .selectors import SelectorCatalog

LOGGER = logging.getLogger(__name__)

INFO_PATTERN = re.compile(
    r"showing\s+([\d,.\s]+?)\s+to\s+([\d,.\s]+?)\s+of\s+([\d,.\s]+?)(?:\s+entries|\s+results|\s*$|\s*\()",
    re.IGNORECASE,
)


@dataclass
class Pagination:
    """Pagination state of one listing page.

    ``total`` and ``page_size`` are None when the page carries no
    "Showing X to Y of Z" text; callers then follow ``has_next_page``.
    """

    current_page: int
    has_next_page: bool
    total: Optional[int] = None
    page_size: Optional[int] = None
    start: Optional[int] = None
    end: Optional[int] = None


@dataclass
class ResultsPage:
    candidates: List[CandidateRecord]
    pagination: Pagination
    skipped_rows: int = 0
    duplicates: int = 0
    warnings: List[str] = field(default_factory=list)


def _to_int(raw: str) -> int:
    return int(re.sub(r"[^\d]", "", raw))


def parse_info_text(text: Optional[str]) -> Optional[Tuple[int, int, int]]:
    """Parse ``"Showing 1 to 25 of 1,234 entries"`` into (1, 25, 1234)."""
    if not text:
        return None
    match = INFO_PATTERN.search(text.strip())
    if not match:
        return None
    try:
        start, end, total = (_to_int(group) for group in match.groups())
    except ValueError:
        return None
    if end < start:
        return None
    return start, end, total


def compute_pagination(
    info: Optional[Tuple[int, int, int]],
    page_index: int,
    next_enabled: bool,
) -> Pagination:
    if info is None:
        return Pagination(current_page=page_index, has_next_page=next_enabled)

    start, end, total = info
    if total == 0:
        return Pagination(current_page=page_index, has_next_page=False, total=0, page_size=0, start=0, end=0)
    page_size = end - start + 1
    current_page = math.ceil(start / page_size) if page_size else page_index
    return Pagination(
        current_page=current_page,
        has_next_page=next_enabled and end < total,
        total=total,
        page_size=page_size,
        start=start,
        end=end,
    )


def _is_disabled(node: Tag) -> bool:
    classes = node.get("class") or []
    if any("disabled" in cls for cls in classes):
        return True
    if node.has_attr("disabled"):
        return True
    return (node.get("aria-disabled") or "").lower() == "true"


class ResultsParser:
    """Turns listing HTML into ordered, de-duplicated candidates."""

    def __init__(self, catalog: SelectorCatalog) -> None:
        self.catalog = catalog
        self._source_id_re = re.compile(catalog.source_id_pattern) if catalog.source_id_pattern else None

    def parse(self, html: str, page_index: int = 1) -> ResultsPage:
        """Parse one listing page.

        Raises
        ------
        ParsingError
            If the results container is missing entirely
        """
        soup = make_soup(html)
        container = first(soup, self.catalog.results_container)
        if container is None:
            raise ParsingError(
                f"{self.catalog.site_id}: results container not found "
                f"({', '.join(self.catalog.results_container)})"
            )

        headers = self._headers(container)
        next_enabled = self._next_enabled(soup)
        info = parse_info_text(text_of(soup, self.catalog.info_text)) if self.catalog.info_text else None
        pagination = compute_pagination(info, page_index, next_enabled)

        page = ResultsPage(candidates=[], pagination=pagination)
        seen: set[str] = set()

        for position, row in enumerate(container.select(self.catalog.result_row)):
            if row.name == "tr" and not row.find("td"):
                continue  # header row
            candidate = self._parse_row(row, headers, page_index, position)
            if candidate is None:
                page.skipped_rows += 1
                continue
            if candidate.detail_url in seen:
                page.duplicates += 1
                continue
            seen.add(candidate.detail_url)
            page.candidates.append(candidate)

        if pagination.page_size is not None and len(page.candidates) > pagination.page_size:
            message = (
                f"{len(page.candidates)} rows exceed reported page size {pagination.page_size}; truncating"
            )
            LOGGER.warning("%s page %d: %s", self.catalog.site_id, page_index, message)
            page.warnings.append(message)
            page.candidates = page.candidates[: pagination.page_size]

        if page.skipped_rows:
            message = f"skipped {page.skipped_rows} row(s) without a detail link"
            LOGGER.warning("%s page %d: %s", self.catalog.site_id, page_index, message)
            page.warnings.append(message)

        LOGGER.debug(
            "%s page %d: %d candidates (total=%s, next=%s)",
            self.catalog.site_id,
            page_index,
            len(page.candidates),
            pagination.total,
            pagination.has_next_page,
        )
        return page

    def _headers(self, container: Tag) -> List[str]:
        cells = container.select("thead th")
        if not cells:
            first_row = container.find("tr")
            if first_row is not None and not first_row.find("td"):
                cells = first_row.find_all("th")
        return [slugify(node_text(cell) or f"col_{i}") or f"col_{i}" for i, cell in enumerate(cells)]

    def _next_enabled(self, soup: Tag) -> bool:
        for selector in self.catalog.next_page:
            node = soup.select_one(selector)
            if node is not None:
                return not _is_disabled(node)
        return False

    def _row_link(self, row: Tag) -> Tuple[Optional[Tag], Optional[str]]:
        for selector in self.catalog.row_link:
            for anchor in row.select(selector):
                url = absolute_url(anchor.get("href"), self.catalog.base_url)
                if url:
                    return anchor, url
        return None, None

    def _column_name(self, headers: List[str], index: int) -> str:
        if index < len(headers):
            return headers[index]
        if index < len(self.catalog.column_names):
            return self.catalog.column_names[index]
        return f"col_{index}"

    def _parse_row(
        self,
        row: Tag,
        headers: List[str],
        page_index: int,
        position: int,
    ) -> Optional[CandidateRecord]:
        anchor, url = self._row_link(row)
        if url is None:
            return None

        attributes: Dict[str, Optional[str]] = {}
        for index, cell in enumerate(row.find_all("td", recursive=False)):
            attributes[self._column_name(headers, index)] = node_text(cell)
        for key, selector in self.catalog.row_fields.items():
            attributes[key] = text_of(row, selector)

        name = (text_of(row, self.catalog.row_name) if self.catalog.row_name else None) or node_text(anchor) or ""
        return CandidateRecord(
            name=name,
            detail_url=url,
            source_id=self._source_id(url, name, position),
            page_index=page_index,
            position=position,
            attributes=attributes,
        )

    def _source_id(self, url: str, name: str, position: int) -> str:
        if self._source_id_re is not None:
            match = self._source_id_re.search(url)
            if match:
                return match.group(1)
        return f"{self.catalog.site_id}_{slugify(name) or 'item'}_{position}"
