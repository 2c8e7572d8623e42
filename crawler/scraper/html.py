"""Small BeautifulSoup helpers shared by the parsers."""
from __future__ import annotations

import re
from typing import Iterable, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

_WHITESPACE = re.compile(r"\s+")


def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def clean_text(value: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", value or "").strip()


def node_text(node: Optional[Tag]) -> Optional[str]:
    if node is None:
        return None
    text = clean_text(node.get_text(" "))
    return text or None


def first(node: Tag, selectors: Iterable[str] | str) -> Optional[Tag]:
    """First element matching any of ``selectors``, tried in order."""
    if isinstance(selectors, str):
        selectors = [selectors]
    for selector in selectors:
        found = node.select_one(selector)
        if found is not None:
            return found
    return None


def text_of(node: Tag, selectors: Iterable[str] | str) -> Optional[str]:
    return node_text(first(node, selectors))


def absolute_url(href: Optional[str], base_url: str) -> Optional[str]:
    """Resolve ``href`` against ``base_url``; None for empty and script links."""
    if not href:
        return None
    href = href.strip()
    if not href or href.startswith(("#", "javascript:", "mailto:")):
        return None
    if href.startswith("//"):
        return f"https:{href}"
    return urljoin(base_url, href)


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")
