"""Mytheresa storefront: anonymous product listing with "show more" paging."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from crawler.antibot.stealth import SiteProfile
from crawler.models import CandidateRecord
from crawler.scraper.adapter import ScrapeContext, SiteAdapter
from crawler.scraper.html import node_text, text_of
from crawler.scraper.numbers import parse_price
from crawler.scraper.selectors import SelectorCatalog

LOGGER = logging.getLogger(__name__)

BASE_URL = "https://www.mytheresa.com"

SKU_PATTERN = re.compile(r"^(p\d+)$", re.IGNORECASE)
SKU_TEXT_PATTERN = re.compile(r"^(p?)(\d+)$", re.IGNORECASE)
LOADED_PATTERN = re.compile(r"(\d+)\D+(\d+)")

LOAD_MORE_BUTTON = "div.loadmore__button > a.button--active"
LOAD_MORE_INFO = "div.loadmore__info"
PRODUCT_ITEM = "div.item"

PDP_BRAND = ".product__area__branding__designer__link"
PDP_NAME = ".product__area__branding__name"
PDP_DISCOUNT_PRICE = "span.pricing__prices__value--discount span.pricing__prices__price"
PDP_ORIGINAL_PRICE = "span.pricing__prices__value--original span.pricing__prices__price"
PDP_ANY_PRICE = ".pricing__prices__price"
PDP_IMAGES = (
    "div.swiper-wrapper > div.swiper-slide > img.product__gallery__carousel__image",
    "div.photocarousel__items div.swiper-slide img.product__gallery__thumbscarousel__image",
)
PDP_SIZES = "div.sizeitem:not(.sizeitem--notavailable) span.sizeitem__label"
PDP_DESCRIPTION = ".accordion__body__content > p"
PDP_DETAIL_ITEMS = ".accordion__body__content ul li"
PDP_BREADCRUMBS = "div.breadcrumb .breadcrumb__item__link"

# Detail list prefixes, English and the Chinese storefront.
DETAIL_PREFIXES = {
    "material": ("Material:", "材质:"),
    "color": ("Color:", "Colour:", "商品颜色:"),
    "sku": ("Item number:", "商品编号:"),
}

CATALOG = SelectorCatalog(
    site_id="mytheresa",
    base_url=BASE_URL,
    results_ready=PRODUCT_ITEM,
    results_container=("div.list__items", "div.list", "main", "body"),
    result_row=PRODUCT_ITEM,
    row_link=("a.item__link", "a[href]"),
    row_name=("div.item__info__name a", "div.item__info__name"),
    row_fields={
        "brand": "div.item__info__header__designer",
        "price": "span.pricing__prices__price",
        "tag": "div.labels__wrapper span.labels__label",
    },
    next_page=(LOAD_MORE_BUTTON,),
    detail_ready=PDP_NAME,
)


def sku_from_url(url: str) -> Optional[str]:
    """``.../some-dress-p01031061`` -> ``p01031061``."""
    last = urlsplit(url).path.rstrip("/").split("-")[-1]
    match = SKU_PATTERN.match(last)
    return match.group(1).lower() if match else None


def normalize_sku(text: str) -> str:
    match = SKU_TEXT_PATTERN.match(text.strip())
    if match:
        return (match.group(1).lower() or "p") + match.group(2)
    return text.strip().lower()


def all_items_loaded(info_text: Optional[str]) -> bool:
    """True when the load-more info says every product is on the page."""
    match = LOADED_PATTERN.search(info_text or "")
    if not match:
        return False
    viewed, total = (int(group) for group in match.groups())
    return viewed >= total


class MytheresaAdapter(SiteAdapter):
    site_id = "mytheresa"
    catalog = CATALOG
    profile = SiteProfile(locale="en-US", timezone_id="Europe/Berlin", behavior="normal")
    default_start_url = f"{BASE_URL}/us/en/women/new-arrivals/current-week"

    def candidate_fields(self, candidate: CandidateRecord) -> Dict[str, Any]:
        attributes = candidate.attributes
        sku = sku_from_url(candidate.detail_url)
        return {
            "brand": attributes.get("brand"),
            "current_price": parse_price(attributes.get("price"), "USD"),
            "identifiers": {"sku": sku} if sku else {},
        }

    async def next_page(self, ctx: ScrapeContext, page_index: int) -> bool:
        """Click "show more" until every product is on the page.

        Each click counts as one listing page; the previously seen cards are
        filtered out by URL when the grown page is parsed again.
        """
        if page_index > ctx.options.max_load_clicks:
            LOGGER.warning("%s: reached max load-more clicks (%d)", self.site_id, ctx.options.max_load_clicks)
            return False

        info = await ctx.page.query_selector(LOAD_MORE_INFO)
        if info is not None and all_items_loaded(await info.inner_text()):
            LOGGER.info("%s: all items loaded", self.site_id)
            return False
        button = await ctx.page.query_selector(LOAD_MORE_BUTTON)
        if button is None or not await button.is_visible():
            return False

        before = len(await ctx.page.query_selector_all(PRODUCT_ITEM))
        await ctx.anti.humanize(ctx.page)
        await button.click(timeout=5000)
        ctx.navigation.requests_made += 1

        grew = False
        deadline = asyncio.get_running_loop().time() + ctx.navigation.element_timeout_ms / 1000
        while asyncio.get_running_loop().time() < deadline:
            await asyncio.sleep(0.5)
            if len(await ctx.page.query_selector_all(PRODUCT_ITEM)) > before:
                grew = True
                break
        await ctx.navigation.check_challenge()
        if grew:
            await ctx.navigation.pause()
            return True
        LOGGER.warning("%s: no new products after load-more click %d", self.site_id, page_index)
        return False

    def parse_detail(self, soup: BeautifulSoup, candidate: CandidateRecord) -> Dict[str, Any]:
        current = text_of(soup, PDP_DISCOUNT_PRICE) or text_of(soup, PDP_ANY_PRICE)
        original = text_of(soup, PDP_ORIGINAL_PRICE)

        images: List[Optional[str]] = []
        for selector in PDP_IMAGES:
            images.extend(img.get("src") or img.get("data-src") for img in soup.select(selector))

        sizes = [text for text in (node_text(node) for node in soup.select(PDP_SIZES)) if text]

        identifiers: Dict[str, Any] = {}
        attributes: Dict[str, Any] = {}
        sku = sku_from_url(candidate.detail_url)
        extra: List[str] = []
        for item in soup.select(PDP_DETAIL_ITEMS):
            text = node_text(item)
            if not text:
                continue
            for key, prefixes in DETAIL_PREFIXES.items():
                prefix = next((p for p in prefixes if text.startswith(p)), None)
                if prefix is None:
                    continue
                value = text[len(prefix):].strip()
                if key == "sku":
                    sku = sku or normalize_sku(value)
                else:
                    attributes[key] = value
                break
            else:
                extra.append(text)

        description = text_of(soup, PDP_DESCRIPTION) or ""
        if extra:
            description = f"{description}\n\nDetails:\n" + "\n".join(extra)
        if sku:
            identifiers["sku"] = sku

        breadcrumbs = [text for text in (node_text(node) for node in soup.select(PDP_BREADCRUMBS)) if text]
        if breadcrumbs:
            attributes["breadcrumbs"] = breadcrumbs
        if sizes:
            attributes["sizes"] = sizes

        title = node_text(soup.find("title"))
        return {
            "name": text_of(soup, PDP_NAME) or candidate.name or title,
            "brand": text_of(soup, PDP_BRAND) or candidate.attributes.get("brand"),
            "description": description.strip() or None,
            "current_price": parse_price(current, "USD"),
            "original_price": parse_price(original, "USD") if original else None,
            "images": images,
            "availability": "in_stock" if sizes else None,
            "identifiers": identifiers,
            "attributes": attributes,
        }
