"""FMTC program directory: authenticated merchant listing and detail pages."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Tag

from crawler.antibot.stealth import SiteProfile
from crawler.models import CandidateRecord, TaskDefinition
from crawler.scraper.adapter import SiteAdapter
from crawler.scraper.html import absolute_url, clean_text, node_text, slugify, text_of
from crawler.scraper.login import Credentials, LoginConfig
from crawler.scraper.search import SearchField, SearchForm
from crawler.scraper.selectors import SelectorCatalog

LOGGER = logging.getLogger(__name__)

BASE_URL = "https://account.fmtc.co"
LOGIN_URL = f"{BASE_URL}/cp/login"
DIRECTORY_URL = f"{BASE_URL}/cp/program_directory/index"
DEFAULT_LIST_URL = f"{BASE_URL}/cp/program_directory/index/net/0/opm/0/cntry/0/cat/2/unsmrch/0"

NETWORK_ID_PATTERN = re.compile(r"\((\d+)\)\s*$")
FMTC_ID_PATTERN = re.compile(r"FMTC\s*ID[:\s]*(\d+)", re.IGNORECASE)

TOOL_LINKS = {
    "logo_120x60": "120x60 Logo",
    "logo_88x31": "88x31 Logo",
    "screenshot_280x210": "280x210 Screenshot",
    "screenshot_600x450": "600x450 Screenshot",
}

CATALOG = SelectorCatalog(
    site_id="fmtc",
    base_url=BASE_URL,
    results_ready="#program_directory_table, table.dataTable, table.fmtc-table",
    results_container=("#program_directory_table", "table.dataTable", "table.fmtc-table", "table"),
    result_row="tr",
    row_link=("a[href*='/m/']", "a[href*='program_directory']", "a[href]"),
    row_name=("td:first-child a", "td:nth-child(2) a"),
    column_names=("name", "country", "network", "date_added", "premium_subscriptions"),
    info_text=("#program_directory_table_info", ".dataTables_info"),
    next_page=(
        "#program_directory_table_paginate .paginate_button.next",
        ".dataTables_paginate .next",
        ".pagination .next",
    ),
    source_id_pattern=r"/m(?:erchant)?/(\d+)",
    detail_ready="li.list-group-item, .merchant-info, .program-info",
)

SEARCH_FORM = SearchForm(
    fields={
        "searchText": SearchField("#search_text"),
        "networkId": SearchField("select[name='network_id']", "select"),
        "opmProvider": SearchField("select[name='omp_provider']", "select"),
        "category": SearchField("#cat", "chosen", widget="#cat_chosen"),
        "country": SearchField("select[name='country']", "select"),
        "shippingCountry": SearchField("select[name='ships_to']", "select"),
        "displayType": SearchField(
            "#programSearchForm input[type='radio']",
            "radio",
            options={"all": "0", "accepting": "1", "not_accepting": "2"},
        ),
    },
    submit_selector="#search_submit, #programSearchForm button[type='submit']",
    results_marker="#program_directory_table",
)

LOGIN = LoginConfig(
    login_url=LOGIN_URL,
    protected_url=DIRECTORY_URL,
    form_selector="form#form, form[name='form'], form[action='/cp/login']",
    username_selector="#username, input[name='username']",
    password_selector="#password, input[name='password']",
    submit_selector="button[type='submit'], .btn.fmtc-primary-btn",
    error_selector=".error, .alert-danger, .login-error, .rc-anchor-error-msg",
    logged_in_selector=".user-menu, .logout, a[href*='logout']",
    logout_selector="a[href*='logout']",
    captcha_selector=".g-recaptcha, #rc-anchor-container, .recaptcha-checkbox",
    captcha_response_selector="#g-recaptcha-response, textarea[name='g-recaptcha-response']",
    login_url_marker="/cp/login",
)


def _info_items(soup: BeautifulSoup) -> Dict[str, Tag]:
    """Map "Primary Category:"-style labels to their value nodes."""
    items: Dict[str, Tag] = {}
    for item in soup.select("li.list-group-item"):
        label_node = item.find("span")
        label = node_text(label_node)
        if not label or not label.endswith(":"):
            continue
        value = item.select_one(".ml-5") or item
        items[slugify(label.rstrip(":"))] = value
    return items


def _tool_link(soup: BeautifulSoup, label: str) -> Optional[str]:
    for anchor in soup.find_all("a"):
        if label.lower() in clean_text(anchor.get_text()).lower():
            return absolute_url(anchor.get("href"), BASE_URL)
    return None


def parse_network_rows(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    """Rows of the merchant's network table: FMTC id, network, status, join link."""
    rows: List[Dict[str, Any]] = []
    for row in soup.select("table.fmtc-table tbody tr, .table-striped tbody tr"):
        cells = row.find_all("td")
        if len(cells) < 4:
            continue
        network = node_text(cells[2]) or ""
        network_id = NETWORK_ID_PATTERN.search(network)
        join = cells[4].find("a") if len(cells) > 4 else None
        rows.append(
            {
                "fmtc_id": node_text(cells[1]),
                "network": NETWORK_ID_PATTERN.sub("", network).strip() or None,
                "network_id": network_id.group(1) if network_id else None,
                "status": node_text(cells[3].select_one(".badge") or cells[3]),
                "join_url": absolute_url(join.get("href"), BASE_URL) if join else None,
            }
        )
    return rows


class FmtcAdapter(SiteAdapter):
    site_id = "fmtc"
    catalog = CATALOG
    profile = SiteProfile(locale="en-US", timezone_id="America/New_York", behavior="cautious")
    default_start_url = DEFAULT_LIST_URL

    def login_config(self) -> LoginConfig:
        return LOGIN

    def credentials(self, settings, definition: TaskDefinition) -> Optional[Credentials]:
        username = definition.account or settings.fmtc_username
        if not username or not settings.fmtc_password:
            return None
        return Credentials(username=username, password=settings.fmtc_password)

    def search_form(self) -> SearchForm:
        return SEARCH_FORM

    def candidate_fields(self, candidate: CandidateRecord) -> Dict[str, Any]:
        attributes = candidate.attributes
        return {
            "identifiers": {"fmtc_id": candidate.source_id} if candidate.source_id else {},
            "attributes": {
                "country": attributes.get("country"),
                "network": attributes.get("network"),
                "date_added": attributes.get("date_added"),
            },
        }

    def parse_detail(self, soup: BeautifulSoup, candidate: CandidateRecord) -> Dict[str, Any]:
        info = _info_items(soup)
        networks = parse_network_rows(soup)

        homepage_node = info.get("homepage")
        homepage = None
        if homepage_node is not None:
            link = homepage_node.find("a")
            homepage = link.get("href") if link else node_text(homepage_node)

        ships_to = node_text(info.get("ships_to"))
        fmtc_id = networks[0]["fmtc_id"] if networks else None
        if not fmtc_id:
            match = FMTC_ID_PATTERN.search(soup.get_text(" "))
            fmtc_id = match.group(1) if match else candidate.source_id

        images: List[Optional[str]] = []
        logo_node = info.get("logo")
        if logo_node is not None and logo_node.find("img"):
            images.append(logo_node.find("img").get("src"))
        tools = {key: _tool_link(soup, label) for key, label in TOOL_LINKS.items()}
        images.extend(url for url in tools.values() if url)

        aw_url = None
        for item in soup.select("li"):
            if "AW URL:" in item.get_text():
                link = item.find("a")
                aw_url = link.get("href") if link else None
                break

        preview = soup.select_one("a.showdeals, .showdeals")
        fresh_reach = any("FreshReach" in clean_text(node.get_text()) for node in soup.select("span.label, .label"))

        return {
            "name": text_of(soup, ("h1", ".merchant-name", ".program-name")) or candidate.name,
            "availability": networks[0]["status"] if networks else None,
            "images": images,
            "identifiers": {"fmtc_id": fmtc_id} if fmtc_id else {},
            "attributes": {
                "homepage": homepage,
                "primary_category": node_text(info.get("primary_category")),
                "primary_country": node_text(info.get("primary_country")),
                "ships_to": [part.strip() for part in ships_to.split(",") if part.strip()] if ships_to else [],
                "affiliate_url": aw_url,
                "preview_deals_url": absolute_url(preview.get("href"), BASE_URL) if preview else None,
                "fresh_reach_supported": fresh_reach,
                "networks": networks,
                **{key: url for key, url in tools.items() if url},
            },
        }
