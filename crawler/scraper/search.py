"""Search and filter form handling, including Chosen.js multi-selects."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from playwright.async_api import Page

from crawler.antibot.stealth import AntiDetection
from crawler.errors import NavigationError

from .navigation import NavigationHandler

LOGGER = logging.getLogger(__name__)

FIELD_KINDS = ("text", "select", "chosen", "radio", "checkbox")


@dataclass(frozen=True)
class SearchField:
    """One form control.

    ``kind`` is one of text, select, chosen, radio, checkbox. For radio
    fields ``options`` maps friendly values to the input's ``value``
    attribute. For chosen fields ``widget`` is the container the library
    renders next to the hidden native select.
    """

    selector: str
    kind: str = "text"
    widget: Optional[str] = None
    options: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in FIELD_KINDS:
            raise ValueError(f"Unsupported search field kind {self.kind!r}")


@dataclass(frozen=True)
class SearchForm:
    fields: Dict[str, SearchField]
    submit_selector: str
    results_marker: str
    results_timeout_ms: int = 30_000


def pick_option(labels: Sequence[str], wanted: str) -> Optional[int]:
    """Index of the option matching ``wanted``: exact text first, then substring."""
    target = wanted.strip().lower()
    normalized = [label.strip().lower() for label in labels]
    for index, label in enumerate(normalized):
        if label == target:
            return index
    for index, label in enumerate(normalized):
        if target and target in label:
            return index
    return None


class SearchHandler:
    """Fills and submits a site's search form; tracks what was applied."""

    def __init__(self, page: Page, anti: AntiDetection, form: SearchForm, navigation: NavigationHandler) -> None:
        self.page = page
        self.anti = anti
        self.form = form
        self.navigation = navigation
        self.applied_filters: Dict[str, Any] = {}

    async def apply(self, criteria: Dict[str, Any]) -> Dict[str, Any]:
        """Fill every known field in ``criteria`` and submit.

        Unknown keys are logged and ignored. Returns the applied filters.
        """
        for name, value in criteria.items():
            if value is None or value == "" or value == []:
                continue
            search_field = self.form.fields.get(name)
            if search_field is None:
                LOGGER.warning("Ignoring unknown search field %r", name)
                continue
            await self._fill(name, search_field, value)
            self.applied_filters[name] = value
            await self.navigation.pause()

        await self.submit()
        LOGGER.info("Search submitted with filters: %s", self.applied_filters)
        return dict(self.applied_filters)

    async def submit(self) -> None:
        """Click submit and wait for the results marker.

        Raises
        ------
        BotChallengeError
            If the submit landed on an anti-bot interstitial
        NavigationError
            If the results table never appears
        """
        await self.anti.humanize(self.page)
        await self.page.click(self.form.submit_selector)
        found = await self.navigation.wait_for_marker(self.form.results_marker, self.form.results_timeout_ms)
        await self.navigation.check_challenge()
        if not found:
            raise NavigationError(
                f"Search results marker {self.form.results_marker!r} did not appear after submit"
            )

    async def _fill(self, name: str, search_field: SearchField, value: Any) -> None:
        kind = search_field.kind
        if kind == "text":
            await self.anti.behavior.type_like_human(self.page, search_field.selector, str(value))
        elif kind == "select":
            await self._select_native(search_field.selector, value)
        elif kind == "chosen":
            await self._choose(name, search_field, value)
        elif kind == "radio":
            mapped = search_field.options.get(str(value), str(value))
            await self.page.check(f"{search_field.selector}[value='{mapped}']")
        elif kind == "checkbox":
            await self.page.set_checked(search_field.selector, bool(value))

    async def _select_native(self, selector: str, value: Any) -> None:
        values = value if isinstance(value, list) else [value]
        try:
            await self.page.select_option(selector, label=[str(v) for v in values])
        except Exception:
            await self.page.select_option(selector, value=[str(v) for v in values])

    async def _choose(self, name: str, search_field: SearchField, value: Any) -> None:
        """Select options on a Chosen.js widget by opening it and clicking.

        Falls back to the native select when the library is not active.
        """
        native_visible = await self.page.is_visible(search_field.selector)
        if native_visible or not search_field.widget:
            await self._select_native(search_field.selector, value)
            return

        wanted: List[str] = [str(v) for v in (value if isinstance(value, list) else [value])]
        for item in wanted:
            await self.page.click(f"{search_field.widget} .chosen-single, {search_field.widget} .chosen-choices")
            results_selector = f"{search_field.widget} .chosen-drop .chosen-results li.active-result"
            await self.page.wait_for_selector(results_selector, state="visible", timeout=5000)
            options = await self.page.query_selector_all(results_selector)
            labels = [(await option.inner_text()) for option in options]
            index = pick_option(labels, item)
            if index is None:
                LOGGER.warning("Option %r not available for %s (have %d options)", item, name, len(labels))
                await self.page.keyboard.press("Escape")
                continue
            await options[index].click()
            LOGGER.debug("Chose %r for %s", labels[index].strip(), name)
