"""Anti-detection layer: launch parameters, humanization and challenge detection."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from playwright.async_api import Browser, BrowserContext, Page

from .behavior import BehaviorConfig, BehaviorPresets, HumanBehavior
from .fingerprint import DeviceFingerprint, paint_context, random_fingerprint

LOGGER = logging.getLogger(__name__)

STEALTH_LAUNCH_ARGS: List[str] = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-infobars",
    "--disable-extensions",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
    "--disable-backgrounding-occluded-windows",
]

# Matched case-insensitively against the page title.
DEFAULT_TITLE_SIGNATURES: Tuple[str, ...] = (
    "Attention Required! | Cloudflare",
    "Just a moment...",
    "Access denied",
    "You have been blocked",
)

# Matched case-insensitively against the page body.
DEFAULT_BODY_SIGNATURES: Tuple[str, ...] = (
    "DDoS protection by Cloudflare",
    "Checking your browser before accessing",
    "unusual traffic from your computer network",
    "Please verify you are a human",
)

DEFAULT_SELECTOR_SIGNATURES: Tuple[str, ...] = (
    "#challenge-form",
    "iframe[src*='challenges.cloudflare.com']",
    "#px-captcha",
)


@dataclass
class SiteProfile:
    """Per-site anti-detection settings."""

    locale: str = "en-US"
    timezone_id: str = "America/New_York"
    behavior: str = "normal"
    title_signatures: Sequence[str] = DEFAULT_TITLE_SIGNATURES
    body_signatures: Sequence[str] = DEFAULT_BODY_SIGNATURES
    selector_signatures: Sequence[str] = DEFAULT_SELECTOR_SIGNATURES
    extra_launch_args: List[str] = field(default_factory=list)


@dataclass
class LaunchParams:
    """Everything needed to start a stealth browser and context."""

    launch: Dict[str, Any]
    context: Dict[str, Any]
    fingerprint: DeviceFingerprint


def match_challenge_signature(
    title: str,
    body: str,
    profile: SiteProfile,
) -> Optional[str]:
    """Return the first challenge signature found in ``title``/``body``."""
    lowered_title = (title or "").lower()
    for signature in profile.title_signatures:
        if signature.lower() in lowered_title:
            return signature
    lowered_body = (body or "").lower()
    for signature in profile.body_signatures:
        if signature.lower() in lowered_body:
            return signature
    return None


class AntiDetection:
    """Stateless helper applied around every risky browser interaction.

    None of the page-facing methods raise: browser errors are logged at
    DEBUG and the call degrades to a no-op.
    """

    def __init__(self, profile: SiteProfile | None = None, behavior: BehaviorConfig | None = None) -> None:
        self.profile = profile or SiteProfile()
        self.behavior = HumanBehavior(behavior or BehaviorPresets.by_name(self.profile.behavior))

    def launch_params(self, *, headless: bool = True, fingerprint: DeviceFingerprint | None = None) -> LaunchParams:
        fingerprint = (fingerprint or random_fingerprint()).with_locale(
            self.profile.locale, self.profile.timezone_id
        )
        args = list(STEALTH_LAUNCH_ARGS)
        args.append(f"--lang={','.join(fingerprint.languages)}")
        args.append(f"--window-size={fingerprint.viewport_width},{fingerprint.viewport_height}")
        args.extend(self.profile.extra_launch_args)
        launch = {
            "headless": headless,
            "args": args,
            "ignore_default_args": ["--enable-automation"],
        }
        return LaunchParams(launch=launch, context=fingerprint.to_playwright_context(), fingerprint=fingerprint)

    async def new_context(
        self,
        browser: Browser,
        params: LaunchParams,
        *,
        storage_state: Dict[str, Any] | None = None,
    ) -> BrowserContext:
        """Create a painted context, optionally restoring a saved session."""
        kwargs = dict(params.context)
        if storage_state is not None:
            kwargs["storage_state"] = storage_state
        context = await browser.new_context(**kwargs)
        await paint_context(context, params.fingerprint)
        return context

    async def humanize(self, page: Page) -> None:
        try:
            await self.behavior.interaction_sequence(page)
        except Exception as exc:
            LOGGER.debug("humanize skipped: %s", exc)

    async def pause(self) -> None:
        await self.behavior.random_delay()

    async def detect_challenge(self, page: Page) -> Optional[str]:
        """Return a matched bot-challenge signature, logging a warning."""
        try:
            title = await page.title()
            body = await page.inner_text("body", timeout=2000)
            signature = match_challenge_signature(title, body, self.profile)
            if signature is None:
                for selector in self.profile.selector_signatures:
                    if await page.query_selector(selector):
                        signature = selector
                        break
        except Exception as exc:
            LOGGER.debug("Challenge detection skipped: %s", exc)
            return None

        if signature:
            LOGGER.warning("Bot challenge detected at %s: %s", page.url, signature)
        return signature
