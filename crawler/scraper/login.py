"""Credential login with CAPTCHA handling and session reuse."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from playwright.async_api import BrowserContext, Page

from crawler.antibot.captcha import CaptchaProvider, find_site_key
from crawler.antibot.retry import RetryBudget, is_transient_error
from crawler.antibot.stealth import AntiDetection
from crawler.antibot.storage import ScraperSession, SessionManager
from crawler.errors import TERMINAL_LOGIN_ERRORS, CaptchaError, LoginErrorType, SessionStoreError

LOGGER = logging.getLogger(__name__)

ERROR_PATTERNS = {
    LoginErrorType.ACCOUNT_LOCKED: (
        "account locked",
        "account suspended",
        "account disabled",
        "too many attempts",
    ),
    LoginErrorType.LOGIN_FAILED: (
        "invalid credentials",
        "incorrect username",
        "incorrect password",
        "invalid username",
        "invalid password",
        "login failed",
        "authentication failed",
    ),
    LoginErrorType.CAPTCHA_REQUIRED: (
        "captcha",
        "verification required",
        "prove you are human",
    ),
    LoginErrorType.SESSION_EXPIRED: (
        "session expired",
        "please login again",
        "authentication timeout",
    ),
    LoginErrorType.ACCESS_DENIED: (
        "access denied",
        "permission denied",
        "unauthorized",
        "forbidden",
    ),
}

INJECT_TOKEN_SCRIPT = """
(token) => {
    const fields = document.querySelectorAll(
        '#g-recaptcha-response, textarea[name="g-recaptcha-response"]'
    );
    fields.forEach((el) => {
        el.style.display = 'block';
        el.value = token;
        el.innerHTML = token;
        el.dispatchEvent(new Event('input', { bubbles: true }));
        el.dispatchEvent(new Event('change', { bubbles: true }));
    });
    const widget = document.querySelector('.g-recaptcha[data-callback]');
    if (widget) {
        const callback = widget.getAttribute('data-callback');
        if (callback && typeof window[callback] === 'function') {
            window[callback](token);
        }
    }
    return fields.length;
}
"""


def classify_error_text(text: Optional[str]) -> LoginErrorType:
    """Map a login error message to a :class:`LoginErrorType`."""
    lowered = (text or "").lower()
    for error_type, patterns in ERROR_PATTERNS.items():
        if any(pattern in lowered for pattern in patterns):
            return error_type
    return LoginErrorType.UNKNOWN


class LoginState(str, Enum):
    START = "START"
    CREDENTIALS_SUBMITTED = "CREDENTIALS_SUBMITTED"
    CAPTCHA_REQUIRED = "CAPTCHA_REQUIRED"
    CAPTCHA_SOLVED = "CAPTCHA_SOLVED"
    SUBMITTED = "SUBMITTED"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class CaptchaPolicy(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    SKIP = "skip"


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    @property
    def account(self) -> str:
        return self.username


@dataclass(frozen=True)
class LoginConfig:
    """URLs and selectors of one site's login flow."""

    login_url: str
    protected_url: str
    form_selector: str
    username_selector: str
    password_selector: str
    submit_selector: str
    error_selector: str
    logged_in_selector: str
    logout_selector: str
    captcha_selector: str = ".g-recaptcha, #rc-anchor-container, iframe[src*='recaptcha']"
    captcha_response_selector: str = "#g-recaptcha-response"
    login_url_marker: str = "login"
    result_timeout_ms: int = 30_000
    form_timeout_ms: int = 15_000


@dataclass
class LoginResult:
    success: bool
    error: Optional[str] = None
    error_type: Optional[LoginErrorType] = None
    requires_captcha: bool = False
    reused_session: bool = False
    states: List[LoginState] = field(default_factory=list)
    attempts: int = 0


class CaptchaWait:
    """Cancellable wait for a human to solve a CAPTCHA.

    Resolves with a token when :meth:`resolve` is called, or with None on
    timeout or :meth:`cancel`.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, token: str) -> None:
        if not self._future.done():
            self._future.set_result(token)

    def cancel(self) -> None:
        if not self._future.done():
            self._future.set_result(None)

    async def wait(self, timeout: float) -> Optional[str]:
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError:
            self.cancel()
            return None


async def apply_session(context: BrowserContext, session: ScraperSession) -> None:
    """Load a stored session into an already-open context."""
    if session.cookies:
        await context.add_cookies(session.cookies)
    for origin in session.origins:
        items = {item["name"]: item["value"] for item in origin.get("localStorage", []) if "name" in item}
        if not items:
            continue
        await context.add_init_script(
            "(() => { if (location.origin === %s) { const items = %s;"
            " for (const [k, v] of Object.entries(items)) { localStorage.setItem(k, v); } } })();"
            % (json.dumps(origin.get("origin")), json.dumps(items))
        )


class LoginHandler:
    """Runs the login state machine for one site and account.

    Flow: START -> CREDENTIALS_SUBMITTED -> [CAPTCHA_REQUIRED ->
    CAPTCHA_SOLVED -> SUBMITTED] -> SUCCESS | FAILURE. Transient browser
    errors are retried with backoff; rejected credentials and locked
    accounts are not.
    """

    def __init__(
        self,
        page: Page,
        site_id: str,
        config: LoginConfig,
        sessions: SessionManager,
        anti: AntiDetection,
        *,
        captcha_policy: CaptchaPolicy | str = CaptchaPolicy.MANUAL,
        captcha_provider: Optional[CaptchaProvider] = None,
        manual_captcha_timeout: float = 120.0,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
    ) -> None:
        self.page = page
        self.site_id = site_id
        self.config = config
        self.sessions = sessions
        self.anti = anti
        self.captcha_policy = CaptchaPolicy(captcha_policy)
        self.captcha_provider = captcha_provider
        self.manual_captcha_timeout = manual_captcha_timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.pending_captcha: Optional[CaptchaWait] = None
        self._account: Optional[str] = None

    # -- session reuse -------------------------------------------------

    async def ensure_session(self, credentials: Credentials) -> LoginResult:
        """Reuse a stored session when it still works, else log in.

        Runs under the account's login guard, so concurrent runs for the
        same account log in once; later runs pick up the saved session.
        """
        self._account = credentials.account
        async with self.sessions.login_guard(self.site_id, credentials.account):
            stored = self._load_stored(credentials.account)
            if stored is not None:
                await apply_session(self.page.context, stored)
                if await self.refresh_session():
                    LOGGER.info("Reusing stored session for %s/%s", self.site_id, credentials.account)
                    return LoginResult(success=True, reused_session=True, states=[LoginState.SUCCESS])
                LOGGER.info("Stored session for %s/%s is no longer valid", self.site_id, credentials.account)
                self._invalidate_quietly(credentials.account)
            return await self.login(credentials)

    def _load_stored(self, account: str) -> Optional[ScraperSession]:
        try:
            return self.sessions.load(self.site_id, account)
        except SessionStoreError as exc:
            LOGGER.warning("Session store unavailable, falling back to fresh login: %s", exc)
            return None

    def _invalidate_quietly(self, account: str) -> None:
        try:
            self.sessions.invalidate(self.site_id, account)
        except SessionStoreError as exc:
            LOGGER.warning("Could not invalidate session: %s", exc)

    async def is_logged_in(self) -> bool:
        try:
            if self.config.login_url_marker in (self.page.url or "").lower():
                return False
            return await self.page.query_selector(self.config.logged_in_selector) is not None
        except Exception as exc:
            LOGGER.debug("Logged-in check failed: %s", exc)
            return False

    async def refresh_session(self) -> bool:
        """Load the protected page to validate the current session."""
        try:
            await self.page.goto(self.config.protected_url, wait_until="domcontentloaded", timeout=45_000)
            await self.page.wait_for_load_state("domcontentloaded")
        except Exception as exc:
            LOGGER.warning("Session check failed: %s", exc)
            return False
        return await self.is_logged_in()

    async def logout(self) -> bool:
        try:
            control = await self.page.query_selector(self.config.logout_selector)
            if control is None:
                LOGGER.info("No logout control found; session left as is")
                return False
            await control.click()
            await self.page.wait_for_load_state("domcontentloaded")
        except Exception as exc:
            LOGGER.warning("Logout failed: %s", exc)
            return False
        if self._account:
            self._invalidate_quietly(self._account)
        LOGGER.info("Logged out of %s", self.site_id)
        return True

    # -- login ---------------------------------------------------------

    async def login(self, credentials: Credentials) -> LoginResult:
        self._account = credentials.account
        budget = RetryBudget(max_retries=max(self.max_attempts - 1, 0), backoff_base=self.backoff_base)
        attempts = 0

        while True:
            attempts += 1
            states: List[LoginState] = [LoginState.START]
            try:
                result = await self._attempt(credentials, states)
            except Exception as exc:
                transient = is_transient_error(exc)
                states.append(LoginState.FAILURE)
                result = LoginResult(
                    success=False,
                    error=str(exc),
                    error_type=LoginErrorType.NETWORK_ERROR if transient else LoginErrorType.UNKNOWN,
                    states=states,
                )
                if not transient:
                    LOGGER.error("Login for %s failed: %s", self.site_id, exc)
                    result.attempts = attempts
                    return result
            result.attempts = attempts

            if result.success:
                await self._save_session(credentials.account)
                return result
            if result.error_type in TERMINAL_LOGIN_ERRORS or result.requires_captcha:
                LOGGER.error("Login for %s rejected (%s): %s", self.site_id, result.error_type, result.error)
                return result
            if not budget.should_retry():
                LOGGER.error("Login for %s failed after %d attempt(s): %s", self.site_id, attempts, result.error)
                return result

            delay = budget.get_backoff_delay()
            budget.record_attempt()
            LOGGER.warning(
                "Login attempt %d for %s failed (%s); retrying in %.1fs",
                attempts,
                self.site_id,
                result.error,
                delay,
            )
            await asyncio.sleep(delay)

    async def _attempt(self, credentials: Credentials, states: List[LoginState]) -> LoginResult:
        if await self.is_logged_in():
            states.append(LoginState.SUCCESS)
            return LoginResult(success=True, states=states)

        cfg = self.config
        await self.page.goto(cfg.login_url, wait_until="domcontentloaded", timeout=45_000)
        await self.page.wait_for_selector(cfg.form_selector, state="visible", timeout=cfg.form_timeout_ms)
        for selector in (cfg.username_selector, cfg.password_selector, cfg.submit_selector):
            if await self.page.query_selector(selector) is None:
                states.append(LoginState.FAILURE)
                return LoginResult(
                    success=False,
                    error=f"Login form incomplete: {selector} missing",
                    error_type=LoginErrorType.UNKNOWN,
                    states=states,
                )

        await self.anti.humanize(self.page)
        await self.anti.behavior.type_like_human(self.page, cfg.username_selector, credentials.username)
        await self.anti.behavior.random_delay(0.3, 1.0)
        await self.anti.behavior.type_like_human(self.page, cfg.password_selector, credentials.password)
        await self.anti.behavior.random_delay(0.3, 1.0)
        await self.page.click(cfg.submit_selector)
        states.append(LoginState.CREDENTIALS_SUBMITTED)

        outcome = await self._await_outcome()
        if outcome.error_type != LoginErrorType.CAPTCHA_REQUIRED:
            states.append(LoginState.SUCCESS if outcome.success else LoginState.FAILURE)
            outcome.states = states
            return outcome

        states.append(LoginState.CAPTCHA_REQUIRED)
        token = await self._solve_captcha()
        if not token:
            states.append(LoginState.FAILURE)
            return LoginResult(
                success=False,
                error=f"CAPTCHA required and not solved (policy={self.captcha_policy.value})",
                error_type=LoginErrorType.CAPTCHA_REQUIRED,
                requires_captcha=True,
                states=states,
            )
        states.append(LoginState.CAPTCHA_SOLVED)

        # Some forms clear the password after a rejected submit.
        if not await self.page.input_value(cfg.password_selector):
            await self.anti.behavior.type_like_human(self.page, cfg.password_selector, credentials.password)
        await self.page.click(cfg.submit_selector)
        states.append(LoginState.SUBMITTED)

        outcome = await self._await_outcome(captcha_solved=True)
        states.append(LoginState.SUCCESS if outcome.success else LoginState.FAILURE)
        outcome.states = states
        return outcome

    async def _await_outcome(self, *, captcha_solved: bool = False) -> LoginResult:
        """Poll until an error message, a logged-in page, or timeout."""
        cfg = self.config
        try:
            await self.page.wait_for_load_state("domcontentloaded")
        except Exception as exc:
            LOGGER.debug("Load state wait after submit failed: %s", exc)

        deadline = time.monotonic() + cfg.result_timeout_ms / 1000
        while time.monotonic() < deadline:
            error_node = await self.page.query_selector(cfg.error_selector)
            if error_node is not None and await error_node.is_visible():
                text = (await error_node.inner_text()).strip()
                if text:
                    error_type = classify_error_text(text)
                    return LoginResult(
                        success=False,
                        error=text,
                        error_type=error_type,
                        requires_captcha=error_type == LoginErrorType.CAPTCHA_REQUIRED,
                    )

            if await self.is_logged_in():
                return LoginResult(success=True)
            if cfg.login_url_marker not in (self.page.url or "").lower():
                # Left the login page without an error: accepted.
                return LoginResult(success=True)
            if not captcha_solved and await self._captcha_pending():
                return LoginResult(
                    success=False,
                    error="CAPTCHA challenge on login form",
                    error_type=LoginErrorType.CAPTCHA_REQUIRED,
                    requires_captcha=True,
                )
            await asyncio.sleep(0.5)

        return LoginResult(
            success=False,
            error="Still on login page after submit",
            error_type=LoginErrorType.UNKNOWN,
        )

    async def _captcha_pending(self) -> bool:
        if await self.page.query_selector(self.config.captcha_selector) is None:
            return False
        response = await self.page.query_selector(self.config.captcha_response_selector)
        if response is None:
            return True
        return not (await response.input_value()).strip()

    # -- captcha -------------------------------------------------------

    async def _solve_captcha(self) -> Optional[str]:
        policy = self.captcha_policy
        if policy == CaptchaPolicy.SKIP:
            LOGGER.warning("CAPTCHA required on %s and policy is skip", self.site_id)
            return None
        if policy == CaptchaPolicy.MANUAL:
            return await self._wait_for_manual_solve()
        return await self._solve_automatically()

    async def _wait_for_manual_solve(self) -> Optional[str]:
        LOGGER.warning(
            "CAPTCHA required on %s; waiting up to %.0fs for a manual solve",
            self.site_id,
            self.manual_captcha_timeout,
        )
        waiter = CaptchaWait()
        self.pending_captcha = waiter

        async def watch_response_field() -> None:
            while not waiter.done:
                try:
                    value = await self.page.input_value(self.config.captcha_response_selector)
                except Exception:
                    value = ""
                if value.strip():
                    waiter.resolve(value.strip())
                    return
                await asyncio.sleep(1.0)

        watcher = asyncio.create_task(watch_response_field())
        try:
            token = await waiter.wait(self.manual_captcha_timeout)
        finally:
            watcher.cancel()
            self.pending_captcha = None
        if token:
            await self.page.evaluate(INJECT_TOKEN_SCRIPT, token)
            LOGGER.info("CAPTCHA solved manually on %s", self.site_id)
        else:
            LOGGER.error("Manual CAPTCHA wait timed out on %s", self.site_id)
        return token

    async def _solve_automatically(self) -> Optional[str]:
        if self.captcha_provider is None:
            LOGGER.error("CAPTCHA policy is auto but no provider is configured")
            return None
        element = await self.page.query_selector("[data-sitekey]")
        site_key = await element.get_attribute("data-sitekey") if element else None
        if not site_key:
            site_key = find_site_key(await self.page.content())
        if not site_key:
            LOGGER.error("CAPTCHA present on %s but no site key found", self.site_id)
            return None

        try:
            token, telemetry = await asyncio.to_thread(self.captcha_provider.solve, site_key, self.page.url)
        except CaptchaError as exc:
            LOGGER.error("Automatic CAPTCHA solve failed on %s: %s", self.site_id, exc)
            return None
        injected = await self.page.evaluate(INJECT_TOKEN_SCRIPT, token)
        LOGGER.info("Injected CAPTCHA token into %s field(s): %s", injected, telemetry.to_dict())
        return token

    async def _save_session(self, account: str) -> None:
        try:
            state = await self.page.context.storage_state()
            session = ScraperSession.from_storage_state(self.site_id, account, state)
            self.sessions.save(self.site_id, account, session)
        except SessionStoreError as exc:
            LOGGER.warning("Logged in but could not persist session: %s", exc)
