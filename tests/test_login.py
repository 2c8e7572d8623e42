import asyncio
from dataclasses import replace
from types import SimpleNamespace

from crawler.antibot.captcha import CaptchaTelemetry
from crawler.antibot.storage import SessionManager
from crawler.errors import CaptchaError, LoginErrorType
from crawler.scraper.login import CaptchaPolicy, Credentials, LoginHandler, LoginState
from crawler.sites.fmtc import LOGIN

CONFIG = replace(LOGIN, result_timeout_ms=2000, form_timeout_ms=1000)
SITE_KEY = "6LcAbCdEfGhIjKlMnOpQrStUvWxYz0123456789-_"
CREDENTIALS = Credentials(username="user@example.com", password="secret")

CAPTCHA_FLOW = [
    LoginState.START,
    LoginState.CREDENTIALS_SUBMITTED,
    LoginState.CAPTCHA_REQUIRED,
    LoginState.CAPTCHA_SOLVED,
    LoginState.SUBMITTED,
    LoginState.SUCCESS,
]


class StorageContext:
    async def storage_state(self):
        return {"cookies": [{"name": "sid", "value": "abc", "domain": "account.fmtc.co", "path": "/"}], "origins": []}


class Node:
    def __init__(self, value=""):
        self.value = value

    async def input_value(self):
        return self.value

    async def get_attribute(self, name):
        return SITE_KEY


class LoginPage:
    """Login form that shows a reCAPTCHA after the first submit.

    The second submit (after a token is in place) lands on the directory.
    ``human_token`` appears in the response field on its second read.
    """

    def __init__(self, human_token=None):
        self.url = "about:blank"
        self.context = StorageContext()
        self.human_token = human_token
        self.token_reads = 0
        self.clicks = 0
        self.injected = []
        self.logged_in = False

    async def goto(self, url, wait_until=None, timeout=None):
        self.url = url

    async def wait_for_selector(self, selector, state=None, timeout=None):
        return Node()

    async def wait_for_load_state(self, state=None):
        pass

    async def query_selector(self, selector):
        if selector == CONFIG.logged_in_selector:
            return Node() if self.logged_in else None
        if selector == CONFIG.error_selector:
            return None
        if selector == CONFIG.captcha_selector:
            return Node()
        if selector == CONFIG.captcha_response_selector:
            return Node(self.injected[-1] if self.injected else "")
        return Node()

    async def input_value(self, selector):
        if selector != CONFIG.captcha_response_selector:
            return CREDENTIALS.password
        self.token_reads += 1
        if self.human_token and self.token_reads > 1:
            return self.human_token
        return ""

    async def click(self, selector):
        self.clicks += 1
        if self.injected:
            self.url = CONFIG.protected_url
            self.logged_in = True

    async def evaluate(self, script, token):
        self.injected.append(token)
        return 1

    async def content(self):
        return "<html></html>"


async def _noop(*args, **kwargs):
    pass


class TypingAnti:
    def __init__(self):
        self.typed = []
        self.humanize = _noop
        self.behavior = SimpleNamespace(type_like_human=self._type, random_delay=_noop)

    async def _type(self, page, selector, text):
        self.typed.append((selector, text))


class FakeProvider:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def solve(self, site_key, page_url):
        self.calls.append((site_key, page_url))
        if self.error:
            raise self.error
        return "auto-token", CaptchaTelemetry(site_key=site_key, page_url=page_url, status="solved")


def _handler(tmp_path, page, policy, **kwargs):
    return LoginHandler(page, "fmtc", CONFIG, SessionManager(tmp_path), TypingAnti(), captcha_policy=policy, **kwargs)


def test_skip_policy_fails_with_captcha_required(tmp_path):
    page = LoginPage()
    handler = _handler(tmp_path, page, CaptchaPolicy.SKIP)

    result = asyncio.run(handler.login(CREDENTIALS))

    assert not result.success
    assert result.requires_captcha
    assert result.error_type == LoginErrorType.CAPTCHA_REQUIRED
    assert result.states[-2:] == [LoginState.CAPTCHA_REQUIRED, LoginState.FAILURE]
    assert result.attempts == 1
    assert page.clicks == 1
    assert handler.sessions.load("fmtc", CREDENTIALS.account) is None


def test_auto_policy_injects_token_and_resubmits(tmp_path):
    page = LoginPage()
    provider = FakeProvider()
    handler = _handler(tmp_path, page, CaptchaPolicy.AUTO, captcha_provider=provider)

    result = asyncio.run(handler.login(CREDENTIALS))

    assert result.success
    assert result.states == CAPTCHA_FLOW
    assert provider.calls == [(SITE_KEY, CONFIG.login_url)]
    assert page.injected == ["auto-token"]
    assert page.clicks == 2
    assert handler.anti.typed == [
        (CONFIG.username_selector, CREDENTIALS.username),
        (CONFIG.password_selector, CREDENTIALS.password),
    ]
    assert handler.sessions.load("fmtc", CREDENTIALS.account) is not None


def test_auto_policy_provider_failure_is_a_captcha_failure(tmp_path):
    page = LoginPage()
    provider = FakeProvider(error=CaptchaError("ERROR_ZERO_BALANCE"))
    handler = _handler(tmp_path, page, CaptchaPolicy.AUTO, captcha_provider=provider)

    result = asyncio.run(handler.login(CREDENTIALS))

    assert not result.success
    assert result.requires_captcha
    assert page.injected == []


def test_manual_policy_picks_up_token_from_response_field(tmp_path):
    page = LoginPage(human_token="human-token")
    handler = _handler(tmp_path, page, CaptchaPolicy.MANUAL, manual_captcha_timeout=5)

    result = asyncio.run(handler.login(CREDENTIALS))

    assert result.success
    assert result.states == CAPTCHA_FLOW
    assert page.injected == ["human-token"]
    assert handler.pending_captcha is None


def test_manual_policy_times_out(tmp_path):
    page = LoginPage()
    handler = _handler(tmp_path, page, CaptchaPolicy.MANUAL, manual_captcha_timeout=0.05)

    result = asyncio.run(handler.login(CREDENTIALS))

    assert not result.success
    assert result.requires_captcha
    assert "policy=manual" in result.error
    assert page.injected == []
    assert handler.pending_captcha is None
