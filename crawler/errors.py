"""Exception taxonomy shared by the scraper, the task queue and the API."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class LoginErrorType(str, Enum):
    """Classification of a failed login."""

    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    CAPTCHA_REQUIRED = "captcha_required"
    SESSION_EXPIRED = "session_expired"
    ACCESS_DENIED = "access_denied"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


TERMINAL_LOGIN_ERRORS = frozenset(
    {
        LoginErrorType.LOGIN_FAILED,
        LoginErrorType.ACCOUNT_LOCKED,
        LoginErrorType.ACCESS_DENIED,
    }
)


class ScraperError(Exception):
    """Base class for all engine errors."""


class NavigationError(ScraperError):
    """Page could not be reached or its ready marker never appeared."""


class AuthenticationError(ScraperError):
    """Login was rejected by the site. Never retried."""

    def __init__(self, message: str, error_type: LoginErrorType = LoginErrorType.LOGIN_FAILED) -> None:
        super().__init__(message)
        self.error_type = error_type


class CaptchaError(ScraperError):
    """CAPTCHA could not be solved under the configured policy."""


class ParsingError(ScraperError):
    """Listing structure could not be parsed at all."""


class BotChallengeError(ScraperError):
    """An anti-bot interstitial was served instead of content."""

    def __init__(self, signature: str, url: Optional[str] = None) -> None:
        super().__init__(f"Bot challenge detected ({signature}) at {url or 'unknown url'}")
        self.signature = signature
        self.url = url


class SessionStoreError(ScraperError):
    """Session document could not be read or written."""


class TaskNotFoundError(ScraperError):
    """No task definition or execution matches the given reference."""


class TaskDisabledError(ScraperError):
    """The task definition exists but is disabled."""


class InvalidTransitionError(ScraperError):
    """A task execution was asked to move against its state machine."""


class QueueShutdownError(ScraperError):
    """The queue manager no longer accepts work."""
