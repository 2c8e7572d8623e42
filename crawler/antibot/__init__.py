"""Anti-bot toolkit used by the site scrapers.

- Device fingerprints and stealth browser launch parameters
- Human-like pointer, scroll and typing cadence
- Bot-challenge signature detection
- Persisted browser sessions per (site, account)
- reCAPTCHA solving through an external provider
- Retry budgets and consecutive-failure guards
"""

from .behavior import BehaviorConfig, BehaviorPresets, HumanBehavior
from .captcha import CaptchaProvider, CaptchaTelemetry, TwoCaptchaSolver, find_site_key
from .fingerprint import DeviceFingerprint
from .retry import ConsecutiveFailureGuard, RetryBudget, is_transient_error
from .stealth import AntiDetection, LaunchParams, SiteProfile, match_challenge_signature
from .storage import ScraperSession, SessionManager

__all__ = [
    "AntiDetection",
    "BehaviorConfig",
    "BehaviorPresets",
    "CaptchaProvider",
    "CaptchaTelemetry",
    "ConsecutiveFailureGuard",
    "DeviceFingerprint",
    "HumanBehavior",
    "LaunchParams",
    "RetryBudget",
    "ScraperSession",
    "SessionManager",
    "SiteProfile",
    "TwoCaptchaSolver",
    "find_site_key",
    "is_transient_error",
    "match_challenge_signature",
]
