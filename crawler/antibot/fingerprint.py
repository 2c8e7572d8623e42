"""Device fingerprints and Playwright context painting."""
from __future__ import annotations

import json
import random
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List

from playwright.async_api import BrowserContext


@dataclass
class DeviceFingerprint:
    """Device fingerprint configuration."""

    user_agent: str
    viewport_width: int
    viewport_height: int
    device_scale_factor: float
    locale: str
    timezone_id: str
    platform: str
    webgl_vendor: str
    webgl_renderer: str
    languages: List[str] = field(default_factory=lambda: ["en-US", "en"])

    def to_playwright_context(self) -> Dict[str, Any]:
        """Convert to Playwright ``new_context`` kwargs."""
        return {
            "user_agent": self.user_agent,
            "viewport": {
                "width": self.viewport_width,
                "height": self.viewport_height,
            },
            "device_scale_factor": self.device_scale_factor,
            "is_mobile": False,
            "has_touch": False,
            "locale": self.locale,
            "timezone_id": self.timezone_id,
            "extra_http_headers": {
                "Accept-Language": ",".join(self.languages),
            },
        }

    def with_locale(self, locale: str, timezone_id: str) -> "DeviceFingerprint":
        primary = locale.split("-")[0]
        return replace(
            self,
            locale=locale,
            timezone_id=timezone_id,
            languages=[locale, primary] if primary != locale else [locale],
        )


# Desktop Chrome only: both target sites serve a reduced layout to mobile
# agents that the selectors do not cover.
DESKTOP_FINGERPRINTS: List[DeviceFingerprint] = [
    DeviceFingerprint(
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
        ),
        viewport_width=1920,
        viewport_height=1080,
        device_scale_factor=1.0,
        locale="en-US",
        timezone_id="America/New_York",
        platform="Win32",
        webgl_vendor="Google Inc. (NVIDIA)",
        webgl_renderer="ANGLE (NVIDIA GeForce GTX 1660 Direct3D11 vs_5_0 ps_5_0)",
    ),
    DeviceFingerprint(
        user_agent=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
        ),
        viewport_width=1440,
        viewport_height=900,
        device_scale_factor=2.0,
        locale="en-US",
        timezone_id="America/Los_Angeles",
        platform="MacIntel",
        webgl_vendor="Google Inc. (Apple)",
        webgl_renderer="ANGLE (Apple, Apple M2, OpenGL 4.1)",
    ),
    DeviceFingerprint(
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36"
        ),
        viewport_width=1536,
        viewport_height=864,
        device_scale_factor=1.25,
        locale="en-US",
        timezone_id="America/Chicago",
        platform="Win32",
        webgl_vendor="Google Inc. (Intel)",
        webgl_renderer="ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0)",
    ),
]


def random_fingerprint() -> DeviceFingerprint:
    return random.choice(DESKTOP_FINGERPRINTS)


def build_init_script(fingerprint: DeviceFingerprint) -> str:
    """Return the navigator/WebGL override script for ``fingerprint``."""
    return f"""
    (() => {{
        Object.defineProperty(navigator, 'webdriver', {{
            get: () => undefined,
        }});

        Object.defineProperty(navigator, 'platform', {{
            get: () => {json.dumps(fingerprint.platform)},
        }});

        Object.defineProperty(navigator, 'languages', {{
            get: () => {json.dumps(fingerprint.languages)},
        }});

        Object.defineProperty(navigator, 'hardwareConcurrency', {{
            get: () => {random.choice([4, 8, 12, 16])},
        }});

        const getParameter = WebGLRenderingContext.prototype.getParameter;
        WebGLRenderingContext.prototype.getParameter = function(parameter) {{
            if (parameter === 37445) {{
                return {json.dumps(fingerprint.webgl_vendor)};
            }}
            if (parameter === 37446) {{
                return {json.dumps(fingerprint.webgl_renderer)};
            }}
            return getParameter.call(this, parameter);
        }};

        const originalQuery = window.navigator.permissions.query;
        window.navigator.permissions.query = (parameters) => (
            parameters.name === 'notifications' ?
                Promise.resolve({{ state: Notification.permission }}) :
                originalQuery(parameters)
        );

        Object.defineProperty(navigator, 'plugins', {{
            get: () => [
                {{ name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' }},
                {{ name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' }},
                {{ name: 'Native Client', filename: 'internal-nacl-plugin' }},
            ],
        }});

        window.chrome = window.chrome || {{ runtime: {{}} }};
    }})();
    """


async def paint_context(context: BrowserContext, fingerprint: DeviceFingerprint) -> None:
    """Install the fingerprint overrides on every page of ``context``."""
    await context.add_init_script(build_init_script(fingerprint))
