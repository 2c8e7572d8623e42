"""reCAPTCHA solving through the 2captcha HTTP API, with telemetry."""
from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import requests

from crawler.errors import CaptchaError

API_URL = "https://2captcha.com"
SOFT_ID = 4580
INITIAL_WAIT = 20
POLL_INTERVAL = 5
MAX_WAIT = 180

SITE_KEY_PATTERN = re.compile(r"['\"](6[0-9A-Za-z_-]{39})['\"]")

LOGGER = logging.getLogger(__name__)


def find_site_key(html: str) -> Optional[str]:
    """Extract a reCAPTCHA v2 site key from page source."""
    attr = re.search(r"data-sitekey=['\"]([0-9A-Za-z_-]+)['\"]", html or "")
    if attr:
        return attr.group(1)
    match = SITE_KEY_PATTERN.search(html or "")
    return match.group(1) if match else None


@dataclass
class CaptchaTelemetry:
    """Telemetry for one solve attempt."""

    task_id: Optional[str] = None
    site_key: str = ""
    page_url: str = ""
    solve_time_sec: float = 0.0
    status: str = "pending"  # pending, solving, solved, failed
    error_message: Optional[str] = None
    cost_estimate_usd: float = 0.003
    polls: int = 0

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "site_key": self.site_key,
            "page_url": self.page_url,
            "solve_time_sec": round(self.solve_time_sec, 2),
            "status": self.status,
            "error_message": self.error_message,
            "cost_estimate_usd": self.cost_estimate_usd,
            "polls": self.polls,
        }


class CaptchaProvider(Protocol):
    """External service that turns (site key, page URL) into a token."""

    def solve(self, site_key: str, page_url: str) -> tuple[str, CaptchaTelemetry]:
        ...

    def get_balance(self) -> float:
        ...


class TwoCaptchaSolver:
    """2captcha client. Blocking; call from a worker thread in async code."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        max_wait: float = MAX_WAIT,
        poll_interval: float = POLL_INTERVAL,
        initial_wait: float = INITIAL_WAIT,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize captcha solver.

        Parameters
        ----------
        api_key : str, optional
            2captcha API key (defaults to TWOCAPTCHA_API_KEY env var)
        max_wait : float
            Maximum time to wait for a solution (seconds)
        poll_interval : float
            Time between polling attempts (seconds)
        initial_wait : float
            Delay before the first poll; workers never finish sooner
        session : requests.Session, optional
            HTTP session to reuse
        """
        self.api_key = api_key or os.getenv("TWOCAPTCHA_API_KEY")
        if not self.api_key:
            raise CaptchaError("TWOCAPTCHA_API_KEY is not set")
        self.max_wait = max_wait
        self.poll_interval = poll_interval
        self.initial_wait = initial_wait
        self.http = session or requests.Session()
        self.telemetry_history: list[CaptchaTelemetry] = []

    def _get(self, path: str, params: dict) -> dict:
        resp = self.http.get(f"{API_URL}/{path}", params={"key": self.api_key, "json": 1, **params}, timeout=30)
        resp.raise_for_status()
        return resp.json()

    def get_balance(self) -> float:
        """Return the account balance in USD."""
        body = self._get("res.php", {"action": "getbalance"})
        if body.get("status") != 1:
            raise CaptchaError(f"2captcha getbalance failed: {body.get('request')}")
        return float(body["request"])

    def solve(self, site_key: str, page_url: str) -> tuple[str, CaptchaTelemetry]:
        """Solve a reCAPTCHA v2 and return the token with telemetry.

        Parameters
        ----------
        site_key : str
            Site key from the captcha element
        page_url : str
            URL of the page containing the captcha

        Returns
        -------
        tuple[str, CaptchaTelemetry]
            Response token and telemetry data
        """
        telemetry = CaptchaTelemetry(site_key=site_key, page_url=page_url)
        start_time = time.monotonic()

        try:
            telemetry.status = "solving"
            resp = self.http.post(
                f"{API_URL}/in.php",
                data={
                    "key": self.api_key,
                    "method": "userrecaptcha",
                    "googlekey": site_key,
                    "pageurl": page_url,
                    "json": 1,
                    "soft_id": SOFT_ID,
                },
                timeout=30,
            )
            resp.raise_for_status()
            data = resp.json()
            if data.get("status") != 1:
                raise CaptchaError(f"2captcha submit failed: {data.get('request')}")

            telemetry.task_id = str(data["request"])
            LOGGER.debug("Created captcha task %s for %s", telemetry.task_id, page_url)

            time.sleep(min(self.initial_wait, self.max_wait))
            deadline = start_time + self.max_wait
            while True:
                telemetry.polls += 1
                body = self._get("res.php", {"action": "get", "id": telemetry.task_id})

                if body.get("status") == 1:
                    token = body["request"]
                    telemetry.status = "solved"
                    telemetry.solve_time_sec = time.monotonic() - start_time
                    self.telemetry_history.append(telemetry)
                    LOGGER.info(
                        "Solved captcha task %s in %.2fs (polls=%d)",
                        telemetry.task_id,
                        telemetry.solve_time_sec,
                        telemetry.polls,
                    )
                    return token, telemetry

                if body.get("request") != "CAPCHA_NOT_READY":
                    raise CaptchaError(f"2captcha result error: {body.get('request')}")

                if time.monotonic() + self.poll_interval > deadline:
                    raise CaptchaError(f"Timed out waiting for captcha solution after {self.max_wait}s")
                time.sleep(self.poll_interval)

        except (CaptchaError, requests.RequestException) as exc:
            telemetry.status = "failed"
            telemetry.error_message = str(exc)
            telemetry.solve_time_sec = time.monotonic() - start_time
            self.telemetry_history.append(telemetry)
            LOGGER.error(
                "Failed to solve captcha: %s (time=%.2fs, polls=%d)",
                exc,
                telemetry.solve_time_sec,
                telemetry.polls,
            )
            if isinstance(exc, CaptchaError):
                raise
            raise CaptchaError(str(exc)) from exc

    def solve_with_retry(self, site_key: str, page_url: str, attempts: int = 2) -> tuple[str, CaptchaTelemetry]:
        """Call :meth:`solve` up to ``attempts`` times, re-raising the last error."""
        last_error: Optional[CaptchaError] = None
        for attempt in range(1, max(attempts, 1) + 1):
            try:
                return self.solve(site_key, page_url)
            except CaptchaError as exc:
                last_error = exc
                LOGGER.warning("Captcha attempt %d/%d failed: %s", attempt, attempts, exc)
        assert last_error is not None
        raise last_error

    def get_total_cost_estimate(self) -> float:
        """Calculate total estimated cost from telemetry history."""
        return sum(t.cost_estimate_usd for t in self.telemetry_history if t.status == "solved")

    def get_success_rate(self) -> float:
        """Calculate success rate from telemetry history."""
        if not self.telemetry_history:
            return 0.0
        solved = sum(1 for t in self.telemetry_history if t.status == "solved")
        return solved / len(self.telemetry_history)

    def get_avg_solve_time(self) -> float:
        """Calculate average solve time from successful solves."""
        solved = [t for t in self.telemetry_history if t.status == "solved"]
        if not solved:
            return 0.0
        return sum(t.solve_time_sec for t in solved) / len(solved)
