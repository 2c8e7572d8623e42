"""Persisted browser sessions, one JSON document per (site, account)."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from crawler.errors import SessionStoreError

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 4 * 3600

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.@-]+")


@dataclass
class ScraperSession:
    """Authenticated browser state in Playwright ``storage_state`` shape."""

    site: str
    account: str
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    origins: List[Dict[str, Any]] = field(default_factory=list)
    saved_at: Optional[float] = field(default=None, compare=False)

    def to_storage_state(self) -> Dict[str, Any]:
        return {"cookies": self.cookies, "origins": self.origins}

    @classmethod
    def from_storage_state(
        cls,
        site: str,
        account: str,
        state: Dict[str, Any],
        saved_at: Optional[float] = None,
    ) -> "ScraperSession":
        if not isinstance(state, dict):
            raise SessionStoreError(f"Session document for {site}/{account} is not an object")
        cookies = state.get("cookies") or []
        origins = state.get("origins") or []
        if not isinstance(cookies, list) or not isinstance(origins, list):
            raise SessionStoreError(f"Session document for {site}/{account} is malformed")
        return cls(site=site, account=account, cookies=cookies, origins=origins, saved_at=saved_at)


class SessionManager:
    """Owner of every stored session.

    ``save`` is atomic (temp file + ``os.replace``), so a concurrent ``load``
    sees the old document or the new one, never a partial write.
    ``invalidate`` removes the document, so ``load`` cannot return it
    afterwards.
    """

    def __init__(
        self,
        storage_dir: Path | str,
        *,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
    ) -> None:
        """Initialize session manager.

        Parameters
        ----------
        storage_dir : Path | str
            Directory holding session documents
        max_age_seconds : float
            Sessions older than this are treated as expired (default: 4 hours)
        """
        self.storage_dir = Path(storage_dir)
        self.max_age_seconds = max_age_seconds
        self._login_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SessionStoreError(f"Cannot create session directory {self.storage_dir}: {exc}") from exc

    def path_for(self, site: str, account: str) -> Path:
        safe_site = _UNSAFE_CHARS.sub("_", site)
        safe_account = _UNSAFE_CHARS.sub("_", account)
        return self.storage_dir / f"{safe_site}__{safe_account}.json"

    def load(self, site: str, account: str) -> Optional[ScraperSession]:
        """Return the stored session, or None if missing, invalidated or expired.

        Raises
        ------
        SessionStoreError
            If the document exists but cannot be read or decoded
        """
        path = self.path_for(site, account)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise SessionStoreError(f"Cannot stat session {path}: {exc}") from exc

        age = time.time() - stat.st_mtime
        if age > self.max_age_seconds:
            LOGGER.info("Session %s/%s expired (age=%.0fs)", site, account, age)
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except FileNotFoundError:
            # Invalidated between stat and open.
            return None
        except (OSError, ValueError) as exc:
            raise SessionStoreError(f"Cannot read session {path}: {exc}") from exc

        session = ScraperSession.from_storage_state(site, account, state, saved_at=stat.st_mtime)
        LOGGER.debug("Loaded session %s/%s (%d cookies)", site, account, len(session.cookies))
        return session

    def save(self, site: str, account: str, session: ScraperSession) -> Path:
        path = self.path_for(site, account)
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.storage_dir,
                prefix=f".{path.stem}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                json.dump(session.to_storage_state(), tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name:
                Path(tmp_name).unlink(missing_ok=True)
            raise SessionStoreError(f"Cannot write session {path}: {exc}") from exc

        session.saved_at = time.time()
        LOGGER.info("Saved session %s/%s (%d cookies)", site, account, len(session.cookies))
        return path

    def invalidate(self, site: str, account: str) -> bool:
        """Remove the stored session. Returns True if one existed."""
        path = self.path_for(site, account)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise SessionStoreError(f"Cannot remove session {path}: {exc}") from exc
        LOGGER.warning("Invalidated session %s/%s", site, account)
        return True

    def login_guard(self, site: str, account: str) -> asyncio.Lock:
        """Lock serializing logins for one account within this process.

        Holders must re-``load`` after acquiring it: a run that waited may
        find the session the previous holder just saved.
        """
        key = (site, account)
        lock = self._login_locks.get(key)
        if lock is None:
            lock = self._login_locks[key] = asyncio.Lock()
        return lock

    def cleanup_expired(self) -> int:
        """Delete documents older than ``max_age_seconds``."""
        removed = 0
        now = time.time()
        for path in self.storage_dir.glob("*.json"):
            try:
                if now - path.stat().st_mtime > self.max_age_seconds:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                LOGGER.warning("Failed to remove %s: %s", path, exc)
        if removed:
            LOGGER.info("Cleaned up %d expired session(s)", removed)
        return removed

    def get_stats(self) -> Dict[str, Any]:
        now = time.time()
        ages = []
        for path in self.storage_dir.glob("*.json"):
            try:
                ages.append(now - path.stat().st_mtime)
            except OSError:
                continue
        fresh = [age for age in ages if age <= self.max_age_seconds]
        return {
            "total_sessions": len(ages),
            "fresh_sessions": len(fresh),
            "oldest_session_age_hours": max(ages) / 3600 if ages else 0,
            "newest_session_age_hours": min(ages) / 3600 if ages else 0,
        }
