"""Persistence of browser cookies for the authenticated source session."""

import json
import logging
from pathlib import Path
from typing import Optional

from nursery_import.config import settings

logger = logging.getLogger(__name__)


class SessionManager:
    """Stores Playwright cookies per source so a login survives between runs."""

    def __init__(self, session_dir: Optional[str | Path] = None):
        self.session_dir = Path(session_dir or settings.session_storage_path)
        self.cookies: dict[str, list[dict]] = {}

    def _get_cookie_path(self, source: str) -> Path:
        return self.session_dir / f"{source}_cookies.json"

    def load_cookies(self, source: str) -> list[dict]:
        """Load cookies from disk for a source."""
        if source in self.cookies:
            return self.cookies[source]

        cookie_path = self._get_cookie_path(source)
        if not cookie_path.exists():
            return []

        try:
            with open(cookie_path, "r") as f:
                cookies = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load cookies for {source}: {e}")
            return []

        self.cookies[source] = cookies
        return cookies

    def save_cookies(self, source: str, cookies: list[dict]) -> None:
        """Save cookies to disk for a source."""
        self.cookies[source] = cookies
        try:
            self.session_dir.mkdir(parents=True, exist_ok=True)
            with open(self._get_cookie_path(source), "w") as f:
                json.dump(cookies, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save cookies for {source}: {e}")

    def clear_session(self, source: str) -> None:
        """Forget stored cookies, e.g. after a rejected login."""
        self.cookies.pop(source, None)
        self._get_cookie_path(source).unlink(missing_ok=True)


# Global session manager instance
session_manager = SessionManager()
