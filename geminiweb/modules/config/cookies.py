"""Cookie file handling.

Accepted ``cookies.json`` layouts:

1. Native: ``{"c1": "...", "c2": "...", "c3": "...", "updated_at": "..."}``
2. Name-keyed: ``{"__Secure-1PSID": "...", "__Secure-1PSIDTS": "..."}``
3. Browser export list: ``[{"name": "__Secure-1PSID", "value": "..."}, ...]``

The engine only reads this file. ``import_from`` and ``save`` exist for the
CLI's cookie import command.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from geminiweb.core.atomic_io import atomic_write_json
from geminiweb.domain.credentials import (
    PRIMARY_COOKIE,
    SECONDARY_COOKIE,
    TERNARY_COOKIE,
    CookieSet,
)
from geminiweb.domain.errors import ConfigurationError

logger = logging.getLogger(__name__)


def parse_cookies(data: Any) -> CookieSet:
    """Build a ``CookieSet`` from any supported layout.

    Raises:
        ConfigurationError: layout not recognized or primary cookie missing
    """
    values = {}
    if isinstance(data, list):
        for item in data:
            if isinstance(item, dict) and "name" in item:
                values[item["name"]] = item.get("value", "")
    elif isinstance(data, dict):
        if "c1" in data:
            values = {
                PRIMARY_COOKIE: data.get("c1"),
                SECONDARY_COOKIE: data.get("c2"),
                TERNARY_COOKIE: data.get("c3"),
            }
        else:
            values = data
    else:
        raise ConfigurationError("Unrecognized cookie file format")

    primary = values.get(PRIMARY_COOKIE) or ""
    if not isinstance(primary, str) or not primary.strip():
        raise ConfigurationError(f"Cookie {PRIMARY_COOKIE} is missing")
    return CookieSet(
        primary=primary.strip(),
        secondary=(values.get(SECONDARY_COOKIE) or "").strip(),
        ternary=(values.get(TERNARY_COOKIE) or "").strip(),
    )


class CookieStore:
    """Reads (and on explicit import, writes) the cookie file."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._current: Optional[CookieSet] = None

    def load(self) -> CookieSet:
        if not self.path.exists():
            raise ConfigurationError(
                f"Cookie file not found: {self.path}. Import cookies with 'geminiweb import-cookies'"
            )
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"Cannot read cookie file {self.path}: {exc}") from exc
        cookies = parse_cookies(data)
        with self._lock:
            self._current = cookies
        return cookies

    def reload(self) -> Optional[CookieSet]:
        """Refresh callback for the transport: new cookies, or None if unchanged or unreadable."""
        with self._lock:
            previous = self._current
        try:
            cookies = self.load()
        except ConfigurationError as exc:
            logger.warning("Cookie reload failed: %s", exc.message)
            return None
        if cookies == previous:
            logger.info("Cookie file unchanged; nothing to refresh")
            return None
        logger.info("Reloaded cookies from %s", self.path)
        return cookies

    def save(self, cookies: CookieSet) -> None:
        atomic_write_json(self.path, {
            "c1": cookies.primary,
            "c2": cookies.secondary,
            "c3": cookies.ternary,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })
        with self._lock:
            self._current = cookies

    def import_from(self, source: Path) -> CookieSet:
        """Copy cookies from a browser export into the native format."""
        source = Path(source).expanduser()
        try:
            data = json.loads(source.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigurationError(f"File not found: {source}") from exc
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"Cannot read {source}: {exc}") from exc
        cookies = parse_cookies(data)
        self.save(cookies)
        logger.info("Imported cookies from %s", source)
        return cookies
