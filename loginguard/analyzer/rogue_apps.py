"""Registry of OAuth applications known to be used for token theft."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, Optional

import httpx

from ..cache import CacheManager
from .rule_models import RogueAppMatch, RogueAppSettings

logger = logging.getLogger(__name__)

DEFAULT_ROGUE_APPS_URL = "https://raw.githubusercontent.com/huntresslabs/rogueapps/main/public/rogueapps.json"

HIGH_RISK_TAGS = frozenset({"bec", "exfiltration", "phishing", "spam"})
MEDIUM_RISK_TAGS = frozenset({"email", "backup", "collection"})


def calculate_risk_level(tags: Iterable[str]) -> str:
    lowered = {str(tag).strip().lower() for tag in tags or ()}
    if lowered & HIGH_RISK_TAGS:
        return "high"
    if lowered & MEDIUM_RISK_TAGS:
        return "medium"
    return "low"


class RogueAppRegistry:
    """In-memory lookup of rogue application ids, refreshed from a JSON feed."""

    def __init__(
        self,
        settings: Optional[RogueAppSettings] = None,
        cache: Optional[CacheManager] = None,
        timeout: float = 15.0,
    ):
        self.settings = settings or RogueAppSettings(source_url=DEFAULT_ROGUE_APPS_URL)
        self.cache = cache
        self.timeout = timeout
        self._apps: dict[str, RogueAppMatch] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._apps)

    @property
    def source_url(self) -> str:
        return self.settings.source_url or DEFAULT_ROGUE_APPS_URL

    def load(self, entries: Any) -> int:
        """Replace the registry contents with feed entries; returns how many were kept."""
        if not isinstance(entries, list):
            raise ValueError("rogue app feed must be a list")
        apps: dict[str, RogueAppMatch] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            app_id = str(entry.get("appId") or "").strip().lower()
            if not app_id or app_id in apps:
                continue
            tags = tuple(str(tag) for tag in entry.get("tags") or () if tag)
            references = tuple(str(ref) for ref in entry.get("references") or () if ref)
            apps[app_id] = RogueAppMatch(
                app_id=app_id,
                app_name=str(entry.get("appDisplayName") or "Unknown application"),
                risk_tags=tags,
                risk_level=calculate_risk_level(tags),
                description=str(entry.get("description") or ""),
                references=references,
            )
        with self._lock:
            self._apps = apps
        logger.info("Loaded %s rogue applications", len(apps))
        return len(apps)

    def is_known_malicious(self, app_id: Optional[str]) -> Optional[RogueAppMatch]:
        if not app_id or not self.settings.enabled:
            return None
        return self._apps.get(app_id.strip().lower())

    async def _download(self, client: Optional[httpx.AsyncClient]) -> list:
        if client is None:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as owned:
                return await self._download(owned)
        response = await client.get(self.source_url)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, list):
            raise ValueError("rogue app feed must be a list")
        return data

    async def refresh(self, client: Optional[httpx.AsyncClient] = None) -> bool:
        """Refresh from the feed (through the cache). Keeps current data on failure."""
        if not self.settings.enabled:
            return False
        try:
            if self.cache is not None:
                entries = await self.cache.get_or_fetch(self.source_url, lambda: self._download(client))
            else:
                entries = await self._download(client)
            self.load(entries)
            return True
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Rogue app feed refresh failed (%s); keeping %s entries", exc, len(self._apps))
            return False
