"""TTL cache for fetched rule feeds.

Holds the last downloaded rule document and rogue-application list so a
restart, or an unreachable feed, does not leave the engine without data.

Supports:
- In-memory caching with TTL
- Optional JSON persistence on disk
- Stale reads: expired entries stay readable as a last resort
- Thread-safe operations
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached value with the time it was stored."""

    value: Any
    timestamp: float
    ttl_seconds: Optional[float] = None

    def age(self) -> float:
        return max(0.0, time.time() - self.timestamp)

    def is_expired(self, default_ttl: float) -> bool:
        ttl = self.ttl_seconds if self.ttl_seconds is not None else default_ttl
        return self.age() >= ttl


class CacheManager:
    """
    Memory + disk cache with expiry.

    Usage:
        cache = CacheManager(cache_dir=Path("data/cache"), ttl_seconds=86400, namespace="rules")

        cache.set(url, text)
        fresh = cache.get(url)            # None once expired
        entry = cache.get_entry(url)      # still returned when expired

        text = await cache.get_or_fetch(url, fetch_text)
    """

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        ttl_seconds: float = 3600,
        namespace: str = "",
        use_memory: bool = True,
        use_disk: bool = True,
    ):
        """
        Args:
            cache_dir: Directory for disk cache (None disables disk caching)
            ttl_seconds: Default TTL for cache entries
            namespace: Prefix for cache keys and file names
            use_memory: Enable in-memory caching
            use_disk: Enable disk caching (requires cache_dir)
        """
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace
        self.use_memory = use_memory
        self.use_disk = use_disk and self.cache_dir is not None

        self._memory: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

        if self.use_disk and self.cache_dir:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _make_key(self, key: str) -> str:
        if self.namespace:
            return f"{self.namespace}:{key}"
        return key

    def _disk_path(self, full_key: str) -> Optional[Path]:
        if not self.cache_dir:
            return None
        digest = hashlib.sha256(full_key.encode("utf-8")).hexdigest()[:32]
        prefix = f"{self.namespace}-" if self.namespace else ""
        return self.cache_dir / f"{prefix}{digest}.json"

    def _read_disk(self, full_key: str) -> Optional[CacheEntry]:
        path = self._disk_path(full_key)
        if not path or not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CacheEntry(
                value=data.get("value"),
                timestamp=float(data.get("timestamp", 0)),
                ttl_seconds=data.get("ttl_seconds"),
            )
        except (OSError, ValueError) as exc:
            logger.debug("Failed to read disk cache for %s: %s", full_key, exc)
            return None

    def _write_disk(self, full_key: str, entry: CacheEntry) -> None:
        path = self._disk_path(full_key)
        if not path:
            return
        payload = {
            "key": full_key,
            "value": entry.value,
            "timestamp": entry.timestamp,
            "ttl_seconds": entry.ttl_seconds,
            "cached_at": datetime.now().isoformat(),
        }
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(payload), encoding="utf-8")
            tmp.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to write disk cache for %s: %s", full_key, exc)

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Entry for ``key`` regardless of expiry (memory first, then disk)."""
        full_key = self._make_key(key)
        with self._lock:
            if self.use_memory and full_key in self._memory:
                return self._memory[full_key]
            if self.use_disk:
                entry = self._read_disk(full_key)
                if entry is not None and self.use_memory:
                    self._memory[full_key] = entry
                return entry
        return None

    def get(self, key: str) -> Optional[Any]:
        """Cached value if present and not expired."""
        entry = self.get_entry(key)
        if entry is None or entry.is_expired(self.ttl_seconds):
            return None
        return entry.value

    def get_stale(self, key: str) -> Optional[Any]:
        """Cached value even if expired; used when a refresh fails."""
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        full_key = self._make_key(key)
        entry = CacheEntry(value=value, timestamp=time.time(), ttl_seconds=ttl_seconds)
        with self._lock:
            if self.use_memory:
                self._memory[full_key] = entry
            if self.use_disk:
                self._write_disk(full_key, entry)

    def delete(self, key: str) -> None:
        full_key = self._make_key(key)
        with self._lock:
            self._memory.pop(full_key, None)
            path = self._disk_path(full_key) if self.use_disk else None
            if path and path.exists():
                try:
                    path.unlink()
                except OSError as exc:
                    logger.debug("Failed to delete disk cache for %s: %s", full_key, exc)

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        ttl_seconds: Optional[float] = None,
    ) -> Any:
        """Fresh cached value, else fetch and store. Falls back to a stale entry if the fetch fails."""
        cached = self.get(key)
        if cached is not None:
            return cached
        try:
            value = await fetch_fn()
        except Exception:
            stale = self.get_stale(key)
            if stale is None:
                raise
            logger.warning("Fetch for %s failed; using expired cache entry", self._make_key(key))
            return stale
        self.set(key, value, ttl_seconds)
        return value

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            disk_count = 0
            if self.use_disk and self.cache_dir:
                pattern = f"{self.namespace}-*.json" if self.namespace else "*.json"
                disk_count = len(list(self.cache_dir.glob(pattern)))
            return {
                "namespace": self.namespace,
                "ttl_seconds": self.ttl_seconds,
                "memory_entries": len(self._memory),
                "disk_entries": disk_count,
            }


def create_rules_cache(cache_dir: Optional[Path] = None, ttl_hours: float = 24) -> CacheManager:
    """Cache for downloaded rule documents."""
    return CacheManager(cache_dir=cache_dir, ttl_seconds=ttl_hours * 3600, namespace="rules")


def create_rogue_apps_cache(cache_dir: Optional[Path] = None, ttl_hours: float = 12) -> CacheManager:
    """Cache for the rogue-application feed."""
    return CacheManager(cache_dir=cache_dir, ttl_seconds=ttl_hours * 3600, namespace="rogue_apps")
