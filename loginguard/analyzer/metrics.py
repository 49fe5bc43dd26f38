"""Detection metrics tracking.

Shows which indicators and blocking rules fire and how often scans fall
back or get skipped, so rule authors can tune the feed.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class CategoryMetrics:
    """Hits for one indicator category."""

    total_hits: int = 0
    last_hit: Optional[datetime] = None
    indicator_hits: dict = field(default_factory=lambda: defaultdict(int))

    def record_hit(self, indicator_id: str) -> None:
        self.total_hits += 1
        self.last_hit = datetime.now()
        self.indicator_hits[indicator_id] += 1


class DetectionMetrics:
    """Thread-safe metrics collector shared by all scans."""

    _instance: Optional["DetectionMetrics"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "DetectionMetrics":
        """Singleton pattern for global metrics access."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._categories: dict[str, CategoryMetrics] = defaultdict(CategoryMetrics)
        self._verdicts: dict[str, int] = defaultdict(int)
        self._blocking_rules: dict[str, int] = defaultdict(int)
        self._events: dict[str, int] = defaultdict(int)
        self._total_scans: int = 0
        self._started: datetime = datetime.now()

    def record_indicator_hit(self, category: str, indicator_id: str) -> None:
        with self._lock:
            self._categories[category].record_hit(indicator_id)

    def record_verdict(self, verdict: str) -> None:
        with self._lock:
            self._verdicts[verdict] += 1
            self._total_scans += 1

    def record_blocking_rule(self, rule_id: str) -> None:
        with self._lock:
            self._blocking_rules[rule_id] += 1

    def record_event(self, name: str) -> None:
        """Count an operational event (fallback, timeout, skipped scan, degraded...)."""
        with self._lock:
            self._events[name] += 1

    def get_summary(self) -> dict:
        """Get a summary of all metrics."""
        with self._lock:
            uptime = datetime.now() - self._started
            return {
                "uptime_seconds": int(uptime.total_seconds()),
                "total_scans": self._total_scans,
                "verdicts": dict(self._verdicts),
                "blocking_rules": dict(self._blocking_rules),
                "events": dict(self._events),
                "categories": {
                    name: {
                        "total_hits": cat.total_hits,
                        "last_hit": cat.last_hit.isoformat() if cat.last_hit else None,
                        "top_indicators": self._get_top_indicators(cat, 5),
                    }
                    for name, cat in self._categories.items()
                },
            }

    @staticmethod
    def _get_top_indicators(category: CategoryMetrics, n: int) -> list[dict]:
        ranked = sorted(category.indicator_hits.items(), key=lambda x: x[1], reverse=True)[:n]
        return [{"id": indicator_id, "hits": hits} for indicator_id, hits in ranked]

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._reset_state()


# Global instance
metrics = DetectionMetrics()
