"""Centralized constants for LoginGuard.

This module contains enums and default timings used across the analyzer
and the scan pipeline so both sides agree on names and ranking.
"""

from enum import Enum, IntEnum


class Verdict(str, Enum):
    """Final classification of a scanned page."""

    TRUSTED = "trusted"
    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    BLOCKED = "blocked"
    ROGUE_APP = "rogue-app"

    @property
    def is_blocking(self) -> bool:
        return self in (Verdict.BLOCKED, Verdict.ROGUE_APP)

    def __str__(self) -> str:
        return self.value


class Severity(IntEnum):
    """Indicator severity with ranking for comparison."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @classmethod
    def from_string(cls, value: str | None) -> "Severity":
        """Convert string severity to enum, defaulting to MEDIUM."""
        if not value:
            return cls.MEDIUM
        mapping = {
            "low": cls.LOW,
            "medium": cls.MEDIUM,
            "high": cls.HIGH,
            "critical": cls.CRITICAL,
        }
        return mapping.get(str(value).strip().lower(), cls.MEDIUM)

    @property
    def weight(self) -> int:
        return SEVERITY_WEIGHTS[self]

    def __str__(self) -> str:
        return self.name.lower()


SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
}


class IndicatorAction(str, Enum):
    """What a matched indicator asks the host to do."""

    BLOCK = "block"
    WARN = "warn"

    @classmethod
    def from_string(cls, value: str | None) -> "IndicatorAction":
        if str(value or "").strip().lower() == "block":
            return cls.BLOCK
        return cls.WARN


class ScanTrigger(str, Enum):
    """Why a scan was requested."""

    INITIAL = "initial"
    CONTENT_CHANGED = "content_changed"
    THREAT_RESCAN = "threat_rescan"
    MANUAL = "manual"


class FailurePolicy(str, Enum):
    """What to emit when the pipeline fails mid-scan."""

    WARN = "warn"
    BLOCK = "block"


# Scheduling defaults (milliseconds unless noted)
DEFAULT_SCAN_COOLDOWN_MS = 1200
DEFAULT_THREAT_RESCAN_COOLDOWN_MS = 500
DEFAULT_MAX_SCANS = 5
DEFAULT_DEBOUNCE_MS = 1000
DEFAULT_MONITOR_DURATION_MS = 30000
DEFAULT_THREAT_RESCAN_DELAYS_MS: tuple[int, ...] = (800, 2000)
DEFAULT_SLOW_PAGE_THRESHOLD_MS = 5000
DEFAULT_PROCESSING_TIMEOUT_SECONDS = 10.0
DEFAULT_FALLBACK_BATCH_SIZE = 2
OFFLOAD_MODES = ("thread", "process", "inline")

# Scoring defaults
DEFAULT_WARNING_THRESHOLD = 3
DEFAULT_LEGITIMATE_THRESHOLD = 85
LOW_LEGITIMACY_SCORE = 25
HIGH_SEVERITY_RATIO = 0.3
DEFAULT_CONFIDENCE = 0.5

# Legitimacy rules that block on their own when triggered
DEFAULT_CRITICAL_RULE_IDS: frozenset[str] = frozenset(
    {
        "form_post_not_microsoft",
        "customcss_wrong_origin",
        "css_spoofing_detection",
    }
)
