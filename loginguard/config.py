"""Configuration management for LoginGuard."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Set

import yaml
from dotenv import load_dotenv

from .constants import (
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_FALLBACK_BATCH_SIZE,
    DEFAULT_MAX_SCANS,
    DEFAULT_MONITOR_DURATION_MS,
    DEFAULT_PROCESSING_TIMEOUT_SECONDS,
    DEFAULT_SCAN_COOLDOWN_MS,
    DEFAULT_SLOW_PAGE_THRESHOLD_MS,
    DEFAULT_THREAT_RESCAN_COOLDOWN_MS,
    DEFAULT_THREAT_RESCAN_DELAYS_MS,
    DEFAULT_WARNING_THRESHOLD,
    OFFLOAD_MODES,
    FailurePolicy,
)
from .utils.domains import registered_domain

logger = logging.getLogger(__name__)


# Numeric settings that config/thresholds.yaml may override, with their types.
THRESHOLD_OVERRIDES: dict[str, type] = {
    "warning_threshold": int,
    "legitimate_threshold": float,
    "scan_cooldown_ms": int,
    "threat_rescan_cooldown_ms": int,
    "max_scans": int,
    "debounce_ms": int,
    "monitor_duration_ms": int,
    "slow_page_threshold_ms": int,
    "processing_timeout_seconds": float,
    "fallback_batch_size": int,
}


@dataclass(frozen=True)
class ScanSettings:
    """Per-session snapshot of the settings the engine and scheduler consume."""

    protection_enabled: bool = True
    warning_threshold: int = DEFAULT_WARNING_THRESHOLD
    legitimate_threshold: Optional[float] = None
    scan_cooldown_ms: int = DEFAULT_SCAN_COOLDOWN_MS
    threat_rescan_cooldown_ms: int = DEFAULT_THREAT_RESCAN_COOLDOWN_MS
    max_scans: int = DEFAULT_MAX_SCANS
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    monitor_duration_ms: int = DEFAULT_MONITOR_DURATION_MS
    threat_rescan_delays_ms: tuple[int, ...] = DEFAULT_THREAT_RESCAN_DELAYS_MS
    slow_page_threshold_ms: int = DEFAULT_SLOW_PAGE_THRESHOLD_MS
    failure_policy: FailurePolicy = FailurePolicy.WARN
    url_allowlist: tuple[str, ...] = ()
    domain_allowlist: frozenset[str] = frozenset()

    @property
    def max_threat_rescans(self) -> int:
        return len(self.threat_rescan_delays_ms)


@dataclass
class Config:
    """Application configuration loaded from environment."""

    # Protection
    protection_enabled: bool = True
    failure_policy: FailurePolicy = FailurePolicy.WARN

    # Scoring thresholds
    warning_threshold: int = DEFAULT_WARNING_THRESHOLD
    legitimate_threshold: Optional[float] = None

    # Scan scheduling
    scan_cooldown_ms: int = DEFAULT_SCAN_COOLDOWN_MS
    threat_rescan_cooldown_ms: int = DEFAULT_THREAT_RESCAN_COOLDOWN_MS
    max_scans: int = DEFAULT_MAX_SCANS
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    monitor_duration_ms: int = DEFAULT_MONITOR_DURATION_MS
    threat_rescan_delays_ms: list[int] = field(default_factory=lambda: list(DEFAULT_THREAT_RESCAN_DELAYS_MS))
    slow_page_threshold_ms: int = DEFAULT_SLOW_PAGE_THRESHOLD_MS

    # Offloaded indicator evaluation
    processing_timeout_seconds: float = DEFAULT_PROCESSING_TIMEOUT_SECONDS
    offload_mode: str = "thread"
    fallback_batch_size: int = DEFAULT_FALLBACK_BATCH_SIZE

    # Rule sources
    rules_url: str = ""
    rules_path: str = ""
    rules_update_interval_hours: float = 24

    # Rogue applications
    rogue_apps_enabled: bool = True
    rogue_apps_url: str = ""

    # Health server
    health_host: str = "127.0.0.1"
    health_port: int = 8081
    health_enabled: bool = True

    log_level: str = "INFO"

    # Paths
    data_dir: Path = field(default_factory=lambda: Path("./data"))
    config_dir: Path = field(default_factory=lambda: Path("./config"))

    # Allowlists
    url_allowlist: list[str] = field(default_factory=list)
    allowlist: Set[str] = field(default_factory=set)

    def __post_init__(self):
        """Normalize paths and load list files."""
        self.data_dir = Path(self.data_dir)
        self.config_dir = Path(self.config_dir)
        self._load_lists()

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "cache"

    def _load_lists(self):
        """Load the domain allowlist from config/allowlist.txt."""
        allowlist_path = self.config_dir / "allowlist.txt"
        if allowlist_path.exists():
            raw = self._load_list_file(allowlist_path)
            self.allowlist |= {registered_domain(item) or item for item in raw}

    @staticmethod
    def _load_list_file(path: Path) -> Set[str]:
        """Load a list file, ignoring comments and empty lines."""
        items = set()
        with open(path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#"):
                    items.add(line.lower())
        return items

    def scan_settings(self) -> ScanSettings:
        """Snapshot taken when a session starts; not re-read mid-scan."""
        return ScanSettings(
            protection_enabled=self.protection_enabled,
            warning_threshold=self.warning_threshold,
            legitimate_threshold=self.legitimate_threshold,
            scan_cooldown_ms=self.scan_cooldown_ms,
            threat_rescan_cooldown_ms=self.threat_rescan_cooldown_ms,
            max_scans=self.max_scans,
            debounce_ms=self.debounce_ms,
            monitor_duration_ms=self.monitor_duration_ms,
            threat_rescan_delays_ms=tuple(self.threat_rescan_delays_ms),
            slow_page_threshold_ms=self.slow_page_threshold_ms,
            failure_policy=self.failure_policy,
            url_allowlist=tuple(self.url_allowlist),
            domain_allowlist=frozenset(self.allowlist),
        )


def _load_threshold_overrides(config_dir: Path) -> dict:
    """Load numeric overrides from config/thresholds.yaml (optional)."""
    path = Path(config_dir or ".") / "thresholds.yaml"
    if not path.exists():
        return {}

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to parse thresholds.yaml: %s", exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("thresholds.yaml must be a mapping; ignoring")
        return {}

    overrides: dict[str, object] = {}
    for key, kind in THRESHOLD_OVERRIDES.items():
        if key not in data or data[key] is None:
            continue
        try:
            overrides[key] = kind(data[key])
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid %s in thresholds.yaml: %r", key, data[key])

    delays = data.get("threat_rescan_delays_ms")
    if isinstance(delays, list):
        try:
            overrides["threat_rescan_delays_ms"] = [int(d) for d in delays]
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid threat_rescan_delays_ms in thresholds.yaml")
    return overrides


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, sep: str = ",") -> list[str]:
    return [item.strip() for item in os.getenv(name, "").split(sep) if item.strip()]


def _failure_policy(value: str) -> FailurePolicy:
    try:
        return FailurePolicy(value.strip().lower())
    except ValueError:
        logger.warning("Unknown FAILURE_POLICY %r; using 'warn'", value)
        return FailurePolicy.WARN


def load_config() -> Config:
    """Load configuration from environment variables."""
    load_dotenv()

    config_dir = Path(os.getenv("CONFIG_DIR", "./config"))
    overrides = _load_threshold_overrides(config_dir)

    legitimate = os.getenv("LEGITIMATE_THRESHOLD", "").strip()
    delays = _env_list("THREAT_RESCAN_DELAYS_MS")

    values: dict[str, object] = dict(
        protection_enabled=_env_bool("PROTECTION_ENABLED", True),
        failure_policy=_failure_policy(os.getenv("FAILURE_POLICY", "warn")),
        warning_threshold=int(os.getenv("WARNING_THRESHOLD", str(DEFAULT_WARNING_THRESHOLD))),
        legitimate_threshold=float(legitimate) if legitimate else None,
        scan_cooldown_ms=int(os.getenv("SCAN_COOLDOWN_MS", str(DEFAULT_SCAN_COOLDOWN_MS))),
        threat_rescan_cooldown_ms=int(
            os.getenv("THREAT_RESCAN_COOLDOWN_MS", str(DEFAULT_THREAT_RESCAN_COOLDOWN_MS))
        ),
        max_scans=int(os.getenv("MAX_SCANS", str(DEFAULT_MAX_SCANS))),
        debounce_ms=int(os.getenv("DEBOUNCE_MS", str(DEFAULT_DEBOUNCE_MS))),
        monitor_duration_ms=int(os.getenv("MONITOR_DURATION_MS", str(DEFAULT_MONITOR_DURATION_MS))),
        threat_rescan_delays_ms=[int(d) for d in delays] if delays else list(DEFAULT_THREAT_RESCAN_DELAYS_MS),
        slow_page_threshold_ms=int(os.getenv("SLOW_PAGE_THRESHOLD_MS", str(DEFAULT_SLOW_PAGE_THRESHOLD_MS))),
        processing_timeout_seconds=float(
            os.getenv("PROCESSING_TIMEOUT_SECONDS", str(DEFAULT_PROCESSING_TIMEOUT_SECONDS))
        ),
        offload_mode=os.getenv("OFFLOAD_MODE", "thread").strip().lower() or "thread",
        fallback_batch_size=int(os.getenv("FALLBACK_BATCH_SIZE", str(DEFAULT_FALLBACK_BATCH_SIZE))),
        rules_url=os.getenv("RULES_URL", "").strip(),
        rules_path=os.getenv("RULES_PATH", "").strip(),
        rules_update_interval_hours=float(os.getenv("RULES_UPDATE_INTERVAL_HOURS", "24")),
        rogue_apps_enabled=_env_bool("ROGUE_APPS_ENABLED", True),
        rogue_apps_url=os.getenv("ROGUE_APPS_URL", "").strip(),
        health_host=os.getenv("HEALTH_HOST", "127.0.0.1"),
        health_port=int(os.getenv("HEALTH_PORT", "8081")),
        health_enabled=_env_bool("HEALTH_ENABLED", True),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        data_dir=Path(os.getenv("DATA_DIR", "./data")),
        config_dir=config_dir,
        url_allowlist=_env_list("URL_ALLOWLIST"),
    )
    # File overrides only apply where the environment left the default
    for key, value in overrides.items():
        env_name = key.upper()
        if os.getenv(env_name) is None:
            values[key] = value

    return Config(**values)


def validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of error messages."""
    errors: list[str] = []
    if config.warning_threshold < 1:
        errors.append("WARNING_THRESHOLD must be at least 1")
    if config.legitimate_threshold is not None and config.legitimate_threshold <= 0:
        errors.append("LEGITIMATE_THRESHOLD must be positive")
    if config.max_scans < 1:
        errors.append("MAX_SCANS must be at least 1")
    for name in ("scan_cooldown_ms", "threat_rescan_cooldown_ms", "debounce_ms", "slow_page_threshold_ms"):
        if getattr(config, name) < 0:
            errors.append(f"{name.upper()} must not be negative")
    if any(delay < 0 for delay in config.threat_rescan_delays_ms):
        errors.append("THREAT_RESCAN_DELAYS_MS must not contain negative values")
    if config.processing_timeout_seconds <= 0:
        errors.append("PROCESSING_TIMEOUT_SECONDS must be positive")
    if config.fallback_batch_size < 1:
        errors.append("FALLBACK_BATCH_SIZE must be at least 1")
    if not isinstance(config.failure_policy, FailurePolicy):
        errors.append("FAILURE_POLICY must be one of warn, block")
    if config.offload_mode not in OFFLOAD_MODES:
        errors.append(f"OFFLOAD_MODE must be one of {', '.join(OFFLOAD_MODES)}")
    if config.rules_path and not Path(config.rules_path).exists():
        errors.append(f"RULES_PATH does not exist: {config.rules_path}")
    if config.rules_update_interval_hours <= 0:
        errors.append("RULES_UPDATE_INTERVAL_HOURS must be positive")

    if not (config.rules_url or config.rules_path):
        logger.info("No RULES_URL or RULES_PATH configured; using bundled rule document")

    return errors
