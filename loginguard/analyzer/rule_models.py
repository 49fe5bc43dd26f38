"""Rule document and scan data models."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from functools import cached_property
from typing import Any, Optional

from bs4 import BeautifulSoup

from ..constants import (
    DEFAULT_CONFIDENCE,
    DEFAULT_LEGITIMATE_THRESHOLD,
    IndicatorAction,
    Severity,
    Verdict,
)
from . import html_extract
from .operations import Operation


@dataclass(frozen=True)
class ScanInput:
    """Normalized page content for one scan. Derived views are computed on first use."""

    source: str = ""
    text: str = ""
    url: str = ""
    referrer: str = ""

    @cached_property
    def source_lower(self) -> str:
        return self.source.lower()

    @cached_property
    def text_lower(self) -> str:
        return self.text.lower()

    @cached_property
    def url_lower(self) -> str:
        return self.url.lower()

    @cached_property
    def document(self) -> BeautifulSoup:
        return html_extract.parse_html(self.source)

    @cached_property
    def title(self) -> str:
        return html_extract.extract_title(self.document)

    @cached_property
    def meta_tags(self) -> tuple[dict[str, str], ...]:
        return tuple(html_extract.extract_meta_tags(self.document))

    @cached_property
    def forms(self) -> tuple[html_extract.FormInfo, ...]:
        return tuple(html_extract.extract_forms(self.document))

    @cached_property
    def linked_resources(self) -> tuple[str, ...]:
        return tuple(html_extract.extract_linked_resources(self.document))

    def __getstate__(self) -> dict[str, str]:
        # Cached views (the parsed tree in particular) are rebuilt after unpickling
        return {"source": self.source, "text": self.text, "url": self.url, "referrer": self.referrer}


@dataclass(frozen=True)
class Indicator:
    """A single weighted phishing signal."""

    id: str
    severity: Severity = Severity.MEDIUM
    confidence: float = DEFAULT_CONFIDENCE
    action: IndicatorAction = IndicatorAction.WARN
    category: str = "general"
    description: str = ""
    pattern: Optional[str] = None
    flags: str = "i"
    operation: Optional[Operation] = None
    context_required: tuple[str, ...] = ()
    additional_checks: tuple[str, ...] = ()
    suppress_on_sso: bool = False

    @property
    def weight(self) -> float:
        return self.severity.weight * self.confidence

    @property
    def is_critical_block(self) -> bool:
        return self.severity is Severity.CRITICAL and self.action is IndicatorAction.BLOCK


@dataclass(frozen=True)
class BlockingRule:
    """A definitive structural check that forces a block on its own."""

    id: str
    type: str
    severity: Severity = Severity.HIGH
    description: str = ""
    action_must_not_contain: str = ""
    has_password_field: bool = False
    resource_pattern: str = ""
    required_origin: str = ""
    css_indicators: tuple[str, ...] = ()
    minimum_css_matches: int = 2
    has_credential_fields: bool = False
    form_action_must_not_contain: str = ""


@dataclass(frozen=True)
class LegitimacyRule:
    """A weighted rule contributing to the legitimacy score."""

    id: str
    type: str
    weight: float = 0
    description: str = ""
    critical: bool = False
    condition: tuple[tuple[str, Any], ...] = ()
    operation: Optional[Operation] = None

    def get(self, key: str, default: Any = None) -> Any:
        for name, value in self.condition:
            if name == key:
                return value
        return default


@dataclass(frozen=True)
class ElementRequirement:
    """A brand content signal used to recognize login pages."""

    id: str
    type: str
    category: str = "secondary"
    weight: float = 1
    patterns: tuple[str, ...] = ()
    attribute: str = ""
    description: str = ""

    @property
    def is_primary(self) -> bool:
        return self.category == "primary"


@dataclass(frozen=True)
class ElementThresholds:
    minimum_primary_elements: int = 1
    minimum_total_weight: float = 4
    minimum_elements_overall: int = 3
    minimum_secondary_only_weight: float = 9
    minimum_secondary_only_elements: int = 7


@dataclass(frozen=True)
class Thresholds:
    legitimate: float = DEFAULT_LEGITIMATE_THRESHOLD
    suspicious: float = 50
    phishing: float = 25


@dataclass(frozen=True)
class RogueAppSettings:
    enabled: bool = True
    source_url: str = ""
    cache_duration_hours: float = 12
    update_interval_hours: float = 24


@dataclass(frozen=True)
class RuleDocument:
    """Immutable, versioned rule set. Replaced wholesale on refresh."""

    version: str = "0"
    last_updated: Optional[str] = None
    indicators: tuple[Indicator, ...] = ()
    blocking_rules: tuple[BlockingRule, ...] = ()
    legitimacy_rules: tuple[LegitimacyRule, ...] = ()
    element_requirements: tuple[ElementRequirement, ...] = ()
    element_thresholds: ElementThresholds = field(default_factory=ElementThresholds)
    trusted_origin_patterns: tuple[str, ...] = ()
    brand_domain_patterns: tuple[str, ...] = ()
    exclusion_patterns: tuple[str, ...] = ()
    legitimate_sso_patterns: tuple[str, ...] = ()
    fallback_keywords: tuple[str, ...] = ()
    thresholds: Thresholds = field(default_factory=Thresholds)
    rogue_apps: RogueAppSettings = field(default_factory=RogueAppSettings)
    warnings: tuple[str, ...] = ()
    source: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.indicators or self.blocking_rules or self.element_requirements)


@dataclass(frozen=True)
class Threat:
    """A matched indicator."""

    id: str
    severity: Severity
    confidence: float
    description: str
    location: str
    category: str = "general"
    action: IndicatorAction = IndicatorAction.WARN
    snippet: str = ""

    @property
    def is_critical_block(self) -> bool:
        return self.severity is Severity.CRITICAL and self.action is IndicatorAction.BLOCK

    @property
    def is_warning(self) -> bool:
        return self.action is IndicatorAction.WARN or self.severity is not Severity.CRITICAL

    def to_dict(self) -> dict:
        data = asdict(self)
        data["severity"] = str(self.severity)
        data["action"] = self.action.value
        return data


@dataclass(frozen=True)
class RogueAppMatch:
    """A known-malicious application registration."""

    app_id: str
    app_name: str
    is_rogue: bool = True
    risk_tags: tuple[str, ...] = ()
    risk_level: str = "low"
    description: str = ""
    references: tuple[str, ...] = ()


@dataclass
class ScanResult:
    """Outcome of one scan."""

    verdict: Verdict
    threats: list[Threat] = field(default_factory=list)
    score: float = 0.0
    triggered_rule_ids: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    reason: str = ""
    severity: str = "none"
    action: str = "none"
    legitimacy_score: Optional[float] = None
    combined_score: Optional[float] = None
    is_logon_page: bool = False
    has_elements: bool = False
    escalated: bool = False
    partial: bool = False
    degraded: bool = False
    rogue_app: Optional[RogueAppMatch] = None
    redirect_host: str = ""
    processing_ms: float = 0.0
    rule_version: str = ""
    error: Optional[str] = None
    late_findings: list[Threat] = field(default_factory=list)

    @property
    def is_blocking(self) -> bool:
        return self.verdict.is_blocking

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "threats": [t.to_dict() for t in self.threats],
            "score": round(self.score, 2),
            "triggered_rule_ids": list(self.triggered_rule_ids),
            "timestamp": self.timestamp,
            "reason": self.reason,
            "severity": self.severity,
            "action": self.action,
            "legitimacy_score": self.legitimacy_score,
            "combined_score": self.combined_score,
            "is_logon_page": self.is_logon_page,
            "has_elements": self.has_elements,
            "escalated": self.escalated,
            "partial": self.partial,
            "degraded": self.degraded,
            "rogue_app": asdict(self.rogue_app) if self.rogue_app else None,
            "redirect_host": self.redirect_host,
            "processing_ms": round(self.processing_ms, 1),
            "rule_version": self.rule_version,
            "error": self.error,
            "late_findings": [t.to_dict() for t in self.late_findings],
        }
