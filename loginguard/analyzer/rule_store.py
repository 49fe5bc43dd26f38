"""Rule document parsing and the in-memory rule store."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from ..constants import DEFAULT_CONFIDENCE, DEFAULT_CRITICAL_RULE_IDS, IndicatorAction, Severity
from .operations import OperationError, parse_operation
from .patterns import PatternCache, patterns as shared_patterns
from .rule_models import (
    BlockingRule,
    ElementRequirement,
    ElementThresholds,
    Indicator,
    LegitimacyRule,
    RogueAppSettings,
    RuleDocument,
    Thresholds,
)

logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = Path(__file__).resolve().parent.parent / "data" / "default_rules.yaml"

BLOCKING_RULE_TYPES = frozenset({"form_action_validation", "resource_validation", "css_spoofing_validation"})
ELEMENT_TYPES = frozenset({"source_content", "page_title", "meta_tag", "css_pattern", "url_pattern", "text_content"})


class RuleDocumentError(ValueError):
    """Raised when a rule document is structurally unusable."""


def _list(data: Mapping[str, Any], *keys: str) -> list:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, list):
            raise RuleDocumentError(f"'{key}' must be a list")
        return value
    return []


def _string_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(item) for item in value if isinstance(item, (str, int, float)) and str(item))


def _coerce_number(value: Any, default: float) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


class _Parser:
    """Builds a RuleDocument, collecting warnings for skipped entries."""

    def __init__(self, pattern_cache: PatternCache):
        self.patterns = pattern_cache
        self.warnings: list[str] = []

    def warn(self, message: str) -> None:
        logger.warning("Rule document: %s", message)
        self.warnings.append(message)

    def valid_patterns(self, values: tuple[str, ...], owner: str, flags: str = "i") -> tuple[str, ...]:
        kept = []
        for value in values:
            if self.patterns.is_valid(value, flags):
                kept.append(value)
            else:
                self.warn(f"{owner}: dropped invalid pattern {value!r}")
        return tuple(kept)

    # -- indicators ---------------------------------------------------------

    def indicator(self, entry: Any, index: int) -> Optional[Indicator]:
        if not isinstance(entry, Mapping):
            self.warn(f"phishing_indicators[{index}] is not a mapping")
            return None
        indicator_id = str(entry.get("id") or "").strip()
        if not indicator_id:
            self.warn(f"phishing_indicators[{index}] has no id")
            return None

        flags = str(entry.get("flags") or "i")
        operation = None
        pattern = entry.get("pattern")
        code_logic = entry.get("code_logic")
        if code_logic is not None and (entry.get("code_driven") or not pattern):
            try:
                operation = parse_operation(code_logic, flags)
            except OperationError as exc:
                self.warn(f"indicator {indicator_id}: {exc}")
                return None
            pattern = None
        elif isinstance(pattern, str) and pattern:
            if not self.patterns.is_valid(pattern, flags):
                self.warn(f"indicator {indicator_id}: invalid pattern {pattern!r}")
                return None
        else:
            self.warn(f"indicator {indicator_id}: no pattern or code_logic")
            return None

        confidence = _coerce_number(entry.get("confidence"), DEFAULT_CONFIDENCE)
        if not 0 <= confidence <= 1:
            self.warn(f"indicator {indicator_id}: confidence {confidence} clamped")
            confidence = min(max(confidence, 0.0), 1.0)

        return Indicator(
            id=indicator_id,
            severity=Severity.from_string(entry.get("severity")),
            confidence=confidence,
            action=IndicatorAction.from_string(entry.get("action")),
            category=str(entry.get("category") or "general"),
            description=str(entry.get("description") or ""),
            pattern=pattern,
            flags=flags,
            operation=operation,
            context_required=_string_tuple(entry.get("context_required")),
            additional_checks=_string_tuple(entry.get("additional_checks")),
            suppress_on_sso=bool(entry.get("suppress_on_sso", False)),
        )

    # -- blocking rules -----------------------------------------------------

    def blocking_rule(self, entry: Any, index: int) -> Optional[BlockingRule]:
        if not isinstance(entry, Mapping):
            self.warn(f"blocking_rules[{index}] is not a mapping")
            return None
        rule_id = str(entry.get("id") or "").strip()
        rule_type = str(entry.get("type") or "").strip()
        if not rule_id:
            self.warn(f"blocking_rules[{index}] has no id")
            return None
        if rule_type not in BLOCKING_RULE_TYPES:
            self.warn(f"blocking rule {rule_id}: unknown type {rule_type!r}")
            return None
        condition = entry.get("condition") or {}
        if not isinstance(condition, Mapping):
            self.warn(f"blocking rule {rule_id}: condition is not a mapping")
            return None
        return BlockingRule(
            id=rule_id,
            type=rule_type,
            severity=Severity.from_string(entry.get("severity") or "high"),
            description=str(entry.get("description") or ""),
            action_must_not_contain=str(condition.get("action_must_not_contain") or ""),
            has_password_field=bool(condition.get("has_password_field", False)),
            resource_pattern=str(condition.get("resource_pattern") or ""),
            required_origin=str(condition.get("required_origin") or ""),
            css_indicators=self.valid_patterns(
                _string_tuple(condition.get("css_indicators")), f"blocking rule {rule_id}"
            ),
            minimum_css_matches=int(_coerce_number(condition.get("minimum_css_matches"), 2)),
            has_credential_fields=bool(condition.get("has_credential_fields", False)),
            form_action_must_not_contain=str(condition.get("form_action_must_not_contain") or ""),
        )

    # -- legitimacy rules ---------------------------------------------------

    def legitimacy_rule(self, entry: Any, index: int) -> Optional[LegitimacyRule]:
        if not isinstance(entry, Mapping):
            self.warn(f"rules[{index}] is not a mapping")
            return None
        rule_id = str(entry.get("id") or "").strip()
        rule_type = str(entry.get("type") or "").strip()
        if not rule_id or not rule_type:
            self.warn(f"rules[{index}] needs id and type")
            return None
        condition = entry.get("condition") or {}
        if not isinstance(condition, Mapping):
            self.warn(f"rule {rule_id}: condition is not a mapping")
            return None
        operation = None
        if rule_type == "code_driven":
            try:
                operation = parse_operation(entry.get("code_logic"))
            except OperationError as exc:
                self.warn(f"rule {rule_id}: {exc}")
                return None
        frozen_condition = tuple(
            (str(key), tuple(value) if isinstance(value, list) else value)
            for key, value in condition.items()
            if not isinstance(value, Mapping)
        )
        return LegitimacyRule(
            id=rule_id,
            type=rule_type,
            weight=_coerce_number(entry.get("weight"), 0),
            description=str(entry.get("description") or ""),
            critical=bool(entry.get("critical", False)) or rule_id in DEFAULT_CRITICAL_RULE_IDS,
            condition=frozen_condition,
            operation=operation,
        )

    # -- element requirements -----------------------------------------------

    def element(self, entry: Any, category: str, index: int) -> Optional[ElementRequirement]:
        if not isinstance(entry, Mapping):
            self.warn(f"{category}_elements[{index}] is not a mapping")
            return None
        element_id = str(entry.get("id") or "").strip()
        element_type = str(entry.get("type") or "").strip()
        if not element_id:
            self.warn(f"{category}_elements[{index}] has no id")
            return None
        if element_type not in ELEMENT_TYPES:
            self.warn(f"element {element_id}: unknown type {element_type!r}")
            return None
        raw_patterns = _string_tuple(entry.get("patterns")) or _string_tuple(entry.get("pattern"))
        patterns = self.valid_patterns(raw_patterns, f"element {element_id}")
        if not patterns:
            self.warn(f"element {element_id}: no usable patterns")
            return None
        if element_type == "meta_tag" and not entry.get("attribute"):
            self.warn(f"element {element_id}: meta_tag requires attribute")
            return None
        return ElementRequirement(
            id=element_id,
            type=element_type,
            category=str(entry.get("category") or category),
            weight=_coerce_number(entry.get("weight"), 1) or 1,
            patterns=patterns,
            attribute=str(entry.get("attribute") or ""),
            description=str(entry.get("description") or ""),
        )

    def element_thresholds(self, raw: Any) -> ElementThresholds:
        if not isinstance(raw, Mapping):
            return ElementThresholds()
        defaults = ElementThresholds()
        # Zero means "use default", as in the rule feed
        return ElementThresholds(
            minimum_primary_elements=int(raw.get("minimum_primary_elements") or defaults.minimum_primary_elements),
            minimum_total_weight=_coerce_number(raw.get("minimum_total_weight") or None, defaults.minimum_total_weight),
            minimum_elements_overall=int(raw.get("minimum_elements_overall") or defaults.minimum_elements_overall),
            minimum_secondary_only_weight=_coerce_number(
                raw.get("minimum_secondary_only_weight") or None, defaults.minimum_secondary_only_weight
            ),
            minimum_secondary_only_elements=int(
                raw.get("minimum_secondary_only_elements") or defaults.minimum_secondary_only_elements
            ),
        )

    # -- document -----------------------------------------------------------

    def document(self, data: Any, source: str) -> RuleDocument:
        if not isinstance(data, Mapping):
            raise RuleDocumentError("rule document must be a mapping")

        indicators = self._collect(_list(data, "phishing_indicators", "indicators"), self.indicator)
        blocking = self._collect(_list(data, "blocking_rules"), self.blocking_rule)
        legitimacy = self._collect(_list(data, "rules", "legitimacy_rules"), self.legitimacy_rule)

        requirements = data.get("m365_detection_requirements") or data.get("brand_detection_requirements") or {}
        if not isinstance(requirements, Mapping):
            self.warn("detection requirements must be a mapping")
            requirements = {}
        elements = []
        for category in ("primary", "secondary"):
            raw = requirements.get(f"{category}_elements") or []
            if not isinstance(raw, list):
                self.warn(f"{category}_elements must be a list")
                continue
            for index, entry in enumerate(raw):
                element = self.element(entry, category, index)
                if element is not None:
                    elements.append(element)

        exclusion = data.get("exclusion_system") or {}
        if not isinstance(exclusion, Mapping):
            exclusion = {}
        context = exclusion.get("context_indicators") or {}
        if not isinstance(context, Mapping):
            context = {}

        raw_thresholds = data.get("thresholds") or {}
        if not isinstance(raw_thresholds, Mapping):
            raw_thresholds = {}
        defaults = Thresholds()
        thresholds = Thresholds(
            legitimate=_coerce_number(raw_thresholds.get("legitimate"), defaults.legitimate),
            suspicious=_coerce_number(raw_thresholds.get("suspicious"), defaults.suspicious),
            phishing=_coerce_number(raw_thresholds.get("phishing"), defaults.phishing),
        )

        rogue = data.get("rogue_apps_detection") or {}
        if not isinstance(rogue, Mapping):
            rogue = {}
        rogue_defaults = RogueAppSettings()
        rogue_settings = RogueAppSettings(
            enabled=bool(rogue.get("enabled", rogue_defaults.enabled)),
            source_url=str(rogue.get("source_url") or ""),
            cache_duration_hours=_coerce_number(
                rogue.get("cache_duration_hours")
                or (_coerce_number(rogue.get("cache_duration"), 0) / 3_600_000 or None),
                rogue_defaults.cache_duration_hours,
            ),
            update_interval_hours=_coerce_number(
                rogue.get("update_interval_hours")
                or (_coerce_number(rogue.get("update_interval"), 0) / 3_600_000 or None),
                rogue_defaults.update_interval_hours,
            ),
        )

        return RuleDocument(
            version=str(data.get("version") or "0"),
            last_updated=str(data["last_updated"]) if data.get("last_updated") else None,
            indicators=tuple(indicators),
            blocking_rules=tuple(blocking),
            legitimacy_rules=tuple(legitimacy),
            element_requirements=tuple(elements),
            element_thresholds=self.element_thresholds(requirements.get("detection_thresholds")),
            trusted_origin_patterns=self.valid_patterns(
                _string_tuple(data.get("trusted_login_patterns") or data.get("trusted_origin_patterns")),
                "trusted_login_patterns",
            ),
            brand_domain_patterns=self.valid_patterns(
                _string_tuple(data.get("microsoft_domain_patterns") or data.get("brand_domain_patterns")),
                "brand_domain_patterns",
            ),
            exclusion_patterns=self.valid_patterns(
                _string_tuple(exclusion.get("domain_patterns")), "exclusion_system.domain_patterns"
            ),
            legitimate_sso_patterns=_string_tuple(context.get("legitimate_sso_patterns")),
            fallback_keywords=_string_tuple(data.get("fallback_keywords")),
            thresholds=thresholds,
            rogue_apps=rogue_settings,
            warnings=tuple(self.warnings),
            source=source,
        )

    @staticmethod
    def _collect(entries: list, build) -> list:
        items = []
        seen: set[str] = set()
        for index, entry in enumerate(entries):
            item = build(entry, index)
            if item is None:
                continue
            if item.id in seen:
                logger.warning("Rule document: duplicate id %s skipped", item.id)
                continue
            seen.add(item.id)
            items.append(item)
        return items


def parse_rule_document(
    data: Any,
    source: str = "",
    pattern_cache: Optional[PatternCache] = None,
) -> RuleDocument:
    """Build a RuleDocument from decoded data.

    Bad individual entries are skipped (see ``RuleDocument.warnings``);
    RuleDocumentError is raised only when the document itself is unusable.
    """
    parser = _Parser(pattern_cache or shared_patterns)
    document = parser.document(data, source)
    logger.info(
        "Parsed rule document v%s from %s: %s indicators, %s blocking rules, "
        "%s legitimacy rules, %s elements (%s warnings)",
        document.version,
        source or "<memory>",
        len(document.indicators),
        len(document.blocking_rules),
        len(document.legitimacy_rules),
        len(document.element_requirements),
        len(document.warnings),
    )
    return document


def load_rule_document(text: str, source: str = "") -> RuleDocument:
    """Parse YAML or JSON text into a RuleDocument."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise RuleDocumentError(f"unparsable rule document: {exc}") from exc
    return parse_rule_document(data, source)


def load_default_rules() -> RuleDocument:
    """The bundled minimal rule set."""
    return load_rule_document(DEFAULT_RULES_PATH.read_text(encoding="utf-8"), source="bundled")


class RuleStore:
    """Holds the current RuleDocument; replaced atomically, never mutated."""

    def __init__(self, document: Optional[RuleDocument] = None):
        self._lock = threading.Lock()
        self._document: Optional[RuleDocument] = None
        self._degraded = False
        self._degraded_reason = ""
        if document is not None:
            self.replace(document)

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def degraded_reason(self) -> str:
        return self._degraded_reason

    @property
    def has_rules(self) -> bool:
        return self._document is not None

    def replace(self, document: RuleDocument) -> RuleDocument:
        """Swap in a new document. Empty documents are refused."""
        if document.is_empty:
            raise RuleDocumentError("refusing to install an empty rule document")
        with self._lock:
            previous = self._document
            self._document = document
            self._degraded = False
            self._degraded_reason = ""
        if previous is None or previous.version != document.version:
            logger.info("Rule document v%s installed from %s", document.version, document.source or "<memory>")
        return document

    def load_text(self, text: str, source: str = "") -> RuleDocument:
        """Parse and install; the current document is kept if parsing fails."""
        return self.replace(load_rule_document(text, source))

    def ensure_rules(self, reason: str = "no rule document available") -> RuleDocument:
        """Return current rules, installing the bundled default if none were loaded."""
        with self._lock:
            if self._document is not None:
                return self._document
        logger.warning("Falling back to bundled rule document: %s", reason)
        document = load_default_rules()
        with self._lock:
            if self._document is None:
                self._document = document
                self._degraded = True
                self._degraded_reason = reason
            return self._document

    def current_rules(self) -> RuleDocument:
        document = self._document
        if document is None:
            return self.ensure_rules()
        return document

    def patterns_for(self, category: str) -> list:
        """Compiled regex patterns of the indicators in ``category``."""
        compiled = []
        for indicator in self.current_rules().indicators:
            if indicator.category != category or not indicator.pattern:
                continue
            pattern = shared_patterns.try_compile(indicator.pattern, indicator.flags)
            if pattern is not None:
                compiled.append(pattern)
        return compiled
