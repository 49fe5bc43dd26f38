"""Legitimacy scoring: how brand-consistent a login page looks."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence
from urllib.parse import urlparse

from ..constants import DEFAULT_LEGITIMATE_THRESHOLD
from ..utils.domains import origin_of
from . import html_extract
from .blocking import count_css_matches, foreign_resource, suspicious_form_action
from .primitives import EvaluationContext, PrimitiveEvaluator
from .patterns import PatternCache, patterns as shared_patterns
from .rule_models import LegitimacyRule, RuleDocument, ScanInput

logger = logging.getLogger(__name__)

CODE_DRIVEN = "code_driven"


@dataclass(frozen=True)
class TriggeredRule:
    id: str
    type: str
    weight: float
    description: str = ""
    critical: bool = False


@dataclass
class LegitimacyResult:
    score: float = 0
    threshold: float = DEFAULT_LEGITIMATE_THRESHOLD
    triggered: list[TriggeredRule] = field(default_factory=list)

    @property
    def critical_triggered(self) -> list[TriggeredRule]:
        return [rule for rule in self.triggered if rule.critical]

    @property
    def triggered_ids(self) -> list[str]:
        return [rule.id for rule in self.triggered]


def matches_any_pattern(value: str, patterns: Sequence[str], pattern_cache: PatternCache) -> bool:
    if not value:
        return False
    for pattern in patterns:
        compiled = pattern_cache.try_compile(pattern, "i")
        if compiled is not None and compiled.search(value):
            return True
    return False


class LegitimacyScorer:
    """Sums the weights of triggered legitimacy rules."""

    def __init__(
        self,
        evaluator: Optional[PrimitiveEvaluator] = None,
        pattern_cache: Optional[PatternCache] = None,
    ):
        self.patterns = pattern_cache or shared_patterns
        self.evaluator = evaluator or PrimitiveEvaluator(self.patterns)
        self._checks: dict[str, Callable[[LegitimacyRule, ScanInput, RuleDocument], bool]] = {
            "url": self._url,
            "form_action": self._form_action,
            "form_action_validation": self._form_action_validation,
            "dom": self._dom,
            "content": self._source_contains,
            "source_content": self._source_contains,
            "css_pattern": self._source_contains,
            "network": self._network,
            "referrer_validation": self._referrer,
            "resource_validation": self._resource_validation,
            "css_spoofing_validation": self._css_spoofing,
            "url_validation": self._url_validation,
        }

    def _url(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        hostname = (urlparse(scan.url).hostname or "").lower()
        return any(hostname == str(domain).lower() for domain in rule.get("domains", ()))

    def _form_action(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        needle = str(rule.get("contains") or "")
        return any(needle in form.resolved_action(scan.url) for form in scan.forms)

    def _form_action_validation(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        return suspicious_form_action(
            scan,
            str(rule.get("action_must_not_contain") or ""),
            bool(rule.get("has_password_field", False)),
        ) is not None

    def _dom(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        for selector in rule.get("selectors", ()):
            try:
                if html_extract.selector_matches(scan.document, str(selector)):
                    return True
            except ValueError as exc:
                logger.debug("Skipping selector for %s: %s", rule.id, exc)
        return False

    def _source_contains(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        needle = rule.get("contains") or rule.get("pattern")
        return bool(needle) and str(needle) in scan.source

    def _network(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        pattern = str(rule.get("network_pattern") or "")
        required = str(rule.get("required_domain") or "")
        for url in html_extract.extract_network_resources(scan.document):
            if pattern in url:
                return url.startswith(required)
        return False

    def _referrer(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        return matches_any_pattern(origin_of(scan.referrer), rules.brand_domain_patterns, self.patterns)

    def _resource_validation(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        if rule.get("block_if_different_origin") is False:
            return False
        return foreign_resource(
            scan,
            str(rule.get("resource_pattern") or ""),
            str(rule.get("required_origin") or ""),
        ) is not None

    def _css_spoofing(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        minimum = rule.get("minimum_css_matches")
        indicators = rule.get("css_indicators", ())
        if not indicators or not minimum:
            return False
        if count_css_matches(scan, indicators, self.patterns) < int(minimum):
            return False
        if rule.get("has_credential_fields") and not html_extract.has_credential_fields(scan.document):
            return False
        return suspicious_form_action(
            scan, str(rule.get("form_action_must_not_contain") or ""), password_only=False
        ) is not None

    def _url_validation(self, rule: LegitimacyRule, scan: ScanInput, rules: RuleDocument) -> bool:
        pattern = rule.get("pattern")
        if not pattern:
            return False
        compiled = self.patterns.try_compile(str(pattern), "i")
        return bool(compiled and compiled.search(scan.url))

    def _code_driven(self, rule: LegitimacyRule, context: EvaluationContext) -> bool:
        if rule.operation is None:
            return False
        return self.evaluator.evaluate(rule.operation, context)

    def score(
        self,
        scan: ScanInput,
        rules: RuleDocument,
        context: Optional[EvaluationContext] = None,
    ) -> LegitimacyResult:
        """Score ``scan``; code-driven rules share one operation memo per scan."""
        if context is None:
            context = EvaluationContext(scan)
        result = LegitimacyResult(threshold=rules.thresholds.legitimate)
        for rule in rules.legitimacy_rules:
            check = self._checks.get(rule.type)
            if check is None and rule.type != CODE_DRIVEN:
                logger.warning("Unknown rule type: %s", rule.type)
                continue
            try:
                if check is None:
                    triggered = self._code_driven(rule, context)
                else:
                    triggered = check(rule, scan, rules)
            except (re.error, ValueError, TypeError) as exc:
                logger.warning("Error processing rule %s: %s", rule.id, exc)
                continue
            if triggered:
                result.score += rule.weight
                result.triggered.append(
                    TriggeredRule(
                        id=rule.id,
                        type=rule.type,
                        weight=rule.weight,
                        description=rule.description,
                        critical=rule.critical,
                    )
                )
                logger.debug("Rule triggered: %s (weight %s)", rule.id, rule.weight)

        logger.info(
            "Legitimacy rules: score=%s threshold=%s triggered=%s",
            result.score,
            result.threshold,
            len(result.triggered),
        )
        return result
