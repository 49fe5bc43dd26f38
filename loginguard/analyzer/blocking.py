"""Structural checks that force a block on their own."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from ..constants import Severity
from . import html_extract
from .metrics import metrics
from .patterns import PatternCache, patterns as shared_patterns
from .rule_models import BlockingRule, ScanInput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockingResult:
    should_block: bool = False
    reason: str = ""
    rule_id: Optional[str] = None
    severity: Optional[Severity] = None


def suspicious_form_action(
    scan: ScanInput,
    required: str,
    password_only: bool,
) -> Optional[str]:
    """First form whose submission target lacks ``required``; returns the target."""
    if not required:
        return None
    for form in scan.forms:
        if password_only and not form.has_password:
            continue
        action = form.resolved_action(scan.url)
        if required not in action:
            return action
    return None


def foreign_resource(scan: ScanInput, resource_pattern: str, required_origin: str) -> Optional[str]:
    """First linked resource matching ``resource_pattern`` served from elsewhere."""
    if not resource_pattern or not required_origin:
        return None
    for url in scan.linked_resources:
        if resource_pattern in url and not url.startswith(required_origin):
            return url
    return None


def count_css_matches(scan: ScanInput, css_indicators: Sequence[str], pattern_cache: PatternCache) -> int:
    matches = 0
    for indicator in css_indicators:
        compiled = pattern_cache.try_compile(indicator, "i")
        if compiled is not None and compiled.search(scan.source):
            matches += 1
    return matches


class BlockingRuleEvaluator:
    """Runs blocking rules in order; the first trigger wins."""

    def __init__(self, pattern_cache: Optional[PatternCache] = None):
        self.patterns = pattern_cache or shared_patterns
        self._checks: dict[str, Callable[[BlockingRule, ScanInput], Optional[str]]] = {
            "form_action_validation": self._form_action_validation,
            "resource_validation": self._resource_validation,
            "css_spoofing_validation": self._css_spoofing_validation,
        }

    def _form_action_validation(self, rule: BlockingRule, scan: ScanInput) -> Optional[str]:
        action = suspicious_form_action(scan, rule.action_must_not_contain, rule.has_password_field)
        if action is None:
            return None
        return f"Form posts to non-legitimate domain: {action}"

    def _resource_validation(self, rule: BlockingRule, scan: ScanInput) -> Optional[str]:
        url = foreign_resource(scan, rule.resource_pattern, rule.required_origin)
        if url is None:
            return None
        return f"Resource loaded from unexpected origin: {url}"

    def _css_spoofing_validation(self, rule: BlockingRule, scan: ScanInput) -> Optional[str]:
        matches = count_css_matches(scan, rule.css_indicators, self.patterns)
        if matches < rule.minimum_css_matches:
            return None
        if rule.has_credential_fields and not html_extract.has_credential_fields(scan.document):
            return None
        action = suspicious_form_action(scan, rule.form_action_must_not_contain, password_only=False)
        if action is None:
            return None
        return f"Brand styling ({matches} CSS matches) with form posting to {action}"

    def evaluate(self, rules: Sequence[BlockingRule], scan: ScanInput) -> BlockingResult:
        for rule in rules:
            check = self._checks.get(rule.type)
            if check is None:
                logger.warning("Unknown blocking rule type: %s", rule.type)
                continue
            try:
                detail = check(rule, scan)
            except Exception as exc:
                logger.warning("Error processing blocking rule %s: %s", rule.id, exc)
                continue
            if detail:
                reason = rule.description or detail
                logger.warning("Blocking rule triggered: %s (%s)", rule.id, detail)
                metrics.record_blocking_rule(rule.id)
                return BlockingResult(
                    should_block=True,
                    reason=reason,
                    rule_id=rule.id,
                    severity=rule.severity,
                )
        return BlockingResult()
