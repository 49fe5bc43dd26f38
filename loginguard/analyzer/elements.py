"""Brand login-page recognition from weighted content signals."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .patterns import PatternCache, patterns as shared_patterns
from .rule_models import ElementRequirement, ElementThresholds, RuleDocument, ScanInput

logger = logging.getLogger(__name__)


@dataclass
class ElementDetection:
    """Outcome of element classification."""

    is_logon_page: bool = False
    has_elements: bool = False
    primary_found: int = 0
    total_weight: float = 0
    total_elements: int = 0
    found_elements: list[str] = field(default_factory=list)
    missing_elements: list[str] = field(default_factory=list)
    excluded: bool = False
    error: Optional[str] = None


def _meta_content(meta: dict[str, str], attribute: str) -> str:
    if attribute == "description":
        key = "name"
    elif attribute.startswith("og:"):
        key = "property"
    else:
        key = "name"
    if meta.get(key) != attribute:
        return ""
    return meta.get("content", "")


class ElementClassifier:
    """Decides whether a page presents itself as a protected-brand login page."""

    def __init__(self, pattern_cache: Optional[PatternCache] = None):
        self.patterns = pattern_cache or shared_patterns

    def matches(self, requirement: ElementRequirement, scan: ScanInput) -> bool:
        """Test one requirement. Raises on invalid patterns."""
        if requirement.type in ("source_content", "css_pattern"):
            return self._any_pattern(requirement, scan.source)
        if requirement.type == "page_title":
            return self._any_pattern(requirement, scan.title)
        if requirement.type == "url_pattern":
            return self._any_pattern(requirement, scan.url)
        if requirement.type == "text_content":
            return self._any_pattern(requirement, scan.text)
        if requirement.type == "meta_tag":
            return any(
                self._any_pattern(requirement, content)
                for content in (_meta_content(meta, requirement.attribute) for meta in scan.meta_tags)
                if content
            )
        logger.warning("Unknown element type %s for %s", requirement.type, requirement.id)
        return False

    def _any_pattern(self, requirement: ElementRequirement, haystack: str) -> bool:
        if not haystack:
            return False
        return any(self.patterns.compile(p, "i").search(haystack) for p in requirement.patterns)

    def classify(
        self,
        scan: ScanInput,
        requirements: tuple[ElementRequirement, ...],
        thresholds: ElementThresholds,
    ) -> ElementDetection:
        result = ElementDetection()
        if not requirements:
            logger.error("No brand detection requirements in rules")
            return result

        for requirement in requirements:
            try:
                found = self.matches(requirement, scan)
            except Exception as exc:
                logger.warning("Error checking element %s: %s", requirement.id, exc)
                found = False

            if found:
                result.total_elements += 1
                result.total_weight += requirement.weight
                if requirement.is_primary:
                    result.primary_found += 1
                result.found_elements.append(requirement.id)
                logger.debug("Found %s element: %s (weight %s)", requirement.category, requirement.id, requirement.weight)
            else:
                result.missing_elements.append(requirement.id)

        if result.primary_found > 0:
            result.is_logon_page = (
                result.primary_found >= thresholds.minimum_primary_elements
                and result.total_weight >= thresholds.minimum_total_weight
                and result.total_elements >= thresholds.minimum_elements_overall
            )
        else:
            result.is_logon_page = (
                result.total_weight >= thresholds.minimum_secondary_only_weight
                and result.total_elements >= thresholds.minimum_secondary_only_elements
            )

        result.has_elements = (
            result.primary_found > 0
            or result.total_weight >= thresholds.minimum_total_weight
            or (
                result.total_elements >= thresholds.minimum_elements_overall
                and result.total_weight >= thresholds.minimum_total_weight
            )
        )

        logger.info(
            "Element detection: logon=%s elements=%s primary=%s weight=%s total=%s",
            result.is_logon_page,
            result.has_elements,
            result.primary_found,
            result.total_weight,
            result.total_elements,
        )
        return result

    def detect(self, scan: ScanInput, rules: RuleDocument, excluded: bool = False) -> ElementDetection:
        """Classify with the document's requirements; failures fail open for element presence."""
        if excluded:
            return ElementDetection(excluded=True)
        try:
            return self.classify(scan, rules.element_requirements, rules.element_thresholds)
        except Exception as exc:
            logger.error("Element detection failed: %s", exc)
            return ElementDetection(has_elements=True, error=str(exc))
