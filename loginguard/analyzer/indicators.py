"""Weighted phishing-indicator scanning."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from ..constants import DEFAULT_WARNING_THRESHOLD, Severity
from .metrics import metrics
from .patterns import PatternCache, PatternError, patterns as shared_patterns
from .primitives import EvaluationContext, PrimitiveEvaluator
from .rule_models import Indicator, ScanInput, Threat

logger = logging.getLogger(__name__)

SNIPPET_RADIUS = 60

LOCATION_SOURCE = "page source"
LOCATION_TEXT = "page text"
LOCATION_URL = "URL"


@dataclass
class IndicatorScanResult:
    """Threats found so far and their cumulative score."""

    threats: list[Threat] = field(default_factory=list)
    score: float = 0.0
    evaluated: int = 0
    total: int = 0
    early_exit: bool = False
    partial: bool = False
    elapsed_ms: float = 0.0

    @property
    def high_severity_count(self) -> int:
        return sum(1 for t in self.threats if t.severity >= Severity.HIGH)

    def add(self, threat: Threat, weight: float) -> None:
        self.threats.append(threat)
        self.score += weight


def build_snippet(haystack: str, start: int, end: int, radius: int = SNIPPET_RADIUS) -> str:
    """Context around ``haystack[start:end]`` with ellipses where trimmed."""
    if not haystack or start < 0:
        return ""
    left = max(0, start - radius)
    right = min(len(haystack), end + radius)
    snippet = " ".join(haystack[left:right].split())
    prefix = "..." if left > 0 else ""
    suffix = "..." if right < len(haystack) else ""
    return f"{prefix}{snippet}{suffix}"


class IndicatorScanner:
    """Evaluates indicators against a corpus and accumulates a phishing score."""

    def __init__(
        self,
        evaluator: Optional[PrimitiveEvaluator] = None,
        pattern_cache: Optional[PatternCache] = None,
    ):
        self.patterns = pattern_cache or shared_patterns
        self.evaluator = evaluator or PrimitiveEvaluator(self.patterns)

    def _match_expression(self, indicator: Indicator, context: EvaluationContext) -> tuple[Optional[str], str]:
        """Return (location, snippet) for the primary match expression, or (None, "")."""
        corpus = context.corpus
        if indicator.operation is not None:
            if self.evaluator.evaluate(indicator.operation, context):
                return LOCATION_SOURCE, ""
            return None, ""

        if not indicator.pattern:
            return None, ""
        compiled = self.patterns.compile(indicator.pattern, indicator.flags)
        for location, haystack in (
            (LOCATION_SOURCE, corpus.source),
            (LOCATION_TEXT, corpus.text),
            (LOCATION_URL, corpus.url),
        ):
            if not haystack:
                continue
            match = compiled.search(haystack)
            if match:
                return location, build_snippet(haystack, match.start(), match.end())
        return None, ""

    def _additional_checks(self, indicator: Indicator, corpus: ScanInput) -> Optional[str]:
        for check in indicator.additional_checks:
            if check in corpus.source:
                return LOCATION_SOURCE
            if check in corpus.text:
                return LOCATION_TEXT
        return None

    def _context_present(self, indicator: Indicator, corpus: ScanInput) -> bool:
        for context_pattern in indicator.context_required:
            compiled = self.patterns.try_compile(context_pattern, "i")
            if compiled is not None:
                if compiled.search(corpus.source) or compiled.search(corpus.text):
                    return True
            else:
                needle = context_pattern.lower()
                if needle in corpus.source_lower or needle in corpus.text_lower:
                    return True
        return False

    def evaluate_indicator(
        self,
        indicator: Indicator,
        context: EvaluationContext,
        sso_patterns: Sequence[str] = (),
    ) -> Optional[Threat]:
        """Evaluate one indicator. Errors are logged and count as no match."""
        corpus = context.corpus
        try:
            location, snippet = self._match_expression(indicator, context)
            if location is None:
                location = self._additional_checks(indicator, corpus)
            if location is None:
                return None

            if indicator.context_required and not self._context_present(indicator, corpus):
                logger.debug("Indicator %s matched without required context", indicator.id)
                return None

            if indicator.suppress_on_sso and any(p.lower() in corpus.source_lower for p in sso_patterns):
                logger.debug("Indicator %s suppressed on legitimate SSO page", indicator.id)
                return None
        except PatternError as exc:
            logger.warning("Indicator %s has an unusable pattern: %s", indicator.id, exc)
            return None
        except Exception as exc:
            logger.warning("Error processing indicator %s: %s", indicator.id, exc)
            return None

        return Threat(
            id=indicator.id,
            severity=indicator.severity,
            confidence=indicator.confidence,
            description=indicator.description,
            location=location,
            category=indicator.category,
            action=indicator.action,
            snippet=snippet,
        )

    @staticmethod
    def accumulate(
        result: IndicatorScanResult,
        indicator: Indicator,
        threat: Optional[Threat],
        escalation_threshold: int,
    ) -> bool:
        """Fold one evaluation into ``result``; True when scanning should stop early."""
        result.evaluated += 1
        if threat is None:
            return False
        result.add(threat, indicator.weight)
        metrics.record_indicator_hit(indicator.category, indicator.id)
        if escalation_threshold and result.high_severity_count >= escalation_threshold:
            result.early_exit = True
            return True
        return False

    def scan(
        self,
        indicators: Sequence[Indicator],
        corpus: ScanInput,
        escalation_threshold: int = DEFAULT_WARNING_THRESHOLD,
        sso_patterns: Sequence[str] = (),
    ) -> IndicatorScanResult:
        started = time.perf_counter()
        context = EvaluationContext(corpus)
        result = IndicatorScanResult(total=len(indicators))
        for indicator in indicators:
            threat = self.evaluate_indicator(indicator, context, sso_patterns)
            if self.accumulate(result, indicator, threat, escalation_threshold):
                logger.info(
                    "Early exit after %s/%s indicators: %s high-severity threats",
                    result.evaluated,
                    result.total,
                    result.high_severity_count,
                )
                break
        result.elapsed_ms = (time.perf_counter() - started) * 1000
        return result

    def scan_injected_script(
        self,
        indicators: Iterable[Indicator],
        code: str,
        url: str = "",
        origin: str = "dynamic script",
    ) -> IndicatorScanResult:
        """Scan late-injected script text with the same indicators."""
        indicators = [i for i in indicators if i.pattern or i.operation]
        result = self.scan(indicators, ScanInput(source=code or "", url=url), escalation_threshold=0)
        for threat in result.threats:
            if threat.is_critical_block:
                logger.error("Critical threat %s detected in %s", threat.id, origin)
            else:
                logger.warning("Threat %s detected in %s", threat.id, origin)
        return result


_worker_scanner: Optional[IndicatorScanner] = None


def scan_indicators(
    indicators: Sequence[Indicator],
    corpus: ScanInput,
    escalation_threshold: int = DEFAULT_WARNING_THRESHOLD,
    sso_patterns: Sequence[str] = (),
) -> IndicatorScanResult:
    """Executor entry point; one scanner per worker process or thread pool."""
    global _worker_scanner
    if _worker_scanner is None:
        _worker_scanner = IndicatorScanner()
    return _worker_scanner.scan(indicators, corpus, escalation_threshold, sso_patterns)
