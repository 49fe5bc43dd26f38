"""Verdict state machine combining all analyzers into one classification."""

from __future__ import annotations

import logging
import re
import time
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from ..config import ScanSettings
from ..constants import (
    HIGH_SEVERITY_RATIO,
    LOW_LEGITIMACY_SCORE,
    FailurePolicy,
    IndicatorAction,
    Severity,
    Verdict,
)
from ..utils.domains import (
    allowlist_contains,
    origin_of,
    query_param,
    redirect_host,
    url_matches_allowlist,
)
from .blocking import BlockingRuleEvaluator
from .elements import ElementClassifier
from .indicators import IndicatorScanner, IndicatorScanResult
from .legitimacy import LegitimacyScorer, matches_any_pattern
from .metrics import metrics
from .patterns import PatternCache, patterns as shared_patterns
from .primitives import PrimitiveEvaluator
from .rule_models import Indicator, RogueAppMatch, RuleDocument, ScanInput, ScanResult, Threat

logger = logging.getLogger(__name__)

IndicatorRunner = Callable[
    [Sequence[Indicator], ScanInput, int, Sequence[str]],
    Awaitable[IndicatorScanResult],
]

DEFAULT_FALLBACK_KEYWORDS = ("microsoft", "office 365", "sign in to your account", "outlook")
PASSWORD_LIKE_RE = re.compile(
    r"type=[\"']?password|name=[\"']?loginfmt|id=[\"']?i0116", re.IGNORECASE
)


class AppRegistry(Protocol):
    """Lookup of known-malicious application ids."""

    def is_known_malicious(self, app_id: Optional[str]) -> Optional[RogueAppMatch]:  # pragma: no cover - interface
        ...


class VerdictEngine:
    """Runs one scan: origin checks, element detection, rules, indicators."""

    def __init__(
        self,
        registry: Optional[AppRegistry] = None,
        pattern_cache: Optional[PatternCache] = None,
    ):
        self.registry = registry
        self.patterns = pattern_cache or shared_patterns
        evaluator = PrimitiveEvaluator(self.patterns)
        self.classifier = ElementClassifier(self.patterns)
        self.scanner = IndicatorScanner(evaluator, self.patterns)
        self.blocking = BlockingRuleEvaluator(self.patterns)
        self.legitimacy = LegitimacyScorer(evaluator, self.patterns)

    async def _run_inline(
        self,
        indicators: Sequence[Indicator],
        corpus: ScanInput,
        escalation_threshold: int,
        sso_patterns: Sequence[str],
    ) -> IndicatorScanResult:
        return self.scanner.scan(indicators, corpus, escalation_threshold, sso_patterns)

    async def evaluate(
        self,
        scan: ScanInput,
        rules: RuleDocument,
        settings: ScanSettings,
        indicator_runner: Optional[IndicatorRunner] = None,
        degraded: bool = False,
    ) -> ScanResult:
        """Classify ``scan``. Never raises; pipeline failures go through the failure policy."""
        started = time.perf_counter()
        try:
            result = await self._evaluate(scan, rules, settings, indicator_runner or self._run_inline)
        except Exception as exc:
            logger.error("Scan pipeline failed for %s: %s", scan.url, exc, exc_info=True)
            metrics.record_event("pipeline_failure")
            result = self.failure_result(scan, rules, settings, exc)

        result.processing_ms = (time.perf_counter() - started) * 1000
        result.rule_version = rules.version
        result.degraded = result.degraded or degraded
        metrics.record_verdict(result.verdict.value)
        logger.info(
            "Verdict for %s: %s (%s) in %.1fms",
            scan.url,
            result.verdict.value,
            result.reason,
            result.processing_ms,
        )
        return result

    # -- steps ----------------------------------------------------------------

    def check_rogue_app(self, scan: ScanInput) -> Optional[RogueAppMatch]:
        if self.registry is None:
            return None
        client_id = query_param(scan.url, "client_id")
        if not client_id:
            return None
        return self.registry.is_known_malicious(client_id)

    def _origin_matches(self, url: str, patterns: Sequence[str]) -> bool:
        origin = origin_of(url)
        return bool(origin) and matches_any_pattern(origin, patterns, self.patterns)

    async def _evaluate(
        self,
        scan: ScanInput,
        rules: RuleDocument,
        settings: ScanSettings,
        runner: IndicatorRunner,
    ) -> ScanResult:
        rogue = self.check_rogue_app(scan)
        if rogue is not None:
            return self._rogue_app_result(scan, rogue, settings)

        if url_matches_allowlist(scan.url, settings.url_allowlist) or allowlist_contains(
            scan.url, settings.domain_allowlist
        ):
            return ScanResult(verdict=Verdict.SAFE, reason="URL is allowlisted")

        if self._origin_matches(scan.url, rules.trusted_origin_patterns):
            return ScanResult(verdict=Verdict.TRUSTED, reason="Trusted login origin")

        if self._origin_matches(scan.url, rules.brand_domain_patterns):
            return ScanResult(verdict=Verdict.SAFE, reason="Brand domain (not a login origin)")

        if self._origin_matches(scan.url, rules.exclusion_patterns):
            return ScanResult(verdict=Verdict.SAFE, reason="Excluded domain")

        elements = self.classifier.detect(scan, rules)
        if not elements.is_logon_page and not elements.has_elements:
            return ScanResult(verdict=Verdict.SAFE, reason="No brand login elements")

        if not elements.is_logon_page:
            result = await self._brand_content_page(scan, rules, settings, runner)
        else:
            result = await self._login_page(scan, rules, settings, runner)
        result.is_logon_page = elements.is_logon_page
        result.has_elements = elements.has_elements
        return result

    async def _run_indicators(
        self,
        scan: ScanInput,
        rules: RuleDocument,
        settings: ScanSettings,
        runner: IndicatorRunner,
    ) -> IndicatorScanResult:
        return await runner(
            rules.indicators,
            scan,
            settings.warning_threshold,
            rules.legitimate_sso_patterns,
        )

    async def _brand_content_page(
        self,
        scan: ScanInput,
        rules: RuleDocument,
        settings: ScanSettings,
        runner: IndicatorRunner,
    ) -> ScanResult:
        """Brand elements present without a full login page."""
        scanned = await self._run_indicators(scan, rules, settings, runner)
        result = ScanResult(
            verdict=Verdict.SAFE,
            threats=list(scanned.threats),
            score=scanned.score,
            partial=scanned.partial,
            reason="Brand elements without threats",
        )

        critical = [t for t in scanned.threats if t.is_critical_block]
        if critical:
            return self._block(result, settings, f"Critical threat: {critical[0].description or critical[0].id}")

        warnings = [t for t in scanned.threats if t.is_warning]
        if len(warnings) >= settings.warning_threshold:
            result.escalated = True
            return self._block(
                result,
                settings,
                f"{len(warnings)} warning indicators reached escalation threshold",
                severity="high",
            )

        if scanned.threats:
            result.verdict = Verdict.SUSPICIOUS
            result.severity = "medium"
            result.action = IndicatorAction.WARN.value
            result.reason = f"{len(scanned.threats)} suspicious indicators"
        return result

    async def _login_page(
        self,
        scan: ScanInput,
        rules: RuleDocument,
        settings: ScanSettings,
        runner: IndicatorRunner,
    ) -> ScanResult:
        """Full brand login page on an untrusted origin."""
        blocking = self.blocking.evaluate(rules.blocking_rules, scan)
        if blocking.should_block:
            result = ScanResult(verdict=Verdict.BLOCKED, triggered_rule_ids=[blocking.rule_id])
            return self._block(result, settings, blocking.reason, severity=str(blocking.severity or "high"))

        legitimacy = self.legitimacy.score(scan, rules)
        threshold = settings.legitimate_threshold or legitimacy.threshold
        result = ScanResult(
            verdict=Verdict.SAFE,
            triggered_rule_ids=legitimacy.triggered_ids,
            legitimacy_score=legitimacy.score,
        )

        critical_rules = legitimacy.critical_triggered
        if critical_rules:
            rule = critical_rules[0]
            return self._block(result, settings, f"Critical rule triggered: {rule.description or rule.id}")

        if legitimacy.score >= threshold:
            result.combined_score = legitimacy.score
            result.reason = "Legitimacy score above threshold"
            return result
        if legitimacy.score <= LOW_LEGITIMACY_SCORE:
            result.combined_score = legitimacy.score
            return self._block(result, settings, "Low legitimacy score", severity="high")

        scanned = await self._run_indicators(scan, rules, settings, runner)
        result.threats = list(scanned.threats)
        result.score = scanned.score
        result.partial = scanned.partial

        critical = [t for t in scanned.threats if t.is_critical_block]
        if critical:
            return self._block(result, settings, f"Critical threat: {critical[0].description or critical[0].id}")

        combined = legitimacy.score - scanned.score
        result.combined_score = combined
        if combined >= threshold:
            result.reason = "Combined score above threshold"
            return result

        if combined < threshold * HIGH_SEVERITY_RATIO:
            return self._block(result, settings, f"Combined score {combined:.1f} far below threshold", severity="high")

        result.verdict = Verdict.SUSPICIOUS
        result.severity = "medium"
        result.action = IndicatorAction.WARN.value
        result.reason = f"Combined score {combined:.1f} below threshold {threshold}"
        return result

    # -- outcomes -------------------------------------------------------------

    @staticmethod
    def _block(result: ScanResult, settings: ScanSettings, reason: str, severity: str = "critical") -> ScanResult:
        """Block, or downgrade to a warning when protection is disabled."""
        result.reason = reason
        result.severity = severity
        if settings.protection_enabled:
            result.verdict = Verdict.BLOCKED
            result.action = IndicatorAction.BLOCK.value
        else:
            result.verdict = Verdict.SUSPICIOUS
            result.action = IndicatorAction.WARN.value
        return result

    @staticmethod
    def _rogue_app_result(scan: ScanInput, rogue: RogueAppMatch, settings: ScanSettings) -> ScanResult:
        logger.warning("Rogue application detected: %s (%s)", rogue.app_name, rogue.app_id)
        threat = Threat(
            id="rogue_app",
            severity=Severity.CRITICAL,
            confidence=1.0,
            description=f"Known rogue application: {rogue.app_name}",
            location="URL",
            category="rogue_app",
            action=IndicatorAction.BLOCK,
        )
        return ScanResult(
            verdict=Verdict.ROGUE_APP,
            threats=[threat],
            score=Severity.CRITICAL.weight,
            reason=f"Rogue application {rogue.app_name} ({rogue.risk_level} risk)",
            severity="critical",
            action=IndicatorAction.BLOCK.value if settings.protection_enabled else IndicatorAction.WARN.value,
            rogue_app=rogue,
            redirect_host=redirect_host(scan.url),
        )

    def fallback_heuristic(self, scan: ScanInput, rules: RuleDocument) -> bool:
        """Password-like input plus a brand keyword on a non-brand host."""
        if not PASSWORD_LIKE_RE.search(scan.source or ""):
            return False
        keywords = rules.fallback_keywords or DEFAULT_FALLBACK_KEYWORDS
        haystack = f"{scan.source_lower} {scan.text_lower}"
        if not any(keyword.lower() in haystack for keyword in keywords):
            return False
        return not self._origin_matches(scan.url, rules.brand_domain_patterns)

    def failure_result(
        self,
        scan: ScanInput,
        rules: RuleDocument,
        settings: ScanSettings,
        exc: BaseException,
    ) -> ScanResult:
        try:
            heuristic = self.fallback_heuristic(scan, rules)
        except Exception as heuristic_exc:
            logger.error("Fallback heuristic failed: %s", heuristic_exc)
            heuristic = False

        result = ScanResult(
            verdict=Verdict.SUSPICIOUS,
            severity="medium" if heuristic else "low",
            action=IndicatorAction.WARN.value,
            reason=(
                "Analysis failed; page resembles a brand login form"
                if heuristic
                else "Analysis failed; page could not be verified"
            ),
            error=str(exc),
        )
        if settings.failure_policy is FailurePolicy.BLOCK and settings.protection_enabled:
            result.verdict = Verdict.BLOCKED
            result.action = IndicatorAction.BLOCK.value
        return result

    def evaluate_injected_script(
        self,
        rules: RuleDocument,
        code: str,
        settings: ScanSettings,
        url: str = "",
        origin: str = "dynamic script",
    ) -> ScanResult:
        """Classify late-injected script text with the same indicators."""
        scanned = self.scanner.scan_injected_script(rules.indicators, code, url, origin)
        result = ScanResult(
            verdict=Verdict.SAFE,
            threats=list(scanned.threats),
            score=scanned.score,
            reason="No threats in injected script",
            rule_version=rules.version,
        )
        critical = [t for t in scanned.threats if t.is_critical_block]
        if critical:
            return self._block(result, settings, f"Critical threat in {origin}: {critical[0].description or critical[0].id}")
        if scanned.threats:
            result.verdict = Verdict.SUSPICIOUS
            result.severity = "medium"
            result.action = IndicatorAction.WARN.value
            result.reason = f"{len(scanned.threats)} suspicious indicators in {origin}"
        return result
