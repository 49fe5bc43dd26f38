"""Tests for indicator scanning."""

import pytest

from loginguard.analyzer.indicators import (
    IndicatorScanner,
    build_snippet,
    scan_indicators,
    LOCATION_SOURCE,
    LOCATION_TEXT,
    LOCATION_URL,
)
from loginguard.analyzer.metrics import metrics
from loginguard.analyzer.operations import SubstringPresent
from loginguard.analyzer.rule_models import Indicator, ScanInput
from loginguard.constants import IndicatorAction, Severity


@pytest.fixture
def scanner():
    return IndicatorScanner()


def indicator(indicator_id="ind", **kwargs) -> Indicator:
    kwargs.setdefault("pattern", "phish")
    return Indicator(id=indicator_id, **kwargs)


class TestIndicatorMatching:
    """Match expressions, context requirements and suppression."""

    def test_pattern_searches_source_then_text_then_url(self, scanner):
        ind = indicator(pattern="needle")
        assert scanner.scan([ind], ScanInput(source="a needle here")).threats[0].location == LOCATION_SOURCE
        assert scanner.scan([ind], ScanInput(source="-", text="needle")).threats[0].location == LOCATION_TEXT
        assert scanner.scan([ind], ScanInput(source="-", url="https://x/needle")).threats[0].location == LOCATION_URL

    def test_snippet_surrounds_match(self, scanner):
        source = "x" * 100 + " api.telegram.org/bot123 " + "y" * 100
        threat = scanner.scan([indicator(pattern=r"api\.telegram\.org/bot")], ScanInput(source=source)).threats[0]
        assert "api.telegram.org/bot" in threat.snippet
        assert threat.snippet.startswith("...")
        assert threat.snippet.endswith("...")

    def test_operation_indicator(self, scanner):
        ind = Indicator(id="op", operation=SubstringPresent(values=("verify your account",)))
        result = scanner.scan([ind], ScanInput(source="Please VERIFY your account"))
        assert [t.id for t in result.threats] == ["op"]
        assert result.threats[0].snippet == ""

    def test_additional_checks_match_when_expression_does_not(self, scanner):
        ind = indicator(pattern="never-present", additional_checks=("window.location.replace",))
        result = scanner.scan([ind], ScanInput(source="<script>window.location.replace(u)</script>"))
        assert [t.id for t in result.threats] == ["ind"]

    def test_additional_checks_apply_to_operation_indicators(self, scanner):
        ind = Indicator(
            id="op",
            operation=SubstringPresent(values=("never-present",)),
            additional_checks=("document.write(unescape",),
        )
        result = scanner.scan([ind], ScanInput(source="", text="document.write(unescape('%3C'))"))
        assert result.threats[0].location == LOCATION_TEXT

    def test_context_required(self, scanner):
        ind = indicator(pattern="post.php", context_required=("password",))
        assert not scanner.scan([ind], ScanInput(source='<form action="post.php">')).threats
        matched = scanner.scan([ind], ScanInput(source='<form action="post.php"><input name="password">'))
        assert matched.threats

    def test_context_required_accepts_invalid_regex_as_literal(self, scanner):
        ind = indicator(pattern="phish", context_required=("pass[",))
        assert scanner.scan([ind], ScanInput(source="phish pass[word")).threats

    def test_suppressed_on_sso_page(self, scanner):
        ind = indicator(pattern="office 365", suppress_on_sso=True)
        scan = ScanInput(source="Office 365 <input name='SAMLRequest'>")
        assert not scanner.scan([ind], scan, sso_patterns=("SAMLRequest",)).threats
        assert scanner.scan([ind], scan, sso_patterns=()).threats

    def test_invalid_pattern_is_no_match(self, scanner):
        result = scanner.scan([indicator(pattern="(unclosed")], ScanInput(source="(unclosed"))
        assert not result.threats
        assert result.evaluated == 1


class TestScoring:
    """Score accumulation and early exit."""

    def test_score_is_severity_weight_times_confidence(self, scanner):
        inds = [
            indicator("a", pattern="alpha", severity=Severity.HIGH, confidence=0.8),
            indicator("b", pattern="beta", severity=Severity.LOW, confidence=1.0),
        ]
        result = scanner.scan(inds, ScanInput(source="alpha beta"))
        assert result.score == pytest.approx(15 * 0.8 + 5)

    def test_early_exit_on_high_severity_count(self, scanner):
        inds = [indicator(f"h{i}", pattern="phish", severity=Severity.HIGH) for i in range(5)]
        result = scanner.scan(inds, ScanInput(source="phish"), escalation_threshold=3)
        assert result.early_exit
        assert result.evaluated == 3
        assert len(result.threats) == 3
        assert result.total == 5

    def test_medium_threats_do_not_trigger_early_exit(self, scanner):
        inds = [indicator(f"m{i}", pattern="phish", severity=Severity.MEDIUM) for i in range(5)]
        result = scanner.scan(inds, ScanInput(source="phish"), escalation_threshold=3)
        assert not result.early_exit
        assert result.evaluated == 5

    @pytest.mark.parametrize("severity", list(Severity))
    @pytest.mark.parametrize("position", [0, 1, 3])
    def test_extra_match_never_lowers_score(self, scanner, severity, position):
        base = [
            indicator("a", pattern="alpha", severity=Severity.HIGH, confidence=0.9),
            indicator("b", pattern="beta", severity=Severity.MEDIUM, confidence=0.5),
            indicator("c", pattern="gamma", severity=Severity.CRITICAL, confidence=1.0),
        ]
        extended = list(base)
        extended.insert(position, indicator("extra", pattern="delta", severity=severity, confidence=0.7))
        page = ScanInput(source="alpha beta gamma delta")
        before = scanner.scan(base, page, escalation_threshold=0)
        after = scanner.scan(extended, page, escalation_threshold=0)
        assert after.score >= before.score
        assert after.high_severity_count >= before.high_severity_count
        assert len(after.threats) == len(before.threats) + 1

    def test_hits_are_recorded(self, scanner):
        scanner.scan([indicator("cat_hit", category="exfiltration")], ScanInput(source="phish"))
        summary = metrics.get_summary()
        assert summary["categories"]["exfiltration"]["total_hits"] == 1

    def test_scan_indicators_entry_point(self, rules):
        result = scan_indicators(rules.indicators, ScanInput(source="https://api.telegram.org/bot1"))
        assert [t.id for t in result.threats] == ["telegram_exfil"]


def test_scan_injected_script_never_exits_early(scanner):
    inds = [indicator(f"h{i}", pattern="phish", severity=Severity.HIGH) for i in range(4)]
    result = scanner.scan_injected_script(inds, "phish()", origin="inline script")
    assert len(result.threats) == 4
    assert not result.early_exit


def test_threat_classification():
    critical_block = indicator(severity=Severity.CRITICAL, action=IndicatorAction.BLOCK)
    critical_warn = indicator(severity=Severity.CRITICAL, action=IndicatorAction.WARN)
    assert critical_block.is_critical_block
    assert not critical_warn.is_critical_block


def test_build_snippet_edges():
    assert build_snippet("", 0, 0) == ""
    assert build_snippet("short match", 0, 5) == "short match"
    assert build_snippet("a  b\n\tc", 0, 1) == "a b c"
