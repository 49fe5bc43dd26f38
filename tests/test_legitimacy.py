"""Tests for legitimacy scoring."""

from dataclasses import replace

import pytest

from loginguard.analyzer.legitimacy import LegitimacyScorer
from loginguard.analyzer.operations import SubstringPresent
from loginguard.analyzer.primitives import EvaluationContext
from loginguard.analyzer.rule_models import LegitimacyRule, ScanInput


@pytest.fixture
def scorer():
    return LegitimacyScorer()


def rule(rule_id, rule_type, weight=10, **condition) -> LegitimacyRule:
    return LegitimacyRule(id=rule_id, type=rule_type, weight=weight, condition=tuple(condition.items()))


def test_document_rules_sum_weights(scorer, rules, login_page):
    scan = ScanInput(
        source=login_page(extra='<script>var c="canary"; var t="flowToken";</script>'),
        url="https://evil.example/login",
        referrer="https://www.microsoft.com/en-us/",
    )
    result = scorer.score(scan, rules)
    assert result.score == 90
    assert set(result.triggered_ids) == {"legit_canary", "legit_flow_token", "legit_referrer"}
    assert result.threshold == 85
    assert not result.critical_triggered


def test_referrer_compares_origin_only(scorer, rules):
    spoofed = ScanInput(source="", referrer="https://evil.example/?next=https://www.microsoft.com")
    assert "legit_referrer" not in scorer.score(spoofed, rules).triggered_ids


def test_critical_rule_is_reported(scorer, rules):
    result = scorer.score(ScanInput(source="<!-- phishkit-v3 -->"), rules)
    assert result.score == -100
    assert [r.id for r in result.critical_triggered] == ["kit_marker"]


@pytest.mark.parametrize(
    "legit_rule, scan, expected",
    [
        (
            rule("u", "url", domains=("login.live.com",)),
            ScanInput(url="https://login.live.com/oauth"),
            True,
        ),
        (
            rule("u", "url", domains=("login.live.com",)),
            ScanInput(url="https://login.live.com.evil.example/"),
            False,
        ),
        (
            rule("fa", "form_action", contains="login.microsoftonline.com"),
            ScanInput(source='<form action="https://login.microsoftonline.com/common/login"></form>'),
            True,
        ),
        (
            rule("dom", "dom", selectors=("input[name=loginfmt]", "div.bad[")),
            ScanInput(source='<input name="loginfmt" type="email">'),
            True,
        ),
        (
            rule("net", "network", network_pattern="aadcdn", required_domain="https://aadcdn.msftauth.net"),
            ScanInput(source='<script src="https://aadcdn.msftauth.net/shared/1.0/app.js"></script>'),
            True,
        ),
        (
            rule("net", "network", network_pattern="aadcdn", required_domain="https://aadcdn.msftauth.net"),
            ScanInput(source='<img src="https://evil.example/aadcdn/logo.png">'),
            False,
        ),
        (
            rule("uv", "url_validation", pattern=r"\.ngrok\.io"),
            ScanInput(url="https://abc.ngrok.io/login"),
            True,
        ),
        (
            rule("rv", "resource_validation", resource_pattern="customcss", required_origin="https://aadcdn.msftauthimages.net/"),
            ScanInput(source='<link href="https://evil.example/customcss/a.css">'),
            True,
        ),
    ],
)
def test_rule_types(scorer, rules, legit_rule, scan, expected):
    document = replace(rules, legitimacy_rules=(legit_rule,))
    assert bool(scorer.score(scan, document).triggered) is expected


def test_code_driven_rule(scorer, rules):
    code_rule = LegitimacyRule(
        id="kit_paths", type="code_driven", weight=-30, operation=SubstringPresent(values=("next.php",))
    )
    document = replace(rules, legitimacy_rules=(code_rule,))
    assert scorer.score(ScanInput(source='<form action="next.php">'), document).score == -30


def test_unknown_rule_type_skipped(scorer, rules):
    document = replace(rules, legitimacy_rules=(rule("x", "astrology"),))
    assert scorer.score(ScanInput(source="anything"), document).score == 0


def test_code_driven_rules_share_one_memo(scorer, rules):
    operation = SubstringPresent(values=("next.php",))
    document = replace(
        rules,
        legitimacy_rules=(
            LegitimacyRule(id="kit_paths", type="code_driven", weight=-30, operation=operation),
            LegitimacyRule(id="kit_paths_again", type="code_driven", weight=-10, operation=operation),
        ),
    )
    scan = ScanInput(source='<form action="next.php">')
    context = EvaluationContext(scan)
    result = scorer.score(scan, document, context)
    assert result.score == -40
    assert context.misses == 1
    assert context.hits == 1
