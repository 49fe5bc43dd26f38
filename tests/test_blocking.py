"""Tests for blocking rules."""

import pytest

from loginguard.analyzer.blocking import BlockingRuleEvaluator, foreign_resource, suspicious_form_action
from loginguard.analyzer.metrics import metrics
from loginguard.analyzer.rule_models import BlockingRule, ScanInput
from loginguard.constants import Severity


@pytest.fixture
def evaluator():
    return BlockingRuleEvaluator()


def test_form_posting_elsewhere_blocks(evaluator, rules, login_page):
    scan = ScanInput(source=login_page(action="https://evil.example/post.php"), url="https://evil.example/login")
    result = evaluator.evaluate(rules.blocking_rules, scan)
    assert result.should_block
    assert result.rule_id == "form_post_not_microsoft"
    assert result.severity is Severity.CRITICAL
    assert result.reason == "Form posts outside Microsoft"
    assert metrics.get_summary()["blocking_rules"] == {"form_post_not_microsoft": 1}


def test_form_posting_to_brand_passes(evaluator, rules, login_page):
    scan = ScanInput(source=login_page(), url="https://evil.example/login")
    assert not evaluator.evaluate(rules.blocking_rules, scan).should_block


def test_unquoted_password_form_blocks(evaluator, rules):
    source = "<form method=post action=https://evil.example/collect><input type=password name=passwd></form>"
    scan = ScanInput(source=source, url="https://evil.example/login")
    assert scan.forms[0].has_password
    result = evaluator.evaluate(rules.blocking_rules, scan)
    assert result.rule_id == "form_post_not_microsoft"


def test_empty_action_resolves_to_page_url():
    source = '<form method="post"><input type="password"></form>'
    scan = ScanInput(source=source, url="https://evil.example/login")
    assert suspicious_form_action(scan, "login.microsoftonline.com", password_only=True) == "https://evil.example/login"


def test_relative_action_resolves_against_page():
    source = '<form action="/post.php"><input type="password"></form>'
    scan = ScanInput(source=source, url="https://evil.example/login/index.html")
    assert suspicious_form_action(scan, "login.microsoftonline.com", password_only=True) == "https://evil.example/post.php"


def test_password_only_skips_other_forms():
    source = '<form action="https://evil.example/search"><input name="q"></form>'
    scan = ScanInput(source=source, url="https://evil.example/")
    assert suspicious_form_action(scan, "login.microsoftonline.com", password_only=True) is None
    assert suspicious_form_action(scan, "login.microsoftonline.com", password_only=False) == "https://evil.example/search"


def test_resource_from_wrong_origin(evaluator, rules):
    source = '<link rel="stylesheet" href="https://evil.example/customcss/brand.css">'
    result = evaluator.evaluate(rules.blocking_rules, ScanInput(source=source, url="https://evil.example/"))
    assert result.rule_id == "customcss_wrong_origin"


def test_resource_from_required_origin():
    source = '<link rel="stylesheet" href="https://aadcdn.msftauthimages.net/t/customcss/brand.css">'
    scan = ScanInput(source=source)
    assert foreign_resource(scan, "customcss", "https://aadcdn.msftauthimages.net/") is None


def test_css_spoofing_rule(evaluator):
    rule = BlockingRule(
        id="css_spoof",
        type="css_spoofing_validation",
        css_indicators=(r"background-color:\s*#0067b8", r"max-width:\s*440px"),
        minimum_css_matches=2,
        has_credential_fields=True,
        form_action_must_not_contain="login.microsoftonline.com",
    )
    styled = (
        "<style>.btn{background-color: #0067b8} .box{max-width: 440px}</style>"
        '<form action="https://evil.example/next.php"><input type="email" name="user"></form>'
    )
    assert evaluator.evaluate([rule], ScanInput(source=styled)).rule_id == "css_spoof"

    one_match = styled.replace("max-width: 440px", "max-width: 300px")
    assert not evaluator.evaluate([rule], ScanInput(source=one_match)).should_block

    no_credentials = styled.replace('<input type="email" name="user">', '<input name="q">')
    assert not evaluator.evaluate([rule], ScanInput(source=no_credentials)).should_block


def test_first_triggered_rule_wins(evaluator, rules):
    source = (
        '<link href="https://evil.example/customcss/a.css" rel="stylesheet">'
        '<form action="https://evil.example/p"><input type="password"></form>'
    )
    result = evaluator.evaluate(rules.blocking_rules, ScanInput(source=source, url="https://evil.example/"))
    assert result.rule_id == "form_post_not_microsoft"


def test_unknown_rule_type_is_ignored(evaluator):
    rule = BlockingRule(id="mystery", type="dns_validation")
    assert not evaluator.evaluate([rule], ScanInput(source="<form></form>")).should_block
