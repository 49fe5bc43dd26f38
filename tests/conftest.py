"""Shared pytest configuration and rule fixtures."""

from __future__ import annotations

import asyncio
import copy
import inspect
from collections.abc import Iterator

import pytest

from loginguard.analyzer.metrics import metrics
from loginguard.analyzer.rule_models import ScanInput
from loginguard.analyzer.rule_store import parse_rule_document
from loginguard.config import ScanSettings


@pytest.fixture(scope="session")
def event_loop() -> Iterator[asyncio.AbstractEventLoop]:
    """One event loop for every async test and fixture."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        loop.close()


def _loop_for(request: pytest.FixtureRequest) -> asyncio.AbstractEventLoop:
    loop = request.getfixturevalue("event_loop")
    asyncio.set_event_loop(loop)
    return loop


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):  # type: ignore[override]
    """Run ``async def`` tests on the shared loop."""
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None
    kwargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
    loop = _loop_for(pyfuncitem._request)
    loop.run_until_complete(pyfuncitem.obj(**kwargs))
    return True


@pytest.hookimpl(tryfirst=True)
def pytest_fixture_setup(fixturedef, request):  # type: ignore[override]
    """Resolve async fixtures and async generator fixtures on the shared loop."""
    func = fixturedef.func
    if inspect.iscoroutinefunction(func):
        loop = _loop_for(request)
        kwargs = {arg: request.getfixturevalue(arg) for arg in fixturedef.argnames}
        return loop.run_until_complete(func(**kwargs))

    if inspect.isasyncgenfunction(func):
        loop = _loop_for(request)
        kwargs = {arg: request.getfixturevalue(arg) for arg in fixturedef.argnames}
        agen = func(**kwargs)
        value = loop.run_until_complete(agen.__anext__())

        def finalize() -> None:
            try:
                loop.run_until_complete(agen.__anext__())
            except StopAsyncIteration:
                pass

        request.addfinalizer(finalize)
        return value

    return None


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "asyncio: test runs on the shared event loop")


TEST_RULES = {
    "version": "test-1",
    "trusted_login_patterns": [r"^https://login\.microsoftonline\.com$"],
    "microsoft_domain_patterns": [
        r"^https://[a-z0-9-]+\.microsoft\.com$",
        r"^https://login\.microsoftonline\.com$",
    ],
    "exclusion_system": {
        "domain_patterns": [r"^https://docs\.example\.org$"],
        "context_indicators": {"legitimate_sso_patterns": ["SAMLRequest"]},
    },
    "m365_detection_requirements": {
        "primary_elements": [
            {"id": "loginfmt", "type": "source_content", "pattern": "loginfmt", "weight": 3},
            {"id": "i0116", "type": "source_content", "pattern": "i0116", "weight": 2},
        ],
        "secondary_elements": [
            {"id": "title", "type": "page_title", "pattern": "sign in", "weight": 1},
            {"id": "segoe", "type": "source_content", "pattern": r"Segoe\s+UI", "weight": 1},
        ],
    },
    "blocking_rules": [
        {
            "id": "form_post_not_microsoft",
            "type": "form_action_validation",
            "severity": "critical",
            "description": "Form posts outside Microsoft",
            "condition": {
                "action_must_not_contain": "login.microsoftonline.com",
                "has_password_field": True,
            },
        },
        {
            "id": "customcss_wrong_origin",
            "type": "resource_validation",
            "severity": "critical",
            "condition": {
                "resource_pattern": "customcss",
                "required_origin": "https://aadcdn.msftauthimages.net/",
            },
        },
    ],
    "rules": [
        {"id": "legit_canary", "type": "source_content", "weight": 50, "condition": {"contains": "canary"}},
        {"id": "legit_flow_token", "type": "source_content", "weight": 20, "condition": {"contains": "flowToken"}},
        {"id": "legit_referrer", "type": "referrer_validation", "weight": 20},
        {
            "id": "kit_marker",
            "type": "source_content",
            "weight": -100,
            "critical": True,
            "description": "Known phishing kit marker",
            "condition": {"contains": "phishkit-v3"},
        },
    ],
    "phishing_indicators": [
        {
            "id": "telegram_exfil",
            "category": "exfiltration",
            "severity": "critical",
            "action": "block",
            "confidence": 1.0,
            "description": "Credentials sent to a Telegram bot",
            "pattern": r"api\.telegram\.org/bot",
        },
        {
            "id": "verify_wording",
            "category": "social_engineering",
            "severity": "medium",
            "confidence": 0.5,
            "code_driven": True,
            "code_logic": {"type": "substring_present", "values": ["verify your account"]},
        },
        {"id": "urgent_wording", "severity": "medium", "confidence": 0.5, "pattern": "act now"},
        {"id": "suspended_wording", "severity": "medium", "confidence": 0.5, "pattern": "account suspended"},
        {"id": "devtools_block", "severity": "high", "confidence": 0.8, "pattern": r"keyCode\s*==\s*123"},
    ],
    "thresholds": {"legitimate": 85},
    "fallback_keywords": ["microsoft", "sign in to your account"],
}


def brand_login_page(action: str = "https://login.microsoftonline.com/common/login", extra: str = "") -> str:
    """Markup that satisfies the login-page element thresholds of TEST_RULES."""
    return (
        "<html><head><title>Sign in to your account</title></head><body>"
        f'<form method="post" action="{action}">'
        '<input name="loginfmt" id="i0116" type="email">'
        '<input type="password" name="passwd">'
        "</form>"
        f"{extra}</body></html>"
    )


def brand_content_page(extra: str = "") -> str:
    """Markup with a brand element but below the login-page thresholds."""
    return f'<html><body><div data-field="loginfmt"></div><p>{extra}</p></body></html>'


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def rule_data() -> dict:
    return copy.deepcopy(TEST_RULES)


@pytest.fixture
def rules(rule_data):
    return parse_rule_document(rule_data, source="test")


@pytest.fixture
def settings() -> ScanSettings:
    return ScanSettings()


@pytest.fixture
def login_page():
    return brand_login_page


@pytest.fixture
def content_page():
    return brand_content_page


@pytest.fixture
def make_scan():
    def _make(source: str = "", url: str = "https://evil.example/login", text: str = "", referrer: str = ""):
        return ScanInput(source=source, text=text, url=url, referrer=referrer)

    return _make
