"""Tests for rule providers, the refresher and verdict sinks."""

import httpx
import pytest
import yaml

from loginguard.analyzer.metrics import metrics
from loginguard.analyzer.rule_models import ScanResult
from loginguard.analyzer.rule_store import RuleStore
from loginguard.cache import create_rules_cache
from loginguard.constants import Verdict
from loginguard.pipeline.providers import (
    CallbackVerdictSink,
    FileRuleProvider,
    HttpRuleProvider,
    LoggingVerdictSink,
    RuleFetchError,
    RuleRefresher,
    StaticContentProvider,
)

URL = "https://rules.example/rules.yaml"


class FailingProvider:
    async def fetch_rule_document(self):
        raise RuleFetchError("feed unreachable")


class RecordingSink:
    def __init__(self):
        self.degraded = []

    async def on_verdict(self, session_id, result):
        pass

    async def on_degraded(self, reason):
        self.degraded.append(reason)


@pytest.fixture
def rule_text(rule_data):
    return yaml.safe_dump(rule_data)


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_file_provider(tmp_path, rule_text):
    path = tmp_path / "rules.yaml"
    path.write_text(rule_text)
    document = await FileRuleProvider(path).fetch_rule_document()
    assert document.version == "test-1"
    assert document.source == str(path)


@pytest.mark.asyncio
async def test_file_provider_missing_file(tmp_path):
    with pytest.raises(RuleFetchError):
        await FileRuleProvider(tmp_path / "absent.yaml").fetch_rule_document()


@pytest.mark.asyncio
async def test_http_provider_downloads_and_caches(tmp_path, rule_text):
    calls = []

    def handler(request):
        calls.append(str(request.url))
        return httpx.Response(200, text=rule_text)

    cache = create_rules_cache(tmp_path)
    async with client_for(handler) as client:
        provider = HttpRuleProvider(URL, cache=cache, client=client)
        first = await provider.fetch_rule_document()
        second = await provider.fetch_rule_document()

    assert first.version == second.version == "test-1"
    assert first.source == URL
    assert second.source == f"{URL} (cached)"
    assert calls == [URL]


@pytest.mark.asyncio
async def test_http_provider_falls_back_to_stale_cache(tmp_path, rule_text):
    cache = create_rules_cache(tmp_path, ttl_hours=0)
    cache.set(URL, rule_text)
    async with client_for(lambda request: httpx.Response(500)) as client:
        document = await HttpRuleProvider(URL, cache=cache, client=client).fetch_rule_document()
    assert document.version == "test-1"
    assert document.source.endswith("(cached)")


@pytest.mark.asyncio
async def test_http_provider_invalid_document_is_not_cached(tmp_path):
    cache = create_rules_cache(tmp_path)
    async with client_for(lambda request: httpx.Response(200, text="version: [unclosed")) as client:
        with pytest.raises(RuleFetchError):
            await HttpRuleProvider(URL, cache=cache, client=client).fetch_rule_document()
    assert cache.get_entry(URL) is None


@pytest.mark.asyncio
async def test_http_provider_error_without_cache():
    async with client_for(lambda request: httpx.Response(404)) as client:
        with pytest.raises(RuleFetchError):
            await HttpRuleProvider(URL, client=client).fetch_rule_document()


@pytest.mark.asyncio
async def test_refresher_installs_document(tmp_path, rule_text):
    path = tmp_path / "rules.yaml"
    path.write_text(rule_text)
    store = RuleStore()
    assert await RuleRefresher(store, FileRuleProvider(path)).refresh_once()
    assert store.current_rules().version == "test-1"
    assert not store.degraded
    assert metrics.get_summary()["events"]["rules_refreshed"] == 1


@pytest.mark.asyncio
async def test_refresher_failure_keeps_last_document(rules):
    store = RuleStore(rules)
    sink = RecordingSink()
    assert not await RuleRefresher(store, FailingProvider(), sink).refresh_once()
    assert store.current_rules() is rules
    assert not store.degraded
    assert sink.degraded == []
    assert metrics.get_summary()["events"]["rules_refresh_failed"] == 1


@pytest.mark.asyncio
async def test_refresher_without_rules_degrades():
    store = RuleStore()
    sink = RecordingSink()
    assert not await RuleRefresher(store, FailingProvider(), sink).refresh_once()
    assert store.degraded
    assert store.current_rules().version == "1.0.0-bundled"
    assert sink.degraded and "feed unreachable" in sink.degraded[0]
    assert metrics.get_summary()["events"]["degraded"] == 1


@pytest.mark.asyncio
async def test_static_content_provider(make_scan):
    scan = make_scan("<p>hi</p>")
    provider = StaticContentProvider({"s1": scan})
    assert await provider.get_scan_input("s1") is scan
    with pytest.raises(KeyError):
        await provider.get_scan_input("s2")

    provider.default = scan
    assert await provider.get_scan_input("s2") is scan


@pytest.mark.asyncio
async def test_callback_sink_accepts_plain_and_async_callables():
    received = []

    async def on_degraded(reason):
        received.append(reason)

    sink = CallbackVerdictSink(on_verdict=lambda sid, result: received.append((sid, result.verdict)), on_degraded=on_degraded)
    await sink.on_verdict("s1", ScanResult(verdict=Verdict.SAFE))
    await sink.on_degraded("bundled rules")
    assert received == [("s1", Verdict.SAFE), "bundled rules"]

    await CallbackVerdictSink().on_verdict("s1", ScanResult(verdict=Verdict.SAFE))


@pytest.mark.asyncio
async def test_logging_sink_levels(caplog):
    sink = LoggingVerdictSink()
    with caplog.at_level("INFO", logger="loginguard.pipeline.providers"):
        await sink.on_verdict("s1", ScanResult(verdict=Verdict.BLOCKED, reason="Critical threat"))
        await sink.on_verdict("s2", ScanResult(verdict=Verdict.SAFE, reason="ok"))
    levels = [record.levelname for record in caplog.records]
    assert levels == ["ERROR", "INFO"]
