"""Tests for the health and metrics endpoints."""

import json

import pytest

from loginguard.analyzer.metrics import metrics
from loginguard.analyzer.rule_store import RuleStore
from loginguard.constants import Verdict
from loginguard.monitoring.health import HealthServer, metric_lines, status_snapshot


class _Scheduler:
    active_sessions = 3


def test_status_snapshot_with_rules(rules):
    metrics.record_verdict(Verdict.BLOCKED.value)
    snapshot = status_snapshot(RuleStore(rules), _Scheduler())
    assert snapshot["status"] == "ok"
    assert snapshot["rule_version"] == "test-1"
    assert snapshot["active_sessions"] == 3
    assert snapshot["total_scans"] == 1
    assert snapshot["verdicts"] == {"blocked": 1}


def test_status_snapshot_degraded():
    store = RuleStore()
    store.ensure_rules("feed unreachable")
    snapshot = status_snapshot(store)
    assert snapshot["status"] == "degraded"
    assert snapshot["degraded_reason"] == "feed unreachable"
    assert "active_sessions" not in snapshot


def test_status_snapshot_before_rules_load():
    snapshot = status_snapshot(RuleStore())
    assert snapshot["rules_loaded"] is False
    assert "rule_version" not in snapshot


def test_metric_lines():
    lines = list(
        metric_lines(
            {
                "status": "ok",
                "degraded": True,
                "total_scans": 4,
                "verdicts": {"safe": 3, "blocked": 1, "flag": True},
            }
        )
    )
    assert lines == [
        "loginguard_degraded 1",
        "loginguard_total_scans 4",
        'loginguard_verdicts{key="blocked"} 1',
        'loginguard_verdicts{key="safe"} 3',
    ]


@pytest.mark.asyncio
async def test_handle_health_ok():
    server = HealthServer("127.0.0.1", 0, lambda: {"rule_version": "test-1"})
    response = await server.handle_health(None)
    assert response.status == 200
    assert json.loads(response.text) == {"rule_version": "test-1", "status": "ok"}


@pytest.mark.asyncio
async def test_handle_health_provider_failure():
    def broken():
        raise RuntimeError("store unavailable")

    response = await HealthServer("127.0.0.1", 0, broken).handle_health(None)
    assert response.status == 503
    assert json.loads(response.text)["message"] == "store unavailable"


@pytest.mark.asyncio
async def test_handle_metrics():
    server = HealthServer("127.0.0.1", 0, lambda: {"total_scans": 2, "events": {"scan_skipped": 1}})
    response = await server.handle_metrics(None)
    assert response.text == 'loginguard_total_scans 2\nloginguard_events{key="scan_skipped"} 1\n'

    empty = await HealthServer("127.0.0.1", 0, dict).handle_metrics(None)
    assert empty.text == 'loginguard_status{state="empty"} 1\n'


@pytest.mark.asyncio
async def test_disabled_server_does_not_bind():
    server = HealthServer("127.0.0.1", 0, dict, enabled=False)
    await server.start()
    assert server._runner is None
    await server.stop()
