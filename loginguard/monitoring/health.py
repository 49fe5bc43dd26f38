"""Health and metrics endpoints for a running LoginGuard service."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator, Optional

from aiohttp import web

from ..analyzer.metrics import metrics
from ..analyzer.rule_store import RuleStore

logger = logging.getLogger(__name__)

METRIC_PREFIX = "loginguard"


def status_snapshot(rule_store: RuleStore, scheduler=None) -> dict:
    """Current rule version, degraded flag, session count and detection totals."""
    summary = metrics.get_summary()
    payload: dict[str, Any] = {
        "status": "degraded" if rule_store.degraded else "ok",
        "rules_loaded": rule_store.has_rules,
        "degraded": rule_store.degraded,
        "uptime_seconds": summary.get("uptime_seconds", 0),
        "total_scans": summary.get("total_scans", 0),
        "verdicts": summary.get("verdicts", {}),
        "blocking_rules": summary.get("blocking_rules", {}),
        "events": summary.get("events", {}),
    }
    if rule_store.has_rules:
        payload["rule_version"] = rule_store.current_rules().version
    if rule_store.degraded:
        payload["degraded_reason"] = rule_store.degraded_reason
    if scheduler is not None:
        payload["active_sessions"] = scheduler.active_sessions
    return payload


def _metric_name(key: str) -> str:
    return str(key).replace(".", "_").replace("-", "_").replace(" ", "_")


def metric_lines(data: dict) -> Iterator[str]:
    """Numeric fields as ``loginguard_<key> <value>``; one level of dicts becomes labels."""
    for key, value in data.items():
        name = f"{METRIC_PREFIX}_{_metric_name(key)}"
        if isinstance(value, bool):
            yield f"{name} {int(value)}"
        elif isinstance(value, (int, float)):
            yield f"{name} {value}"
        elif isinstance(value, dict):
            for label, count in sorted(value.items()):
                if isinstance(count, (int, float)) and not isinstance(count, bool):
                    yield f'{name}{{key="{label}"}} {count}'


class HealthServer:
    """Serves ``/healthz`` (JSON) and ``/metrics`` (Prometheus text)."""

    def __init__(
        self,
        host: str,
        port: int,
        status_provider: Callable[[], dict],
        enabled: bool = True,
    ):
        self.host = host
        self.port = port
        self.status_provider = status_provider
        self.enabled = enabled
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self.handle_health)
        app.router.add_get("/metrics", self.handle_metrics)
        return app

    async def start(self) -> None:
        if not self.enabled:
            logger.info("Health server disabled")
            return
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info("Health server listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._runner = None
        self._site = None

    def _collect(self) -> dict:
        try:
            return dict(self.status_provider() or {})
        except Exception as exc:
            logger.warning("Status provider failed: %s", exc)
            return {"status": "error", "message": str(exc)}

    async def handle_health(self, request: web.Request) -> web.Response:
        payload = self._collect()
        payload.setdefault("status", "ok")
        status = 503 if payload["status"] == "error" else 200
        return web.json_response(payload, status=status)

    async def handle_metrics(self, request: web.Request) -> web.Response:
        lines = list(metric_lines(self._collect()))
        if not lines:
            lines.append(f'{METRIC_PREFIX}_status{{state="empty"}} 1')
        return web.Response(text="\n".join(lines) + "\n")
