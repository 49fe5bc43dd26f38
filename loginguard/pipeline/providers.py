"""Collaborators of the scan pipeline: rule sources, page content, verdict sinks."""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import httpx

from ..analyzer.metrics import metrics
from ..analyzer.rule_models import RuleDocument, ScanInput, ScanResult
from ..analyzer.rule_store import RuleDocumentError, RuleStore, load_rule_document
from ..cache import CacheManager
from ..constants import Verdict

logger = logging.getLogger(__name__)


class RuleFetchError(RuntimeError):
    """A rule document could not be obtained from its source."""


class RuleProvider(Protocol):
    """Source of rule documents."""

    async def fetch_rule_document(self) -> RuleDocument:  # pragma: no cover - interface
        ...


class ContentProvider(Protocol):
    """Supplies the normalized page content for a session."""

    async def get_scan_input(self, session_id: str) -> ScanInput:  # pragma: no cover - interface
        ...


class VerdictSink(Protocol):
    """Receives verdicts and degraded-mode notices."""

    async def on_verdict(self, session_id: str, result: ScanResult) -> None:  # pragma: no cover - interface
        ...

    async def on_degraded(self, reason: str) -> None:  # pragma: no cover - interface
        ...


class FileRuleProvider:
    """Reads a YAML or JSON rule document from disk."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    async def fetch_rule_document(self) -> RuleDocument:
        try:
            text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except OSError as exc:
            raise RuleFetchError(f"cannot read {self.path}: {exc}") from exc
        return load_rule_document(text, source=str(self.path))


class HttpRuleProvider:
    """
    Fetches the rule document over HTTP.

    Downloads go through the cache: a fresh entry is served without a request,
    and an expired one is still used when the download fails.
    """

    def __init__(
        self,
        url: str,
        cache: Optional[CacheManager] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.cache = cache
        self.timeout = timeout
        self.client = client

    async def _download(self) -> str:
        if self.client is not None:
            response = await self.client.get(self.url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(self.url)
        response.raise_for_status()
        return response.text

    async def fetch_rule_document(self) -> RuleDocument:
        fetched: dict[str, RuleDocument] = {}

        async def download() -> str:
            text = await self._download()
            # Validate before the text reaches the cache
            fetched["document"] = load_rule_document(text, source=self.url)
            return text

        try:
            if self.cache is not None:
                text = await self.cache.get_or_fetch(self.url, download)
            else:
                text = await download()
        except (httpx.HTTPError, RuleDocumentError) as exc:
            raise RuleFetchError(f"rule download from {self.url} failed: {exc}") from exc

        if "document" in fetched:
            return fetched["document"]
        return load_rule_document(text, source=f"{self.url} (cached)")


class RuleRefresher:
    """Periodically installs a fresh rule document into the store."""

    def __init__(
        self,
        store: RuleStore,
        provider: RuleProvider,
        sink: Optional[VerdictSink] = None,
        interval_hours: float = 24,
    ):
        self.store = store
        self.provider = provider
        self.sink = sink
        self.interval_seconds = max(1.0, float(interval_hours) * 3600)
        self._running = False

    async def refresh_once(self) -> bool:
        """Fetch and install once. On failure the last valid document stays in place."""
        try:
            document = await self.provider.fetch_rule_document()
            self.store.replace(document)
        except (RuleFetchError, RuleDocumentError) as exc:
            reason = f"rule refresh failed: {exc}"
            logger.warning("%s", reason)
            metrics.record_event("rules_refresh_failed")
            if not self.store.has_rules:
                self.store.ensure_rules(reason)
                metrics.record_event("degraded")
                await self._notify_degraded(reason)
            return False

        metrics.record_event("rules_refreshed")
        if document.warnings:
            logger.info("Rule document v%s loaded with %s warnings", document.version, len(document.warnings))
        return True

    async def _notify_degraded(self, reason: str) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.on_degraded(reason)
        except Exception as exc:
            logger.error("Degraded notification failed: %s", exc)

    async def run(self, refresh_first: bool = True) -> None:
        """Refresh loop; stops on ``stop()`` or task cancellation."""
        self._running = True
        logger.info("Rule refresher started (every %.0fs)", self.interval_seconds)
        if not refresh_first:
            await asyncio.sleep(self.interval_seconds)
        while self._running:
            try:
                await self.refresh_once()
            except Exception as exc:
                logger.error("Rule refresher error: %s", exc)
            await asyncio.sleep(self.interval_seconds)

    def stop(self) -> None:
        self._running = False


class StaticContentProvider:
    """Serves pre-extracted page content per session."""

    def __init__(self, pages: Optional[dict[str, ScanInput]] = None, default: Optional[ScanInput] = None):
        self._pages: dict[str, ScanInput] = dict(pages or {})
        self.default = default

    def set_page(self, session_id: str, scan_input: ScanInput) -> None:
        self._pages[session_id] = scan_input

    async def get_scan_input(self, session_id: str) -> ScanInput:
        page = self._pages.get(session_id, self.default)
        if page is None:
            raise KeyError(f"no content for session {session_id}")
        return page


class LoggingVerdictSink:
    """Writes verdicts to the log."""

    async def on_verdict(self, session_id: str, result: ScanResult) -> None:
        if result.is_blocking:
            level = logging.ERROR
        elif result.verdict == Verdict.SUSPICIOUS:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "Session %s: %s (%s) threats=%s score=%.1f",
            session_id,
            result.verdict.value,
            result.reason,
            len(result.threats),
            result.score,
        )
        for threat in result.late_findings:
            logger.warning("Session %s: late finding %s", session_id, threat.id)

    async def on_degraded(self, reason: str) -> None:
        logger.warning("Running on degraded rules: %s", reason)


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class CallbackVerdictSink:
    """Forwards verdicts to plain or async callables."""

    def __init__(
        self,
        on_verdict: Optional[Callable[[str, ScanResult], Any]] = None,
        on_degraded: Optional[Callable[[str], Any]] = None,
    ):
        self._on_verdict = on_verdict
        self._on_degraded = on_degraded

    async def on_verdict(self, session_id: str, result: ScanResult) -> None:
        if self._on_verdict is not None:
            await _maybe_await(self._on_verdict(session_id, result))

    async def on_degraded(self, reason: str) -> None:
        if self._on_degraded is not None:
            await _maybe_await(self._on_degraded(reason))
