"""Per-session scan scheduling: cooldowns, debouncing, threat rescans, escalation."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from ..analyzer.indicators import IndicatorScanResult
from ..analyzer.metrics import metrics
from ..analyzer.rule_models import Indicator, ScanInput, ScanResult, Threat
from ..analyzer.rule_store import RuleStore
from ..analyzer.verdict import IndicatorRunner, VerdictEngine
from ..config import Config, ScanSettings
from ..constants import ScanTrigger, Verdict
from ..utils.content import content_hash
from .offload import IndicatorDispatcher
from .providers import ContentProvider, VerdictSink

logger = logging.getLogger(__name__)

# Triggers that scan even when the content hash is unchanged
HASH_EXEMPT_TRIGGERS = frozenset({ScanTrigger.INITIAL, ScanTrigger.THREAT_RESCAN, ScanTrigger.MANUAL})


@dataclass
class ScanSession:
    """Mutable state of one page lifetime. Owned by the scheduler."""

    session_id: str
    settings: ScanSettings
    started_at: float
    scan_count: int = 0
    last_scan_at: Optional[float] = None
    last_content_hash: Optional[str] = None
    last_url: str = ""
    escalated_to_block: bool = False
    threat_rescan_count: int = 0
    last_result: Optional[ScanResult] = None
    late_findings: list[Threat] = field(default_factory=list)
    pending: set[asyncio.Task] = field(default_factory=set, repr=False)
    debounce_task: Optional[asyncio.Task] = field(default=None, repr=False)
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def active(self) -> bool:
        return not (self.closed or self.escalated_to_block)

    def cancel_pending(self) -> int:
        """Cancel every pending timer except the one currently running."""
        current = asyncio.current_task()
        cancelled = 0
        for task in list(self.pending):
            if task is not current and not task.done():
                task.cancel()
                cancelled += 1
        self.pending.clear()
        self.debounce_task = None
        return cancelled


class ScanScheduler:
    """
    Decides when a session is scanned and delivers verdicts.

    Scans within a session are sequential. Settings are snapshotted when the
    session opens and are not re-read mid-session.
    """

    def __init__(
        self,
        engine: VerdictEngine,
        rule_store: RuleStore,
        content_provider: ContentProvider,
        sink: Optional[VerdictSink],
        config: Config,
        registry=None,
        dispatcher: Optional[IndicatorDispatcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.rule_store = rule_store
        self.content_provider = content_provider
        self.sink = sink
        self.config = config
        self.dispatcher = dispatcher
        self.clock = clock
        if registry is not None:
            self.engine.registry = registry
        self._sessions: dict[str, ScanSession] = {}
        self._deliveries: set[asyncio.Task] = set()

    # -- sessions -------------------------------------------------------------

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def open_session(self, session_id: str) -> ScanSession:
        existing = self._sessions.get(session_id)
        if existing is not None:
            self.close_session(session_id)
        session = ScanSession(
            session_id=session_id,
            settings=self.config.scan_settings(),
            started_at=self.clock(),
        )
        self._sessions[session_id] = session
        logger.debug("Session %s opened", session_id)
        return session

    def get_session(self, session_id: str) -> Optional[ScanSession]:
        return self._sessions.get(session_id)

    def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.closed = True
        session.cancel_pending()
        logger.debug("Session %s closed after %s scans", session_id, session.scan_count)

    # -- scanning -------------------------------------------------------------

    def _skip_reason(self, session: ScanSession, trigger: ScanTrigger) -> Optional[str]:
        settings = session.settings
        if session.closed:
            return "session closed"
        if session.escalated_to_block:
            return "session escalated to block"
        if session.scan_count >= settings.max_scans:
            return f"max scans ({settings.max_scans}) reached"
        if session.last_scan_at is not None:
            cooldown_ms = (
                settings.threat_rescan_cooldown_ms
                if trigger == ScanTrigger.THREAT_RESCAN
                else settings.scan_cooldown_ms
            )
            elapsed_ms = (self.clock() - session.last_scan_at) * 1000
            if elapsed_ms < cooldown_ms:
                return f"cooldown ({elapsed_ms:.0f}ms < {cooldown_ms}ms)"
        return None

    def _indicator_runner(self, session: ScanSession) -> Optional[IndicatorRunner]:
        if self.dispatcher is None:
            return None
        dispatcher = self.dispatcher

        def on_late_finding(threat: Threat) -> None:
            self._record_late_finding(session, threat)

        async def run(
            indicators: Sequence[Indicator],
            corpus: ScanInput,
            escalation_threshold: int,
            sso_patterns: Sequence[str],
        ) -> IndicatorScanResult:
            return await dispatcher.run(
                indicators, corpus, escalation_threshold, sso_patterns, on_late_finding=on_late_finding
            )

        return run

    def _record_late_finding(self, session: ScanSession, threat: Threat) -> None:
        logger.warning(
            "Session %s: late finding %s will be reported with the next scan",
            session.session_id,
            threat.id,
        )
        session.late_findings.append(threat)

    async def request_scan(
        self,
        session: ScanSession,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> Optional[ScanResult]:
        """Run one scan unless a rate limit or terminal state says otherwise."""
        async with session.lock:
            reason = self._skip_reason(session, trigger)
            if reason:
                logger.debug("Session %s: %s scan skipped: %s", session.session_id, trigger.value, reason)
                metrics.record_event("scan_skipped")
                return None

            try:
                scan = await self.content_provider.get_scan_input(session.session_id)
            except Exception as exc:
                logger.error("Session %s: content unavailable: %s", session.session_id, exc)
                return None

            digest = content_hash(scan.source)
            if trigger not in HASH_EXEMPT_TRIGGERS and digest == session.last_content_hash:
                logger.debug("Session %s: content unchanged, %s scan skipped", session.session_id, trigger.value)
                metrics.record_event("scan_unchanged")
                return None

            session.scan_count += 1
            session.last_scan_at = self.clock()
            session.last_content_hash = digest
            session.last_url = scan.url

            try:
                rules = self.rule_store.current_rules()
                result = await self.engine.evaluate(
                    scan,
                    rules,
                    session.settings,
                    indicator_runner=self._indicator_runner(session),
                    degraded=self.rule_store.degraded,
                )
            except Exception as exc:
                logger.error("Session %s: scan failed: %s", session.session_id, exc, exc_info=True)
                return None

            if session.late_findings:
                result.late_findings = list(session.late_findings)
                session.late_findings.clear()

            session.last_result = result
            self._after_scan(session, trigger, result)
            self._deliver(session.session_id, result)
            return result

    def _after_scan(self, session: ScanSession, trigger: ScanTrigger, result: ScanResult) -> None:
        if result.is_blocking:
            self.escalate(session)
            return
        if (
            result.verdict == Verdict.SUSPICIOUS
            and result.threats
            and trigger != ScanTrigger.THREAT_RESCAN
        ):
            self._schedule_threat_rescans(session, result)

    def escalate(self, session: ScanSession) -> None:
        """Terminal: no further scans, all pending timers cancelled."""
        if session.escalated_to_block:
            return
        session.escalated_to_block = True
        cancelled = session.cancel_pending()
        metrics.record_event("session_escalated")
        logger.info("Session %s escalated to block; %s pending scans cancelled", session.session_id, cancelled)

    def _schedule_threat_rescans(self, session: ScanSession, result: ScanResult) -> None:
        settings = session.settings
        if result.processing_ms > settings.slow_page_threshold_ms:
            logger.info(
                "Session %s: slow page (%.0fms), threat rescans skipped",
                session.session_id,
                result.processing_ms,
            )
            return
        for delay_ms in settings.threat_rescan_delays_ms[session.threat_rescan_count:]:
            session.threat_rescan_count += 1
            self._start_timer(session, delay_ms / 1000, ScanTrigger.THREAT_RESCAN)
            logger.debug("Session %s: threat rescan in %sms", session.session_id, delay_ms)

    def _start_timer(self, session: ScanSession, delay: float, trigger: ScanTrigger) -> asyncio.Task:
        task = asyncio.create_task(self._delayed_scan(session, delay, trigger))
        session.pending.add(task)
        task.add_done_callback(session.pending.discard)
        return task

    async def _delayed_scan(self, session: ScanSession, delay: float, trigger: ScanTrigger) -> None:
        await asyncio.sleep(delay)
        if session.debounce_task is asyncio.current_task():
            session.debounce_task = None
        try:
            await self.request_scan(session, trigger)
        except Exception as exc:
            logger.error("Session %s: scheduled %s scan failed: %s", session.session_id, trigger.value, exc)

    def notify_content_changed(self, session: ScanSession) -> bool:
        """Debounce a content-change rescan; False when monitoring has ended."""
        if not session.active:
            return False
        settings = session.settings
        elapsed_ms = (self.clock() - session.started_at) * 1000
        if elapsed_ms > settings.monitor_duration_ms:
            logger.debug("Session %s: change monitoring ended", session.session_id)
            return False
        if session.debounce_task is not None and not session.debounce_task.done():
            session.debounce_task.cancel()
            session.pending.discard(session.debounce_task)
        session.debounce_task = self._start_timer(session, settings.debounce_ms / 1000, ScanTrigger.CONTENT_CHANGED)
        return True

    async def submit_injected_script(
        self,
        session: ScanSession,
        code: str,
        origin: str = "dynamic script",
    ) -> Optional[ScanResult]:
        """Scan late-injected script text; critical findings are reported and escalate."""
        async with session.lock:
            if not session.active:
                return None
            rules = self.rule_store.current_rules()
            try:
                result = self.engine.evaluate_injected_script(
                    rules, code, session.settings, url=session.last_url, origin=origin
                )
            except Exception as exc:
                logger.error("Session %s: injected script scan failed: %s", session.session_id, exc)
                return None
            if any(threat.is_critical_block for threat in result.threats):
                if result.is_blocking:
                    self.escalate(session)
                session.last_result = result
                self._deliver(session.session_id, result)
            return result

    # -- delivery -------------------------------------------------------------

    def _deliver(self, session_id: str, result: ScanResult) -> None:
        if self.sink is None:
            return
        task = asyncio.create_task(self.sink.on_verdict(session_id, result))
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Verdict delivery failed: %s", exc)

    async def drain(self) -> None:
        """Wait for outstanding verdict deliveries."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            self.close_session(session_id)
        await self.drain()
        if self.dispatcher is not None:
            self.dispatcher.close()
