"""Bounded-time indicator evaluation with a cooperative fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Callable, Optional, Sequence

from ..analyzer.indicators import IndicatorScanner, IndicatorScanResult, scan_indicators
from ..analyzer.metrics import metrics
from ..analyzer.primitives import EvaluationContext
from ..analyzer.rule_models import Indicator, ScanInput, Threat
from ..constants import (
    DEFAULT_FALLBACK_BATCH_SIZE,
    DEFAULT_PROCESSING_TIMEOUT_SECONDS,
    DEFAULT_WARNING_THRESHOLD,
    OFFLOAD_MODES,
)

logger = logging.getLogger(__name__)

LateFindingCallback = Callable[[Threat], None]
WorkerFunction = Callable[[Sequence[Indicator], ScanInput, int, Sequence[str]], IndicatorScanResult]


class IndicatorDispatcher:
    """
    Runs the indicator loop on a worker pool, racing it against a timeout.

    On timeout or worker failure the same indicators are evaluated on the
    event loop in small batches, yielding between batches. If that also runs
    past ``fallback_timeout`` the partial result is returned and the rest is
    evaluated in the background; only critical blocking findings from the
    background pass are reported, through ``on_late_finding``.
    """

    def __init__(
        self,
        mode: str = "thread",
        timeout: float = DEFAULT_PROCESSING_TIMEOUT_SECONDS,
        batch_size: int = DEFAULT_FALLBACK_BATCH_SIZE,
        fallback_timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
        scanner: Optional[IndicatorScanner] = None,
        worker: WorkerFunction = scan_indicators,
    ):
        if mode not in OFFLOAD_MODES:
            raise ValueError(f"Unknown offload mode: {mode}")
        self.mode = mode
        self.timeout = float(timeout)
        self.batch_size = max(1, int(batch_size))
        self.fallback_timeout = float(timeout if fallback_timeout is None else fallback_timeout)
        self.max_workers = max_workers
        self.scanner = scanner or IndicatorScanner()
        self.worker = worker
        self._executor: Optional[Executor] = None
        self._background: set[asyncio.Task] = set()

    def _get_executor(self) -> Executor:
        if self._executor is None:
            if self.mode == "process":
                self._executor = ProcessPoolExecutor(max_workers=self.max_workers)
            else:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="loginguard-indicators",
                )
        return self._executor

    async def run(
        self,
        indicators: Sequence[Indicator],
        corpus: ScanInput,
        escalation_threshold: int = DEFAULT_WARNING_THRESHOLD,
        sso_patterns: Sequence[str] = (),
        on_late_finding: Optional[LateFindingCallback] = None,
    ) -> IndicatorScanResult:
        indicators = list(indicators)
        sso_patterns = tuple(sso_patterns)

        if self.mode != "inline":
            try:
                return await self._run_offloaded(indicators, corpus, escalation_threshold, sso_patterns)
            except asyncio.TimeoutError:
                logger.warning(
                    "Indicator evaluation exceeded %.1fs; falling back to cooperative evaluation",
                    self.timeout,
                )
                metrics.record_event("offload_timeout")
            except Exception as exc:
                logger.warning("Offloaded indicator evaluation failed (%s); falling back", exc)
                metrics.record_event("offload_failure")
            metrics.record_event("fallback")

        return await self._run_cooperative(
            indicators, corpus, escalation_threshold, sso_patterns, on_late_finding
        )

    async def _run_offloaded(
        self,
        indicators: list[Indicator],
        corpus: ScanInput,
        escalation_threshold: int,
        sso_patterns: tuple[str, ...],
    ) -> IndicatorScanResult:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._get_executor(),
            self.worker,
            indicators,
            corpus,
            escalation_threshold,
            sso_patterns,
        )
        return await asyncio.wait_for(future, timeout=self.timeout)

    async def _run_cooperative(
        self,
        indicators: list[Indicator],
        corpus: ScanInput,
        escalation_threshold: int,
        sso_patterns: tuple[str, ...],
        on_late_finding: Optional[LateFindingCallback],
    ) -> IndicatorScanResult:
        started = time.perf_counter()
        deadline = started + self.fallback_timeout
        context = EvaluationContext(corpus)
        result = IndicatorScanResult(total=len(indicators))

        for start in range(0, len(indicators), self.batch_size):
            stop = False
            for indicator in indicators[start:start + self.batch_size]:
                threat = self.scanner.evaluate_indicator(indicator, context, sso_patterns)
                if self.scanner.accumulate(result, indicator, threat, escalation_threshold):
                    stop = True
                    break
            if stop:
                logger.info(
                    "Early exit after %s/%s indicators: %s high-severity threats",
                    result.evaluated,
                    result.total,
                    result.high_severity_count,
                )
                break

            remaining = indicators[start + self.batch_size:]
            if remaining and time.perf_counter() >= deadline:
                result.partial = True
                metrics.record_event("fallback_partial")
                logger.warning(
                    "Cooperative evaluation exceeded %.1fs; returning %s/%s indicators, continuing in background",
                    self.fallback_timeout,
                    result.evaluated,
                    result.total,
                )
                self._continue_in_background(remaining, context, sso_patterns, on_late_finding)
                break
            await asyncio.sleep(0)

        result.elapsed_ms = (time.perf_counter() - started) * 1000
        return result

    def _continue_in_background(
        self,
        indicators: list[Indicator],
        context: EvaluationContext,
        sso_patterns: tuple[str, ...],
        on_late_finding: Optional[LateFindingCallback],
    ) -> None:
        task = asyncio.create_task(
            self._evaluate_remaining(indicators, context, sso_patterns, on_late_finding)
        )
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background indicator evaluation failed: %s", exc)

    async def _evaluate_remaining(
        self,
        indicators: list[Indicator],
        context: EvaluationContext,
        sso_patterns: tuple[str, ...],
        on_late_finding: Optional[LateFindingCallback],
    ) -> list[Threat]:
        findings: list[Threat] = []
        for start in range(0, len(indicators), self.batch_size):
            for indicator in indicators[start:start + self.batch_size]:
                threat = self.scanner.evaluate_indicator(indicator, context, sso_patterns)
                if threat is None or not threat.is_critical_block:
                    continue
                logger.warning("Late critical finding %s after verdict was delivered", threat.id)
                metrics.record_event("late_finding")
                findings.append(threat)
                if on_late_finding is not None:
                    try:
                        on_late_finding(threat)
                    except Exception as exc:
                        logger.error("Late finding callback failed: %s", exc)
            await asyncio.sleep(0)
        return findings

    @property
    def background_pending(self) -> int:
        return len(self._background)

    async def wait_background(self) -> None:
        """Wait until background continuations have finished."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
