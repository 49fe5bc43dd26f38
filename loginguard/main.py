"""Command-line entry point for LoginGuard."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional, TextIO

from .analyzer.html_extract import strip_html_to_text
from .analyzer.rogue_apps import RogueAppRegistry
from .analyzer.rule_models import RogueAppSettings, ScanInput
from .analyzer.rule_store import RuleDocumentError, RuleStore, load_rule_document
from .analyzer.verdict import VerdictEngine
from .cache import create_rogue_apps_cache, create_rules_cache
from .config import Config, load_config, validate_config
from .constants import Verdict
from .monitoring.health import HealthServer, status_snapshot
from .pipeline.offload import IndicatorDispatcher
from .pipeline.providers import (
    FileRuleProvider,
    HttpRuleProvider,
    LoggingVerdictSink,
    RuleProvider,
    RuleRefresher,
)

logger = logging.getLogger(__name__)

EXIT_CODES = {
    Verdict.BLOCKED: 2,
    Verdict.ROGUE_APP: 2,
    Verdict.SUSPICIOUS: 1,
}


def configure_logging(level: str = "INFO", stream: TextIO = sys.stdout) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(stream),
        ],
        force=True,
    )


def build_rule_provider(config: Config) -> Optional[RuleProvider]:
    if config.rules_path:
        return FileRuleProvider(config.rules_path)
    if config.rules_url:
        cache = create_rules_cache(config.cache_dir, ttl_hours=config.rules_update_interval_hours)
        return HttpRuleProvider(config.rules_url, cache=cache)
    return None


def build_dispatcher(config: Config) -> IndicatorDispatcher:
    return IndicatorDispatcher(
        mode=config.offload_mode,
        timeout=config.processing_timeout_seconds,
        batch_size=config.fallback_batch_size,
    )


def exit_code_for(verdict: Verdict) -> int:
    return EXIT_CODES.get(verdict, 0)


async def run_scan(args: argparse.Namespace, config: Config) -> int:
    """Classify one page from files on disk and print the result as JSON."""
    source = Path(args.source).read_text(encoding="utf-8", errors="replace")
    text = Path(args.text).read_text(encoding="utf-8", errors="replace") if args.text else strip_html_to_text(source)
    scan = ScanInput(source=source, text=text, url=args.url, referrer=args.referrer or "")

    store = RuleStore()
    rules_path = args.rules or config.rules_path
    if rules_path:
        try:
            store.replace(load_rule_document(Path(rules_path).read_text(encoding="utf-8"), source=str(rules_path)))
        except (OSError, RuleDocumentError) as exc:
            logger.error("Cannot load rules from %s: %s", rules_path, exc)
    rules = store.ensure_rules("no rules file given")

    registry = None
    if args.client_registry:
        registry = RogueAppRegistry(RogueAppSettings(enabled=config.rogue_apps_enabled))
        registry.load(json.loads(Path(args.client_registry).read_text(encoding="utf-8")))

    engine = VerdictEngine(registry=registry)
    dispatcher = build_dispatcher(config)
    try:
        result = await engine.evaluate(
            scan,
            rules,
            config.scan_settings(),
            indicator_runner=dispatcher.run,
            degraded=store.degraded,
        )
    finally:
        dispatcher.close()

    print(json.dumps(result.to_dict(), indent=2))
    return exit_code_for(result.verdict)


class LoginGuardService:
    """Long-running service: rule refresh, rogue-app refresh, health endpoints."""

    def __init__(self, config: Config):
        self.config = config
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._stopped = asyncio.Event()
        self.sink = LoggingVerdictSink()
        self.store = RuleStore()
        provider = build_rule_provider(config)
        self.refresher = (
            RuleRefresher(self.store, provider, self.sink, config.rules_update_interval_hours)
            if provider is not None
            else None
        )
        self.registry = RogueAppRegistry(
            RogueAppSettings(enabled=config.rogue_apps_enabled, source_url=config.rogue_apps_url),
            cache=create_rogue_apps_cache(config.cache_dir),
        )
        self.health = HealthServer(
            host=config.health_host,
            port=config.health_port,
            status_provider=lambda: status_snapshot(self.store),
            enabled=config.health_enabled,
        )

    async def _rogue_app_worker(self):
        """Refresh the rogue application feed on its own interval."""
        logger.info("Rogue app refresh worker started")
        while self._running:
            try:
                await self.registry.refresh()
                await asyncio.sleep(max(60.0, self.registry.settings.update_interval_hours * 3600))
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Rogue app refresh worker error: %s", exc)
                await asyncio.sleep(60)
        logger.info("Rogue app refresh worker stopped")

    async def start(self):
        self._running = True
        if self.refresher is not None:
            await self.refresher.refresh_once()
        rules = self.store.ensure_rules("no rule source configured")
        if not self.config.rogue_apps_url and rules.rogue_apps.source_url:
            self.registry.settings = replace(
                rules.rogue_apps,
                enabled=self.config.rogue_apps_enabled and rules.rogue_apps.enabled,
            )

        await self.health.start()
        if self.refresher is not None:
            self._tasks.append(asyncio.create_task(self.refresher.run(refresh_first=False)))
        if self.registry.settings.enabled:
            self._tasks.append(asyncio.create_task(self._rogue_app_worker()))
        logger.info("LoginGuard running with rule document v%s", rules.version)

    async def wait_stopped(self):
        await self._stopped.wait()

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self.refresher is not None:
            self.refresher.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.health.stop()
        self._stopped.set()
        logger.info("LoginGuard stopped")


async def run_service(config: Config) -> int:
    service = LoginGuardService(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))
    try:
        await service.start()
        await service.wait_stopped()
    finally:
        await service.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="loginguard", description="Phishing login page classifier.")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Classify a saved page and print the verdict as JSON.")
    scan.add_argument("--source", required=True, help="HTML source of the page.")
    scan.add_argument("--text", help="Visible text of the page (derived from the source if omitted).")
    scan.add_argument("--url", required=True, help="URL the page was loaded from.")
    scan.add_argument("--referrer", default="", help="Referrer of the page load.")
    scan.add_argument("--rules", help="Rule document (YAML or JSON); defaults to RULES_PATH or the bundled rules.")
    scan.add_argument("--client-registry", help="JSON list of known rogue applications.")

    sub.add_parser("serve", help="Run the rule refresher and health endpoints.")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    configure_logging(config.log_level, sys.stderr if args.command == "scan" else sys.stdout)

    errors = validate_config(config)
    if errors:
        for err in errors:
            logger.error(err)
        return 1

    if args.command == "scan":
        return asyncio.run(run_scan(args, config))
    return asyncio.run(run_service(config))


if __name__ == "__main__":
    sys.exit(main())
