import asyncio
import signal
from pathlib import Path

import httpx
import structlog
from prometheus_client import REGISTRY, CollectorRegistry, start_http_server

from quotawatch.alerts import AlertEngine, CommandNotifier, LogNotifier, Notifier
from quotawatch.cli import parse_args
from quotawatch.collector import Collector
from quotawatch.config import Config
from quotawatch.history import HistoryStore
from quotawatch.logging import setup_logging
from quotawatch.metrics import MetricsUpdater
from quotawatch.provider.base import UsageProvider
from quotawatch.provider.claude import create_claude_provider
from quotawatch.provider.codex import create_codex_provider
from quotawatch.provider.kimi import create_kimi_provider
from quotawatch.registry import ProviderRegistry
from quotawatch.state import JsonStateFile

logger = structlog.get_logger()

PROVIDER_FACTORIES = {
    "claude": create_claude_provider,
    "codex": create_codex_provider,
    "kimi": create_kimi_provider,
}


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build_providers(
    config: "Config", client: "httpx.AsyncClient"
) -> "list[UsageProvider]":
    providers: "list[UsageProvider]" = []
    for provider_id, factory in PROVIDER_FACTORIES.items():
        if not config.provider_enabled(provider_id):
            continue
        providers.append(factory(client=client))
        logger.info("provider_enabled", provider=provider_id)
    return providers


def build_collector(
    config: "Config",
    client: "httpx.AsyncClient",
    metrics_registry: "CollectorRegistry" = REGISTRY,
) -> "Collector":
    state_dir = Path(config.state_dir).expanduser()
    notifier: "Notifier" = (
        CommandNotifier() if config.desktop_notifications else LogNotifier()
    )
    return Collector(
        registry=ProviderRegistry(
            build_providers(config, client), probe_timeout=config.probe_timeout
        ),
        history=HistoryStore(JsonStateFile(state_dir / "history.json")),
        alerts=AlertEngine(
            JsonStateFile(state_dir / "alerts.json"),
            notifier=notifier,
            thresholds=config.alert_thresholds,
        ),
        metrics_updater=MetricsUpdater(registry=metrics_registry),
        probe_interval_seconds=config.probe_interval,
    )


def _log_results(collector: "Collector") -> "None":
    for provider_id, cached in collector.latest().items():
        result = cached.result
        if result.error:
            logger.info("usage", provider=provider_id, error=result.error)
            continue
        for line in result.lines:
            logger.info("usage", provider=provider_id, plan=result.plan, line=line)


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level)

    if not config.providers:
        raise SystemExit(
            "No providers configured. Check the QUOTAWATCH_PROVIDERS variable."
        )

    async def _run() -> "None":
        async with httpx.AsyncClient(timeout=10.0) as client:
            collector = build_collector(config, client)

            if config.once:
                await collector.run_once()
                _log_results(collector)
                return

            host, port = _parse_listen_address(config.listen_address)
            start_http_server(port, addr=host)
            logger.info("metrics_server_started", host=host, port=port)

            loop = asyncio.get_running_loop()
            # for SIGINT and SIGTERM, signal the collector
            # to stop gracefully
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, collector.stop)

            try:
                await collector.run()
            finally:
                logger.info("shutting_down")
                await collector.close()
                logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
