import asyncio
import time

import structlog

from quotawatch.alerts import AlertEngine
from quotawatch.history import HistoryStore
from quotawatch.metrics import MetricsUpdater
from quotawatch.models import CachedResult, ProviderResult
from quotawatch.prediction import predict
from quotawatch.registry import ProviderRegistry, ResultCache

logger = structlog.get_logger()


class Collector:
    """
    Collector is responsible for orchestrating the periodic probing
    of all providers. Every cycle probes the providers concurrently,
    caches the results, records a snapshot for each percent-based
    window, derives its prediction, fires threshold alerts and
    updates the metrics store. The main loop runs until stop() is
    called, sleeping for a configured interval between cycles.
    """

    def __init__(
        self,
        registry: "ProviderRegistry",
        history: "HistoryStore",
        alerts: "AlertEngine",
        metrics_updater: "MetricsUpdater",
        cache: "ResultCache | None" = None,
        probe_interval_seconds: "int" = 300,
    ) -> "None":
        self._registry = registry
        self._history = history
        self._alerts = alerts
        self._metrics = metrics_updater
        self._cache = cache or ResultCache()
        self._interval = probe_interval_seconds
        self._stop_event: "asyncio.Event" = asyncio.Event()

    def stop(self) -> "None":
        """
        signals the collector loop to stop after the current cycle.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        await self._registry.close()

    def latest(self) -> "dict[str, CachedResult]":
        """
        returns the last result per provider without waiting for a
        probe in flight. Entries may be stale.
        """
        return self._cache.snapshot()

    async def run(self) -> "None":
        """
        runs the main probe loop. Runs until stop() is called.
        """
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("probe_cycle_error")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> "list[ProviderResult]":
        """
        runs a single probe cycle and returns the results.
        """
        logger.info("probe_cycle_start", providers=len(self._registry.providers))
        cycle_start = time.monotonic()

        results = await self._registry.probe_all()
        self._metrics.observe_probe_duration(time.monotonic() - cycle_start)

        for provider_result in results:
            self._cache.set(provider_result.provider_id, provider_result.result)
            self._process(provider_result)

        logger.info("probe_cycle_end", duration=round(time.monotonic() - cycle_start, 3))
        return results

    def _process(self, provider_result: "ProviderResult") -> "None":
        provider_id = provider_result.provider_id
        result = provider_result.result

        if result.error:
            logger.warning("provider_error", provider=provider_id, error=result.error)
            self._metrics.inc_probe_error(provider_id)
            return

        self._metrics.set_last_probe_success(provider_id, time.time())

        for line in result.progress_lines():
            self._metrics.update_line(provider_id, line)
            # history, prediction and alerts only make sense for percentages
            if line.format.kind != "percent":
                continue

            percent = line.percent
            self._history.record(provider_id, line.label, percent, line.resets_at)

            fired = self._alerts.check_and_fire(
                provider_id, line.label, percent, line.resets_at
            )
            for threshold in fired:
                self._metrics.inc_alert(provider_id, line.label, threshold)

            series = self._history.read(provider_id, line.label)
            prediction = predict(series, percent, line.period_duration_ms)
            if prediction is None:
                continue

            self._metrics.update_prediction(provider_id, line.label, prediction)
            logger.debug(
                "usage_prediction",
                provider=provider_id,
                metric=line.label,
                percent=round(percent, 1),
                burn_rate=round(prediction.burn_rate, 3),
                pace=prediction.pace_label,
            )
