import time
from typing import Any, Callable

import structlog

from quotawatch.models import UsageSnapshot
from quotawatch.state import JsonStateFile

logger = structlog.get_logger()

# 24h at the nominal 5-minute sampling cadence
MAX_ENTRIES = 288
# snapshots closer than this to the previous one are dropped
DEDUP_MS = 2 * 60 * 1000


def _now_ms() -> "int":
    return int(time.time() * 1000)


class HistoryStore:
    """
    HistoryStore keeps a bounded time series of usage percentages per
    (provider, metric) pair.

    A change of resets_at means the billing window rolled over and
    the series restarts. Snapshots arriving within DEDUP_MS of the
    previous one are dropped so frequent re-probes don't skew the
    series. Only the newest MAX_ENTRIES snapshots are kept.
    """

    def __init__(
        self,
        state: "JsonStateFile",
        clock: "Callable[[], int]" = _now_ms,
        max_entries: "int" = MAX_ENTRIES,
        dedup_ms: "int" = DEDUP_MS,
    ) -> "None":
        self._state = state
        self._clock = clock
        self._max_entries = max_entries
        self._dedup_ms = dedup_ms

    @staticmethod
    def _series(
        data: "dict[str, Any]",
        provider_id: "str",
        metric_label: "str",
    ) -> "list[UsageSnapshot]":
        provider_data = data.get(provider_id)
        if not isinstance(provider_data, dict):
            return []
        raw = provider_data.get(metric_label)
        if not isinstance(raw, list):
            return []

        snapshots: "list[UsageSnapshot]" = []
        for item in raw:
            try:
                snapshots.append(UsageSnapshot.from_dict(item))
            except (KeyError, TypeError, ValueError):
                continue
        return snapshots

    def read(self, provider_id: "str", metric_label: "str") -> "list[UsageSnapshot]":
        """
        returns the series for the given metric, oldest first.
        """
        with self._state.lock:
            data = self._state.load()
        return self._series(data, provider_id, metric_label)

    def record(
        self,
        provider_id: "str",
        metric_label: "str",
        percent: "float",
        resets_at: "str | None" = None,
    ) -> "bool":
        """
        appends a snapshot taken now. Returns False when the snapshot
        was dropped by the dedup guard.
        """
        now = self._clock()
        with self._state.lock:
            data = self._state.load()
            series = self._series(data, provider_id, metric_label)

            previous = series[-1].resets_at if series else None
            if resets_at and previous and previous != resets_at:
                logger.debug(
                    "history_rollover",
                    provider=provider_id,
                    metric=metric_label,
                    previous=previous,
                    current=resets_at,
                )
                series = []

            if series and now - series[-1].timestamp < self._dedup_ms:
                return False

            series.append(
                UsageSnapshot(timestamp=now, percent=percent, resets_at=resets_at)
            )
            # drop the oldest snapshots beyond the retention limit
            series = series[-self._max_entries :]

            provider_data = data.get(provider_id)
            if not isinstance(provider_data, dict):
                provider_data = data[provider_id] = {}
            provider_data[metric_label] = [s.to_dict() for s in series]
            self._state.save(data)
        return True
