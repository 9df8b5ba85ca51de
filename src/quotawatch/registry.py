import asyncio
import threading
import time
from typing import Callable, Sequence

import structlog

from quotawatch.models import CachedResult, ProbeResult, ProviderResult
from quotawatch.provider.base import UsageProvider

logger = structlog.get_logger()


def _now_ms() -> "int":
    return int(time.time() * 1000)


class ProviderRegistry:
    """
    ProviderRegistry fans a probe out to every registered provider
    concurrently and always returns one result per provider, in
    registration order. Exceptions and timeouts of a single provider
    are converted into error results so they never affect the
    others.
    """

    def __init__(
        self,
        providers: "Sequence[UsageProvider]",
        probe_timeout: "float | None" = 30.0,
        clock: "Callable[[], int]" = _now_ms,
    ) -> "None":
        self._providers = list(providers)
        self._probe_timeout = probe_timeout
        self._clock = clock

    @property
    def providers(self) -> "list[UsageProvider]":
        return list(self._providers)

    async def close(self) -> "None":
        """
        closes all provider sessions.
        """
        for provider in self._providers:
            await provider.close()

    async def probe_all(self) -> "list[ProviderResult]":
        tasks = [self._probe_one(provider) for provider in self._providers]
        # _probe_one never raises, gather only joins
        return list(await asyncio.gather(*tasks))

    async def _probe_one(self, provider: "UsageProvider") -> "ProviderResult":
        try:
            result = await asyncio.wait_for(provider.probe(), self._probe_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "probe_timeout", provider=provider.id, timeout=self._probe_timeout
            )
            result = ProbeResult.failure("Usage request timed out.")
        except Exception as exc:
            logger.exception("probe_crashed", provider=provider.id)
            result = ProbeResult.failure(str(exc) or type(exc).__name__)

        return ProviderResult(
            provider_id=provider.id,
            provider_name=provider.name,
            result=result,
            probed_at=self._clock(),
        )


class ResultCache:
    """
    ResultCache: Is a thread-safe, stale-while-revalidate store of the
    latest probe result per provider.

    Readers always get the last stored result immediately, fresh or
    not; writers replace whole immutable entries, so a reader never
    sees a half-updated value.
    """

    def __init__(self, clock: "Callable[[], int]" = _now_ms) -> "None":
        self._clock = clock
        self._lock: "threading.Lock" = threading.Lock()
        self._entries: "dict[str, CachedResult]" = {}

    def set(self, provider_id: "str", result: "ProbeResult") -> "None":
        entry = CachedResult(result=result, timestamp=self._clock())
        with self._lock:
            self._entries[provider_id] = entry

    def snapshot(self) -> "dict[str, CachedResult]":
        with self._lock:
            return dict(self._entries)
