import shutil
import subprocess
import sys
import time
from typing import Any, Callable, Protocol, Sequence

import structlog

from quotawatch.provider.normalize import parse_iso
from quotawatch.state import JsonStateFile

logger = structlog.get_logger()

DEFAULT_THRESHOLDS: "tuple[int, ...]" = (50, 75, 90)
NOTIFY_TIMEOUT_SECONDS = 5.0


class Notifier(Protocol):
    def notify(self, title: "str", message: "str") -> "None": ...


class LogNotifier:
    """
    reports alerts as structured log events.
    """

    def notify(self, title: "str", message: "str") -> "None":
        logger.warning("usage_alert", title=title, message=message)


class CommandNotifier:
    """
    shows a desktop notification through osascript (macOS) or
    notify-send (Linux), and logs it as well.
    """

    def __init__(self, fallback: "Notifier | None" = None) -> "None":
        self._fallback = fallback or LogNotifier()

    def _command(self, title: "str", message: "str") -> "list[str] | None":
        if sys.platform == "darwin":
            script = f"display notification {_quote(message)} with title {_quote(title)}"
            return ["osascript", "-e", script]
        if shutil.which("notify-send"):
            return ["notify-send", title, message]
        return None

    def notify(self, title: "str", message: "str") -> "None":
        self._fallback.notify(title, message)
        command = self._command(title, message)
        if command is None:
            return
        try:
            subprocess.run(
                command,
                capture_output=True,
                timeout=NOTIFY_TIMEOUT_SECONDS,
                check=False,
            )
        except (subprocess.SubprocessError, OSError) as exc:
            logger.debug("notify_command_failed", command=command[0], error=str(exc))


def _quote(value: "str") -> "str":
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _now_ms() -> "int":
    return int(time.time() * 1000)


class AlertEngine:
    """
    AlertEngine fires a notification the first time a metric crosses
    each threshold within a billing window.

    Fired thresholds are remembered per (provider, metric, resets_at),
    so a new window starts with a clean slate. Records of windows
    that already reset are pruned whenever a new alert fires.
    """

    def __init__(
        self,
        state: "JsonStateFile",
        notifier: "Notifier | None" = None,
        thresholds: "Sequence[int]" = DEFAULT_THRESHOLDS,
        clock: "Callable[[], int]" = _now_ms,
    ) -> "None":
        self._state = state
        self._notifier = notifier or LogNotifier()
        self._thresholds = sorted(thresholds)
        self._clock = clock

    @staticmethod
    def _fired_list(
        data: "dict[str, Any]",
        provider_id: "str",
        metric_label: "str",
        resets_at: "str",
    ) -> "list[int]":
        provider_data = data.get(provider_id)
        if not isinstance(provider_data, dict):
            return []
        metric_data = provider_data.get(metric_label)
        if not isinstance(metric_data, dict):
            return []
        fired = metric_data.get(resets_at)
        if not isinstance(fired, list):
            return []
        return [int(t) for t in fired if isinstance(t, (int, float))]

    def check_and_fire(
        self,
        provider_id: "str",
        metric_label: "str",
        percent: "float",
        resets_at: "str | None" = None,
    ) -> "list[int]":
        """
        notifies every threshold that percent meets for the first time
        in this billing window. Returns the thresholds fired by this
        call. Without resets_at there is no window to key on and
        nothing happens.
        """
        if not resets_at:
            return []

        newly_fired: "list[int]" = []
        with self._state.lock:
            data = self._state.load()
            fired = self._fired_list(data, provider_id, metric_label, resets_at)

            for threshold in self._thresholds:
                if percent >= threshold and threshold not in fired:
                    fired.append(threshold)
                    newly_fired.append(threshold)

            if not newly_fired:
                return []

            provider_data = data.get(provider_id)
            if not isinstance(provider_data, dict):
                provider_data = data[provider_id] = {}
            metric_data = provider_data.get(metric_label)
            if not isinstance(metric_data, dict):
                metric_data = provider_data[metric_label] = {}
            metric_data[resets_at] = sorted(fired)

            pruned = self._prune_expired(data)
            if pruned:
                logger.debug("alerts_pruned", count=pruned)
            self._state.save(data)

        for threshold in newly_fired:
            self._send(provider_id, metric_label, threshold)
        return newly_fired

    def _prune_expired(self, data: "dict[str, Any]") -> "int":
        """
        removes records whose billing window has already reset.
        Returns the number of removed records.
        """
        now = self._clock()
        removed = 0
        for provider_id in list(data):
            provider_data = data[provider_id]
            if not isinstance(provider_data, dict):
                del data[provider_id]
                continue
            for metric_label in list(provider_data):
                metric_data = provider_data[metric_label]
                if not isinstance(metric_data, dict):
                    del provider_data[metric_label]
                    continue
                for resets_at in list(metric_data):
                    reset = parse_iso(resets_at)
                    if reset is not None and reset.timestamp() * 1000 < now:
                        del metric_data[resets_at]
                        removed += 1
                if not metric_data:
                    del provider_data[metric_label]
            if not provider_data:
                del data[provider_id]
        return removed

    def _send(self, provider_id: "str", metric_label: "str", threshold: "int") -> "None":
        title = f"{provider_id.capitalize()} usage"
        message = f"{metric_label} usage hit {threshold}%"
        try:
            self._notifier.notify(title, message)
        except Exception:
            logger.exception(
                "alert_notify_failed",
                provider=provider_id,
                metric=metric_label,
                threshold=threshold,
            )
