import os
from dataclasses import dataclass, field

ALL_PROVIDERS: "tuple[str, ...]" = ("claude", "codex", "kimi")


def _parse_list(value: "str") -> "list[str]":
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def _parse_thresholds(value: "str") -> "list[int]":
    thresholds: "list[int]" = []
    for item in _parse_list(value):
        try:
            threshold = int(item)
        except ValueError:
            continue
        if 0 < threshold <= 100:
            thresholds.append(threshold)
    return sorted(set(thresholds))


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    # probe interval in seconds, matches the 5-minute history cadence
    probe_interval: "int" = 300
    # per-provider probe timeout in seconds
    probe_timeout: "float" = 30.0
    log_level: "str" = "info"
    once: "bool" = False

    state_dir: "str" = "~/.local/state/quotawatch"
    providers: "list[str]" = field(default_factory=lambda: list(ALL_PROVIDERS))
    alert_thresholds: "list[int]" = field(default_factory=lambda: [50, 75, 90])
    desktop_notifications: "bool" = False

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()
        config.state_dir = os.environ.get("QUOTAWATCH_STATE_DIR", config.state_dir)

        providers = os.environ.get("QUOTAWATCH_PROVIDERS")
        if providers:
            config.providers = [p for p in _parse_list(providers) if p in ALL_PROVIDERS]

        thresholds = os.environ.get("QUOTAWATCH_ALERT_THRESHOLDS")
        if thresholds:
            config.alert_thresholds = _parse_thresholds(thresholds)

        config.desktop_notifications = os.environ.get(
            "QUOTAWATCH_NOTIFY_COMMAND", ""
        ).lower() in ("1", "true", "yes")
        return config

    def provider_enabled(self, provider_id: "str") -> "bool":
        return provider_id in self.providers
