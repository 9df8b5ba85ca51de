from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from quotawatch.models import Prediction, ProgressLine
from quotawatch.provider.normalize import parse_iso


class MetricsUpdater:
    """
    applies probe results, predictions and alerts to Prometheus
    metrics, labeled by provider and metric line.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._usage_percent: "Gauge" = Gauge(
            "quotawatch_usage_percent",
            "Current usage of a quota window in percent",
            ["provider", "metric"],
            registry=registry,
        )
        self._usage_used: "Gauge" = Gauge(
            "quotawatch_usage_used",
            "Amount used of a quota window, in the window's own unit",
            ["provider", "metric", "unit"],
            registry=registry,
        )
        self._usage_limit: "Gauge" = Gauge(
            "quotawatch_usage_limit",
            "Limit of a quota window, in the window's own unit",
            ["provider", "metric", "unit"],
            registry=registry,
        )
        self._resets_at: "Gauge" = Gauge(
            "quotawatch_window_resets_at_timestamp_seconds",
            "Unix timestamp at which a quota window resets",
            ["provider", "metric"],
            registry=registry,
        )
        self._burn_rate: "Gauge" = Gauge(
            "quotawatch_burn_rate_percent_per_hour",
            "Usage growth rate derived from recent snapshots",
            ["provider", "metric"],
            registry=registry,
        )
        self._time_to_limit: "Gauge" = Gauge(
            "quotawatch_time_to_limit_seconds",
            "Projected seconds until the window is exhausted (-1 if none)",
            ["provider", "metric"],
            registry=registry,
        )
        self._alerts_fired: "Counter" = Counter(
            "quotawatch_alerts_fired_total",
            "Threshold alerts fired",
            ["provider", "metric", "threshold"],
            registry=registry,
        )
        self._probe_duration: "Histogram" = Histogram(
            "quotawatch_probe_duration_seconds",
            "Duration of probe cycles",
            registry=registry,
        )
        self._probe_errors: "Counter" = Counter(
            "quotawatch_probe_errors_total",
            "Total number of failed provider probes",
            ["provider"],
            registry=registry,
        )
        self._last_probe_success: "Gauge" = Gauge(
            "quotawatch_last_probe_success_timestamp_seconds",
            "Unix timestamp of last successful probe per provider",
            ["provider"],
            registry=registry,
        )

    def update_line(self, provider: "str", line: "ProgressLine") -> "None":
        """
        updates the gauges describing a progress line.
        """
        labels = {"provider": provider, "metric": line.label}
        self._usage_percent.labels(**labels).set(line.percent)
        self._usage_used.labels(**labels, unit=line.format.kind).set(line.used)
        self._usage_limit.labels(**labels, unit=line.format.kind).set(line.limit)

        if line.resets_at:
            reset = parse_iso(line.resets_at)
            if reset is not None:
                self._resets_at.labels(**labels).set(reset.timestamp())

    def update_prediction(
        self, provider: "str", metric: "str", prediction: "Prediction"
    ) -> "None":
        labels = {"provider": provider, "metric": metric}
        self._burn_rate.labels(**labels).set(prediction.burn_rate)
        if prediction.time_to_limit_ms is None:
            self._time_to_limit.labels(**labels).set(-1)
        else:
            self._time_to_limit.labels(**labels).set(prediction.time_to_limit_ms / 1000)

    def inc_alert(self, provider: "str", metric: "str", threshold: "int") -> "None":
        self._alerts_fired.labels(
            provider=provider, metric=metric, threshold=str(threshold)
        ).inc()

    def observe_probe_duration(self, duration_seconds: "float") -> "None":
        self._probe_duration.observe(duration_seconds)

    def inc_probe_error(self, provider: "str") -> "None":
        self._probe_errors.labels(provider=provider).inc()

    def set_last_probe_success(self, provider: "str", timestamp: "float") -> "None":
        self._last_probe_success.labels(provider=provider).set(timestamp)
