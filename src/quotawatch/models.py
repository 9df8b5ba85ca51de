from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol, Union

FormatKind = Literal["percent", "dollars", "count"]
PaceLabel = Literal["ahead", "on track", "behind", "idle", "at limit"]

NO_DATA_COLOR = "#a3a3a3"


class CredentialSource(Protocol):
    """
    CredentialSource is a place a raw credential document can be
    loaded from and persisted back to (a JSON file, a keyring entry).
    """

    @property
    def description(self) -> "str": ...

    def load(self) -> "dict[str, Any] | None": ...

    def save(self, document: "dict[str, Any]") -> "bool": ...


@dataclass(frozen=True, slots=True)
class CredentialBundle:
    """
    CredentialBundle is the provider-agnostic view over a credential
    document written by a provider's own CLI.

    The raw document is kept so a refresh only rewrites the fields it
    owns. Bundles are never mutated: a refresh produces a new one.
    """

    access_token: "str"
    # the source the raw document came from, and where a refresh persists to
    source: "CredentialSource"
    raw: "dict[str, Any]"
    refresh_token: "str | None" = None
    expires_at: "datetime | None" = None
    last_refresh: "datetime | None" = None
    account_id: "str | None" = None
    # subscription tier as cached by the provider CLI, e.g. "max"
    plan_hint: "str | None" = None


@dataclass(frozen=True, slots=True)
class TokenBundle:
    """
    TokenBundle holds the normalized fields of a token endpoint
    response to a refresh_token grant.
    """

    access_token: "str"
    refresh_token: "str | None" = None
    # seconds until the new access token expires
    expires_in: "float | None" = None
    id_token: "str | None" = None


@dataclass(frozen=True, slots=True)
class MetricFormat:
    kind: "FormatKind" = "percent"
    # only meaningful for kind == "count", e.g. "requests"
    suffix: "str" = ""


PERCENT = MetricFormat("percent")
DOLLARS = MetricFormat("dollars")


@dataclass(frozen=True, slots=True)
class ProgressLine:
    """
    ProgressLine is a bounded usage window: how much of a limit
    has been consumed and when the window resets.
    """

    label: "str"
    used: "float"
    limit: "float"
    format: "MetricFormat" = PERCENT
    # ISO 8601, UTC
    resets_at: "str | None" = None
    # length of the billing window, None when the provider doesn't say
    period_duration_ms: "int | None" = None

    def __post_init__(self) -> "None":
        object.__setattr__(self, "used", max(0.0, float(self.used)))
        object.__setattr__(self, "limit", max(0.0, float(self.limit)))

    @property
    def percent(self) -> "float":
        """
        usage as a 0-100 percentage. A zero limit has no denominator
        and reads as 0%.
        """
        if self.limit == 0:
            return 0.0
        return self.used / self.limit * 100


@dataclass(frozen=True, slots=True)
class TextLine:
    label: "str"
    value: "str"


@dataclass(frozen=True, slots=True)
class BadgeLine:
    label: "str"
    text: "str"
    color: "str | None" = None


MetricLine = Union[ProgressLine, TextLine, BadgeLine]


def no_data_badge() -> "BadgeLine":
    return BadgeLine(label="Status", text="No usage data", color=NO_DATA_COLOR)


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """
    ProbeResult is the outcome of probing one provider. It is either
    a non-empty sequence of lines or an error, never both.
    """

    lines: "tuple[MetricLine, ...]" = ()
    plan: "str | None" = None
    error: "str | None" = None

    def __post_init__(self) -> "None":
        object.__setattr__(self, "lines", tuple(self.lines))
        if self.error and self.lines:
            raise ValueError("a probe result cannot carry both lines and an error")
        if not self.error and not self.lines:
            raise ValueError("a successful probe result needs at least one line")

    @classmethod
    def success(
        cls,
        lines: "list[MetricLine] | tuple[MetricLine, ...]",
        plan: "str | None" = None,
    ) -> "ProbeResult":
        """
        builds a successful result, substituting the no-data badge
        when nothing could be derived.
        """
        if not lines:
            lines = [no_data_badge()]
        return cls(lines=tuple(lines), plan=plan)

    @classmethod
    def failure(cls, error: "str") -> "ProbeResult":
        return cls(lines=(), error=error or "Unknown error.")

    @property
    def ok(self) -> "bool":
        return self.error is None

    def progress_lines(self) -> "list[ProgressLine]":
        return [line for line in self.lines if isinstance(line, ProgressLine)]


@dataclass(frozen=True, slots=True)
class ProviderResult:
    provider_id: "str"
    provider_name: "str"
    result: "ProbeResult"
    # epoch milliseconds
    probed_at: "int" = 0


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """
    UsageSnapshot is a single observation of a metric's usage
    percentage.
    """

    # epoch milliseconds
    timestamp: "int"
    percent: "float"
    resets_at: "str | None" = None

    def to_dict(self) -> "dict[str, Any]":
        data: "dict[str, Any]" = {
            "timestamp": self.timestamp,
            "percent": self.percent,
        }
        if self.resets_at:
            data["resetsAt"] = self.resets_at
        return data

    @classmethod
    def from_dict(cls, data: "dict[str, Any]") -> "UsageSnapshot":
        return cls(
            timestamp=int(data["timestamp"]),
            percent=float(data["percent"]),
            resets_at=data.get("resetsAt"),
        )


@dataclass(frozen=True, slots=True)
class Prediction:
    # percent per hour
    burn_rate: "float"
    # milliseconds until 100%, None when flat, decreasing or saturated
    time_to_limit_ms: "float | None"
    pace_label: "PaceLabel"


@dataclass(frozen=True, slots=True)
class CachedResult:
    result: "ProbeResult"
    # epoch milliseconds
    timestamp: "int"
