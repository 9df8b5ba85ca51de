from typing import Sequence

from quotawatch.models import PaceLabel, Prediction, UsageSnapshot

# last ~hour of snapshots at the nominal 5-minute cadence
REGRESSION_WINDOW = 12

MS_PER_HOUR = 3_600_000
# at or above this percentage the window counts as exhausted
SATURATION_PERCENT = 99
# %/hr below which no time-to-limit is projected
MIN_BURN_RATE = 0.01
# %/hr below which usage counts as idle
IDLE_BURN_RATE = 0.1


def linear_regression(
    points: "Sequence[tuple[float, float]]",
) -> "tuple[float, float]":
    """
    ordinary least squares fit of y against x. Returns (slope,
    intercept). When every x is equal the fit is flat through the
    mean of y.
    """
    n = len(points)
    if n == 0:
        return 0.0, 0.0

    sum_x = sum_y = sum_xy = sum_x2 = 0.0
    for x, y in points:
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_x2 += x * x

    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return 0.0, sum_y / n

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    return slope, intercept


def _pace_label(burn_rate: "float", period_duration_ms: "int | None") -> "PaceLabel":
    if abs(burn_rate) < IDLE_BURN_RATE:
        return "idle"

    if period_duration_ms:
        # the rate that would use exactly 100% over the whole window
        sustainable_rate = 100 / (period_duration_ms / MS_PER_HOUR)
        ratio = burn_rate / sustainable_rate
        if ratio >= 1.5:
            return "ahead"
        if ratio >= 0.5:
            return "on track"
        return "behind"

    if burn_rate > 5:
        return "ahead"
    if burn_rate > 0.5:
        return "on track"
    return "behind"


def predict(
    series: "Sequence[UsageSnapshot]",
    current_percent: "float",
    period_duration_ms: "int | None" = None,
) -> "Prediction | None":
    """
    projects the burn rate of a metric from its recent snapshots.
    Returns None with fewer than two snapshots.
    """
    if len(series) < 2:
        return None

    recent = list(series)[-REGRESSION_WINDOW:]
    # x as milliseconds since the first point keeps the sums small
    origin = recent[0].timestamp
    slope, _ = linear_regression(
        [(s.timestamp - origin, s.percent) for s in recent]
    )
    burn_rate = slope * MS_PER_HOUR

    if current_percent >= SATURATION_PERCENT:
        return Prediction(
            burn_rate=burn_rate, time_to_limit_ms=None, pace_label="at limit"
        )

    time_to_limit_ms: "float | None" = None
    if burn_rate > MIN_BURN_RATE:
        time_to_limit_ms = (100 - current_percent) / burn_rate * MS_PER_HOUR

    return Prediction(
        burn_rate=burn_rate,
        time_to_limit_ms=time_to_limit_ms,
        pace_label=_pace_label(burn_rate, period_duration_ms),
    )
