"""Speed computation, smoothing and outlier rejection for GPS tracks.

Speeds derived from positions are in km/h. Sensor velocities carried on
``TrackPoint.velocity`` are m/s and are only used by the stay-point detector.
"""

from dataclasses import dataclass
from typing import Sequence

from errors import InvalidInput
from geo import distance_m

MS_TO_KMH = 3.6


def instant_speed_kmh(p1, p2) -> float:
    """Speed between two fixes in km/h; 0 when the time delta is not positive."""
    seconds = (p2.timestamp - p1.timestamp).total_seconds()
    if seconds <= 0:
        return 0.0
    return distance_m(p1, p2) / seconds * MS_TO_KMH


def speed_series(points: Sequence) -> list[float]:
    """Speeds between consecutive fixes, ``len(points) - 1`` values."""
    return [instant_speed_kmh(a, b) for a, b in zip(points, points[1:])]


def moving_average(series: Sequence[float], window_size: int) -> list[float]:
    """Centred moving average; windows at the edges are truncated, not padded."""
    if window_size < 1:
        raise InvalidInput(f"window size must be positive, got {window_size}")
    n = len(series)
    smoothed = []
    for i in range(n):
        start = max(0, i - window_size // 2)
        end = min(n, i + window_size // 2 + 1)
        window = series[start:end]
        smoothed.append(sum(window) / len(window))
    return smoothed


def filter_unrealistic(series: Sequence[float], max_plausible: float) -> list[float]:
    """Drop speeds above ``max_plausible`` (and negative ones).

    The result can be shorter than the input: an implausible sample is
    excluded from statistics, the fix itself stays on the trip path.
    """
    return [s for s in series if 0.0 <= s <= max_plausible]


def reject_speed_spikes(series: Sequence[float], factor: float) -> list[float]:
    """Drop isolated samples more than ``factor`` times their largest neighbour."""
    n = len(series)
    if n < 2:
        return list(series)
    kept = []
    for i, s in enumerate(series):
        neighbours = []
        if i > 0:
            neighbours.append(series[i - 1])
        if i < n - 1:
            neighbours.append(series[i + 1])
        if s > factor * max(neighbours):
            continue
        kept.append(s)
    return kept


def median(values: Sequence[float]) -> float:
    """Upper median (``sorted[n // 2]``)."""
    if not values:
        raise InvalidInput("median of no values")
    ordered = sorted(values)
    return ordered[len(ordered) // 2]


@dataclass(frozen=True, slots=True)
class VelocityWindow:
    start_index: int
    median: float
    average: float
    maximum: float
    p95: float
    sample_count: int


def analyze_window(values: Sequence[float], start_index: int = 0) -> VelocityWindow | None:
    """Summarise a slice of velocities; ``None`` for an empty slice."""
    if not values:
        return None
    ordered = sorted(values)
    n = len(ordered)
    return VelocityWindow(
        start_index=start_index,
        median=ordered[n // 2],
        average=sum(ordered) / n,
        maximum=ordered[-1],
        p95=ordered[min(n - 1, int(n * 0.95))],
        sample_count=n,
    )


def sliding_windows(values: Sequence[float], size: int) -> list[VelocityWindow]:
    """Every full forward window of ``size`` samples."""
    if size < 1:
        raise InvalidInput(f"window size must be positive, got {size}")
    return [analyze_window(values[i:i + size], i) for i in range(len(values) - size + 1)]
